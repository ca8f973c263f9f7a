"""Post-commit document rendering hand-off.

Rendering (PDF layout) and storage are external.  The ledger only promises
to notify a renderer after a transaction commits, in the background, and to
never let a rendering failure reach the caller or the committed rows.

    dispatcher = RenderDispatcher(renderer, sink=upload_blob)
    dispatcher.dispatch(document)      # returns immediately
    await dispatcher.drain()           # on shutdown / in tests
"""

import asyncio
import logging
from typing import Awaitable, Callable, Protocol

from app.models.ledger_document import LedgerDocument

logger = logging.getLogger("propdesk.rendering")


class DocumentRenderer(Protocol):
    async def render(self, document: LedgerDocument) -> bytes:
        ...


BlobSink = Callable[[LedgerDocument, bytes], Awaitable[None]]


class RenderDispatcher:
    """Fire-and-forget rendering with in-flight task tracking."""

    def __init__(self, renderer: DocumentRenderer | None, sink: BlobSink | None = None):
        self.renderer = renderer
        self.sink = sink
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, document: LedgerDocument | None) -> None:
        if self.renderer is None or document is None:
            return
        task = asyncio.create_task(self._render(document))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _render(self, document: LedgerDocument) -> None:
        try:
            blob = await self.renderer.render(document)
            if self.sink is not None:
                await self.sink(document, blob)
        except Exception:
            logger.exception("Rendering failed for %s", document.reference_number)
            return
        logger.info("Rendered %s (%d bytes)", document.reference_number, len(blob))

    async def drain(self) -> None:
        """Wait for every in-flight render to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
