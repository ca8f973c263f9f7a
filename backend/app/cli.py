"""Management CLI for ledger maintenance.

Usage:
    python -m app.cli mark-overdue          # Run the overdue sweep once
    python -m app.cli next-ref <kind>       # Preview the next reference number
"""

import asyncio
import sys

from app.database import async_session
from app.deps import get_coordinator
from app.utils.numbering import ReferenceKind, next_reference_number


async def mark_overdue():
    count = await get_coordinator().mark_overdue()
    print(f"  {count} document(s) marked overdue")


async def preview_reference(kind: str):
    try:
        ref_kind = ReferenceKind(kind)
    except ValueError:
        kinds = ", ".join(k.value for k in ReferenceKind)
        print(f"Unknown kind {kind!r}. Choose one of: {kinds}")
        sys.exit(2)

    async with async_session() as db:
        print(f"  {await next_reference_number(db, ref_kind)}")


if __name__ == "__main__":
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    if cmd == "mark-overdue":
        asyncio.run(mark_overdue())
    elif cmd == "next-ref" and len(sys.argv) > 2:
        asyncio.run(preview_reference(sys.argv[2]))
    else:
        print("Usage: python -m app.cli [mark-overdue|next-ref <kind>]")
