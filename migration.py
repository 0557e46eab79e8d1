"""
Maintenance script that repairs book copy counts from borrowing records.

available_copies must equal total_copies minus the number of ISSUED
borrowings of the book. Run it once after importing data or after manual
edits to the books collection.

Usage:
    python migration.py
"""

import asyncio
import logging
from typing import List

from config import Settings
from database import MongoStore
from models import BorrowingStatus
from store import LibraryStore

logger = logging.getLogger("library.migration")


async def reconcile_copies(store: LibraryStore) -> List[dict]:
    """Fixes every book whose counts drifted; returns one entry per fix."""
    fixes = []
    for listed in await store.list_books():
        async with store.transaction() as session:
            book = await store.get_book(listed.book_id, session=session)
            if book is None:
                continue
            issued = len(
                await store.list_borrowings(book_id=book.book_id, status=BorrowingStatus.ISSUED, session=session)
            )
            total_copies = max(book.total_copies, issued, 1)
            available_copies = total_copies - issued
            if (total_copies, available_copies) == (book.total_copies, book.available_copies):
                continue
            await store.update_book(
                book.model_copy(update={"total_copies": total_copies, "available_copies": available_copies}),
                session=session,
            )
        fixes.append(
            {
                "book_id": book.book_id,
                "title": book.title,
                "total_copies": (book.total_copies, total_copies),
                "available_copies": (book.available_copies, available_copies),
            }
        )
        logger.info(
            "book reconciled | book_id=%s total %s->%s available %s->%s",
            book.book_id, book.total_copies, total_copies, book.available_copies, available_copies,
        )
    return fixes


async def migrate_books() -> None:
    settings = Settings.from_env()
    store = MongoStore.from_url(settings.mongo_url, settings.database_name)
    try:
        print("Reconciling book copy counts...")
        fixes = await reconcile_copies(store)
        if not fixes:
            print("No books need migration. All copy counts match issued borrowings.")
        for fix in fixes:
            print(
                f"Updated book '{fix['title']}' - Total: {fix['total_copies'][1]}, "
                f"Available: {fix['available_copies'][1]}"
            )
        print("Migration completed successfully!")
    finally:
        store.close()


if __name__ == "__main__":
    print("Library Circulation Service - Copy Count Reconciliation")
    print("=" * 50)
    asyncio.run(migrate_books())
