"""Local mirror of the user's collection with optimistic mutations."""
import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Tuple

from shelfscan.async_client import SyncClient
from shelfscan.errors import RequestFailed, SyncError
from shelfscan.models import Book, Tag, same_book

logger = logging.getLogger(__name__)


@dataclass
class MutationRecord:
    """A local change applied ahead of the server, with what it replaced."""
    id: int
    kind: str
    snapshot: Book
    applied: Optional[Book] = None


def ordering_key(book: Book) -> Tuple[str, str]:
    """
    Key serializing server calls for one book.

    ISBN first: a scanned book is known by ISBN before the server assigns
    an id, and keeps that ISBN afterwards.
    """
    if book.isbn13:
        return ("isbn", book.isbn13)
    return ("id", book.id)


class CollectionCache:
    """
    In-memory books and tags, mutated only from the owning event loop.

    Server calls for the same book run one at a time in the order they were
    issued; their results are applied as identity upserts, so a late result
    is safe to apply.
    """

    def __init__(self, client: SyncClient):
        self.client = client
        self.tag_filter: List[str] = []
        self._books: List[Book] = []
        self._tags: List[Tag] = []
        self._pending: Dict[int, MutationRecord] = {}
        self._ids = itertools.count(1)
        self._locks: Dict[Tuple[str, str], list] = {}

    @property
    def books(self) -> List[Book]:
        return list(self._books)

    @property
    def tags(self) -> List[Tag]:
        return list(self._tags)

    @property
    def pending(self) -> List[MutationRecord]:
        """Mutations waiting for server confirmation."""
        return list(self._pending.values())

    def __len__(self):
        return len(self._books)

    def find(self, book: Book) -> Optional[Book]:
        for existing in self._books:
            if same_book(existing, book):
                return existing
        return None

    def add_or_replace(self, book: Book) -> Book:
        """Upsert by identity; never creates a second entry for one book."""
        for i, existing in enumerate(self._books):
            if same_book(existing, book):
                self._books[i] = book
                # dual-key matching can hit an id entry and an ISBN-only entry
                self._books[i + 1:] = [b for b in self._books[i + 1:] if not same_book(b, book)]
                return book
        self._books.append(book)
        return book

    def _take(self, book: Book) -> List[Book]:
        taken = [b for b in self._books if same_book(b, book)]
        if taken:
            self._books = [b for b in self._books if not same_book(b, book)]
        return taken

    def _record(self, kind: str, snapshot: Book, applied: Optional[Book] = None) -> MutationRecord:
        record = MutationRecord(next(self._ids), kind, snapshot, applied)
        self._pending[record.id] = record
        return record

    @asynccontextmanager
    async def _ordered(self, book: Book):
        key = ordering_key(book)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    async def add_by_isbn(self, isbn: str) -> Book:
        """Create (or fetch) a book server-side and merge it locally."""
        async with self._ordered(Book(title="", isbn13=isbn)):
            book = await self.client.add_book(isbn)
            return self.add_or_replace(book)

    async def remove(self, book: Book) -> None:
        """
        Remove a book now and delete it server-side.

        Every entry matching the book is removed and deleted on its own: an
        ISBN-only book can match several server copies. Each failed delete
        puts its entry (with its tags) back, and the first error is
        re-raised once all deletes have finished. Removing a book that is
        not in the collection is a no-op: another removal of it is already
        in flight.

        Raises:
            SyncError: a delete failed; that book has been reinstated
        """
        taken = self._take(book)
        if not taken:
            logger.info(f"Book not in collection, nothing to remove: {book.title}")
            return

        errors = []
        for snapshot in taken:
            if not snapshot.id:
                logger.warning(f"Cannot delete book without ID: {snapshot.title}")
                continue
            try:
                await self._delete(snapshot)
            except SyncError as e:
                errors.append(e)

        if errors:
            raise errors[0]

    async def _delete(self, snapshot: Book) -> None:
        record = self._record("remove", snapshot)
        try:
            async with self._ordered(snapshot):
                await self.client.delete_book(snapshot.id)
        except SyncError as e:
            logger.error(f"Failed to delete book {snapshot.title}: {e}")
            if self.find(snapshot) is None:
                self._books.append(snapshot)
            raise
        else:
            # a wholesale refresh may have brought it back meanwhile
            self._take(snapshot)
            logger.info(f"Deleted book: {snapshot.title}")
        finally:
            self._pending.pop(record.id, None)

    async def set_tags(self, book: Book, tags: Iterable[Tag]) -> Book:
        """
        Assign tags to a book, showing them before the server confirms.

        Raises:
            RequestFailed: the book has no server id; nothing was changed
            SyncError: the update failed; the previous tags are restored
        """
        tags = list(tags)
        current = self.find(book) or book
        if not current.id:
            raise RequestFailed(f"Cannot tag book without ID: {current.title}")

        applied = self.add_or_replace(replace(current, tags=tags))
        record = self._record("tags", current, applied)
        try:
            async with self._ordered(current):
                updated = await self.client.set_book_tags(current.id, [tag.name for tag in tags])
        except SyncError as e:
            logger.error(f"Failed to set tags on {current.title}: {e}")
            # only undo our own change
            if self.find(current) is applied:
                self.add_or_replace(current)
            raise
        finally:
            self._pending.pop(record.id, None)

        if updated is not None:
            return self.add_or_replace(updated)
        return applied

    async def filter_by_tags(self, tag_ids: Optional[Iterable[str]] = None) -> List[Book]:
        """
        Replace the mirror with the server's books carrying these tags.

        Args:
            tag_ids: Tag ids to filter on; empty means all books
        """
        tag_ids = list(tag_ids or [])
        books = await self.client.list_books(tag_ids)
        self.tag_filter = tag_ids
        self._books = []
        for book in books:
            self.add_or_replace(book)
        logger.info(f"Loaded {len(self._books)} books (filter: {tag_ids or 'all'})")
        return self.books

    async def refresh(self) -> List[Book]:
        """Re-fetch books with the current filter."""
        return await self.filter_by_tags(self.tag_filter)

    async def refresh_tags(self) -> List[Tag]:
        self._tags = await self.client.list_tags()
        return self.tags

    def add_tag(self, tag: Tag) -> None:
        self._tags = [t for t in self._tags if t.id != tag.id] + [tag]

    async def load_default_filter(self) -> List[Book]:
        """Apply the filter saved in the user's preferences."""
        prefs = await self.client.get_preferences()
        return await self.filter_by_tags(prefs.default_tag_ids)

    async def save_default_filter(self, tag_ids: Iterable[str]) -> List[str]:
        prefs = await self.client.update_preferences(list(tag_ids))
        return prefs.default_tag_ids
