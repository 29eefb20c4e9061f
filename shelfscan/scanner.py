"""Admission of decoded barcodes into the collection."""
import logging
import threading
from typing import Iterable, List, Optional

from shelfscan.collection import CollectionCache
from shelfscan.isbn import is_valid_isbn13
from shelfscan.models import Book
from shelfscan.tags import TagReconciler, unique_names

logger = logging.getLogger(__name__)


class ScanDeduplicator:
    """
    ISBNs admitted during one scanning session.

    Decoder threads may call `admit` concurrently; the membership check and
    the insert happen under one lock.
    """

    def __init__(self):
        self._seen = set()
        self._lock = threading.Lock()

    def admit(self, raw) -> bool:
        """True the first time a checksum-valid ISBN-13 is seen this session."""
        if not is_valid_isbn13(raw):
            logger.debug(f"Invalid barcode detected: {raw!r}")
            return False
        with self._lock:
            if raw in self._seen:
                logger.debug(f"Duplicate barcode detected: {raw}")
                return False
            self._seen.add(raw)
        return True

    def seed(self, isbns: Iterable[str]) -> None:
        """Mark ISBNs already in the collection as seen."""
        valid = [isbn for isbn in isbns if is_valid_isbn13(isbn)]
        with self._lock:
            self._seen.update(valid)

    def reset(self) -> None:
        with self._lock:
            self._seen.clear()

    @property
    def admitted(self) -> List[str]:
        with self._lock:
            return sorted(self._seen)

    def __contains__(self, isbn):
        with self._lock:
            return isbn in self._seen

    def __len__(self):
        with self._lock:
            return len(self._seen)


class ScanSession:
    """Barcodes in, books out: dedupe, add server-side, merge, auto-tag."""

    def __init__(
        self,
        cache: CollectionCache,
        reconciler: Optional[TagReconciler] = None,
        auto_tags: Iterable[str] = (),
        deduplicator: Optional[ScanDeduplicator] = None
    ):
        self.cache = cache
        self.reconciler = reconciler
        self.auto_tags = unique_names(auto_tags)
        self.deduplicator = deduplicator or ScanDeduplicator()

    def start(self) -> None:
        """Treat books already in the collection as scanned."""
        self.deduplicator.seed(book.isbn13 for book in self.cache.books)

    def close(self) -> None:
        self.deduplicator.reset()

    async def handle(self, raw: str) -> Optional[Book]:
        """
        Process one decoded barcode.

        Returns:
            The book as now held in the collection, or None if the barcode
            was invalid or already scanned this session

        Raises:
            SyncError: the server call failed; the barcode stays admitted
        """
        if not self.deduplicator.admit(raw):
            return None

        book = await self.cache.add_by_isbn(raw)
        logger.info(f"Added book from scan {raw}: {book.title}")

        if self.auto_tags and self.reconciler is not None:
            names = book.tag_names + self.auto_tags
            await self.reconciler.apply([book], names)

        return self.cache.find(book) or book

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
