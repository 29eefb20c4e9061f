"""Resolve tag names to server tags and apply them to books."""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Set

from shelfscan.async_client import SyncClient
from shelfscan.collection import CollectionCache
from shelfscan.errors import SyncError
from shelfscan.models import Book, Tag

logger = logging.getLogger(__name__)


@dataclass
class TagUpdateResult:
    """Outcome of applying one tag set to a batch of books."""
    total: int
    completed: int = 0
    updated: List[Book] = field(default_factory=list)
    failed: List[Book] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def initial_selection(books: Iterable[Book]) -> Set[str]:
    """Tag names common to every book (empty for no books)."""
    selection = None
    for book in books:
        names = set(book.tag_names)
        selection = names if selection is None else selection & names
    return selection or set()


def unique_names(names: Iterable[str]) -> List[str]:
    """Strip names and drop blanks and case-insensitive repeats, keeping order."""
    seen = set()
    out = []
    for name in names:
        name = (name or "").strip()
        if name and name.casefold() not in seen:
            seen.add(name.casefold())
            out.append(name)
    return out


class TagReconciler:
    """Turns free-text tag names into server tags and applies them."""

    def __init__(self, client: SyncClient, cache: CollectionCache):
        self.client = client
        self.cache = cache

    async def resolve(self, names: Iterable[str]) -> List[Tag]:
        """
        Map names to server tags, creating the missing ones.

        Matching is case-insensitive against the known tags. Creation is
        sequential so the server never sees two creates for one name.

        Raises:
            SyncError: a lookup or create failed
        """
        wanted = unique_names(names)
        if wanted and not self.cache.tags:
            await self.cache.refresh_tags()

        known = {tag.name.casefold(): tag for tag in self.cache.tags}
        resolved: List[Tag] = []
        for name in wanted:
            tag = known.get(name.casefold())
            if tag is None:
                tag = await self.client.create_tag(name)
                logger.info(f"Created tag {tag.name} ({tag.id})")
                self.cache.add_tag(tag)
                known[name.casefold()] = tag
                known[tag.name.casefold()] = tag
            if all(t.id != tag.id for t in resolved):
                resolved.append(tag)
        return resolved

    async def apply(self, books: Iterable[Book], names: Iterable[str]) -> TagUpdateResult:
        """
        Set the tags named `names` on every book, then refresh once.

        A failed per-book update is logged and counted; the batch always
        completes and the refresh runs after the last update finishes.

        Raises:
            SyncError: resolving the names or the final refresh failed
        """
        books = list(books)
        tags = await self.resolve(names)
        result = TagUpdateResult(total=len(books))

        async def update(book: Book):
            try:
                if not book.id:
                    logger.warning(f"Cannot tag book without ID: {book.title}")
                    result.failed.append(book)
                    return
                result.updated.append(await self.cache.set_tags(book, tags))
            except SyncError as e:
                logger.error(f"Failed to update tags for {book.title}: {e}")
                result.failed.append(book)
            finally:
                result.completed += 1

        await asyncio.gather(*(update(book) for book in books))
        logger.info(
            f"Tag update finished: {len(result.updated)}/{result.total} books, "
            f"{len(result.failed)} failed"
        )

        await self.cache.refresh()
        await self.cache.refresh_tags()
        return result
