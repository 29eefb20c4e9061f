"""Data models for books, tags and preferences."""
from dataclasses import dataclass, field
from typing import Optional, List, Tuple


@dataclass(frozen=True)
class Tag:
    """Server-side tag."""
    id: str
    name: str


@dataclass(eq=False)
class Book:
    """Book in the user's collection."""
    title: str
    id: str = ""
    isbn13: str = ""
    isbn10: str = ""
    thumbnail: Optional[str] = None
    tags: List[Tag] = field(default_factory=list)

    @property
    def tag_names(self) -> List[str]:
        """Tag names in server order."""
        return [tag.name for tag in self.tags]

    @property
    def tags_str(self) -> str:
        """Format tags as comma-separated string."""
        return ", ".join(self.tag_names) if self.tags else "None"

    @property
    def isbn(self) -> str:
        """Preferred ISBN for display."""
        return self.isbn13 or self.isbn10


@dataclass
class Preferences:
    """Per-user preferences stored server-side."""
    default_tag_ids: List[str] = field(default_factory=list)
    user_id: str = ""
    updated_at: Optional[str] = None


def book_key(book: Book) -> Tuple[str, str]:
    """
    Identity key of a book.

    The server id when present, else the ISBN-13 natural key.
    """
    if book.id:
        return ("id", book.id)
    return ("isbn", book.isbn13)


def same_book(a: Book, b: Book) -> bool:
    """
    Identity rule shared by insert, replace and remove.

    Server ids decide when both sides carry one; otherwise ISBN-13 equality
    decides. Two books with neither id nor ISBN never match.
    """
    if a.id and b.id:
        return a.id == b.id
    return bool(a.isbn13) and a.isbn13 == b.isbn13
