"""Parse and normalize backend and Google Books payloads."""
import logging
from typing import Dict, Any, List, Optional

from shelfscan.isbn import isbn10_to_isbn13
from shelfscan.models import Book, Tag, Preferences

logger = logging.getLogger(__name__)


def parse_tag(item: Dict[str, Any]) -> Tag:
    """Parse a `{id, name}` tag object."""
    return Tag(id=str(item["id"]), name=item["name"])


def parse_tags_response(response_json: Dict[str, Any]) -> List[Tag]:
    """Parse `{"tags": [...], "count": n}`."""
    return [parse_tag(item) for item in response_json.get("tags") or []]


def parse_book(item: Dict[str, Any]) -> Book:
    """
    Parse a single book object returned by the backend.

    Args:
        item: Book JSON with at least `title`

    Returns:
        Book object

    Raises:
        KeyError, TypeError: if required fields are missing
    """
    # Older servers send a single `isbn` field instead of isbn13/isbn10
    isbn13 = item.get("isbn13") or ""
    isbn10 = item.get("isbn10") or ""
    legacy = item.get("isbn") or ""
    if legacy and not isbn13 and not isbn10:
        if len(legacy) == 13:
            isbn13 = legacy
        else:
            isbn10 = legacy

    return Book(
        id=str(item.get("id") or ""),
        title=item["title"],
        isbn13=isbn13,
        isbn10=isbn10,
        thumbnail=item.get("thumbnail"),
        tags=[parse_tag(tag) for tag in item.get("tags") or []],
    )


def parse_books_response(response_json: Dict[str, Any]) -> List[Book]:
    """
    Parse `{"books": [...], "count": n}`.

    Args:
        response_json: Complete list response

    Returns:
        List of Book objects (empty if no books)
    """
    return [parse_book(item) for item in response_json.get("books") or []]


def parse_preferences(response_json: Dict[str, Any]) -> Preferences:
    """Parse the user preference record."""
    return Preferences(
        default_tag_ids=[str(tag_id) for tag_id in response_json.get("default_tag_ids") or []],
        user_id=str(response_json.get("user_id") or ""),
        updated_at=response_json.get("updated_at"),
    )


def parse_volume(item: Dict[str, Any]) -> Optional[Book]:
    """
    Parse a single volume from the Google Books API.

    Args:
        item: Single item from a volumes response

    Returns:
        Book object (without server id) or None if parsing fails
    """
    try:
        volume_info = item.get("volumeInfo", {})
        title = volume_info.get("title")
        if not title:
            return None

        isbn13 = ""
        isbn10 = ""
        for identifier in volume_info.get("industryIdentifiers", []):
            if identifier.get("type") == "ISBN_13":
                isbn13 = identifier.get("identifier", "")
            elif identifier.get("type") == "ISBN_10":
                isbn10 = identifier.get("identifier", "")
        if not isbn13 and isbn10:
            isbn13 = isbn10_to_isbn13(isbn10) or ""

        image_links = volume_info.get("imageLinks", {})
        thumbnail = image_links.get("smallThumbnail") or image_links.get("thumbnail")
        if thumbnail:
            thumbnail = thumbnail.replace("http:", "https:", 1)

        return Book(
            title=title,
            isbn13=isbn13,
            isbn10=isbn10,
            thumbnail=thumbnail,
        )
    except (AttributeError, TypeError) as e:
        # Log but don't crash - APIs can be unpredictable
        logger.warning(f"Failed to parse volume: {e}")
        return None


def parse_volumes_response(response_json: Dict[str, Any]) -> List[Book]:
    """Parse a full Google Books volumes response."""
    books = []

    for item in response_json.get("items", []):
        book = parse_volume(item)
        if book:
            books.append(book)

    return books
