"""HTTP client for Google Books ISBN lookups with resilience patterns."""
import time
import random
import requests
from typing import Optional, Dict, Any
import logging

from shelfscan.models import Book
from shelfscan.parse import parse_volumes_response

logger = logging.getLogger(__name__)


class GoogleBooksClient:
    """Client for Google Books API with timeouts, retries, and backoff."""

    BASE_URL = "https://www.googleapis.com/books/v1/volumes"

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: int = 10,
        max_retries: int = 3,
        base_backoff: float = 1.0,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize Google Books API client.

        Args:
            api_key: Optional API key (increases rate limits)
            timeout: Request timeout in seconds
            max_retries: Maximum number of retry attempts
            base_backoff: Base delay for exponential backoff
            session: Optional session to reuse
        """
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_backoff = base_backoff

        # Create session for connection pooling
        self.session = session or requests.Session()

    def lookup_isbn(self, isbn: str) -> Optional[Book]:
        """
        Look up a single book by ISBN.

        Args:
            isbn: ISBN-10 or ISBN-13

        Returns:
            Book (no server id) when exactly one volume matches, else None
        """
        params = {"q": f"isbn:{isbn}"}

        if self.api_key:
            params["key"] = self.api_key

        response = self._make_request_with_retry(self.BASE_URL, params)
        if not response:
            return None

        if response.get("totalItems") != 1:
            logger.info(f"Expected one volume for ISBN {isbn}, got {response.get('totalItems', 0)}")
            return None

        books = parse_volumes_response(response)
        return books[0] if books else None

    def _make_request_with_retry(
        self,
        url: str,
        params: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """
        GET a volumes query, retrying rate limits, 5xx, timeouts and dropped connections.

        Returns:
            Response JSON, or None on a client error, an unreadable body,
            or once every attempt is spent
        """
        for attempt in range(1, self.max_retries + 1):
            logger.info(f"Lookup attempt {attempt}/{self.max_retries}: {params.get('q')}")
            try:
                response = self.session.get(url, params=params, timeout=self.timeout)
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"{type(e).__name__} on attempt {attempt}: {e}")
            else:
                status = response.status_code
                if status == 200:
                    try:
                        return response.json()
                    except ValueError as e:
                        logger.error(f"Unreadable volumes response: {e}")
                        return None
                if status != 429 and status < 500:
                    # 4xx other than rate limiting will not improve on retry
                    logger.error(f"Client error ({status}): {response.text}")
                    return None
                logger.warning(f"Retryable status {status} on attempt {attempt}")

            if attempt < self.max_retries:
                self._backoff(attempt - 1)

        logger.error(f"Lookup failed after {self.max_retries} attempts")
        return None

    def _backoff(self, attempt: int):
        """
        Sleep with exponential backoff and jitter.

        Args:
            attempt: Current attempt number (0-indexed)
        """
        delay = self.base_backoff * (2 ** attempt)
        jitter = random.uniform(0, delay)
        total_delay = delay + jitter

        logger.info(f"Backing off for {total_delay:.2f} seconds")
        time.sleep(total_delay)

    def close(self):
        """Close the session."""
        self.session.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
