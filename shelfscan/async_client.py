"""Authenticated async client for the shelf backend."""
import asyncio
import httpx
from typing import List, Optional, Dict, Any, Callable, Iterable
import logging

from shelfscan.credentials import Credential, CredentialStore, mask_token
from shelfscan.errors import SyncError, Unauthenticated, RequestFailed, ParseFailed
from shelfscan.identity import IdentityProvider
from shelfscan.models import Book, Tag, Preferences
from shelfscan.parse import (
    parse_book,
    parse_books_response,
    parse_preferences,
    parse_tag,
    parse_tags_response,
)

logger = logging.getLogger(__name__)

UNAUTHORIZED = 401


class SyncClient:
    """
    Client for the shelf backend.

    Every call carries the stored bearer token. A 401 clears the token,
    re-authenticates silently through the identity provider and retries the
    call exactly once. Concurrent 401s for the same token share one refresh.
    """

    def __init__(
        self,
        base_url: str,
        credentials: CredentialStore,
        identity: Optional[IdentityProvider] = None,
        provider: str = "google",
        timeout: int = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the client.

        Args:
            base_url: Backend root, e.g. https://shelf.example.com
            credentials: Store holding the session credential
            identity: Source of identity assertions for silent re-authentication
            provider: Identity provider name used in the exchange path
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.identity = identity
        self.provider = provider

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport
        )

        # In-flight (and last finished) refreshes, keyed by the rejected token
        self._refreshes: Dict[str, "asyncio.Future[Optional[Credential]]"] = {}

    # -- authentication --------------------------------------------------

    async def exchange_identity(self, assertion: str) -> Credential:
        """
        Exchange an identity assertion for a session credential and store it.

        Raises:
            Unauthenticated: the backend rejected the assertion
            RequestFailed: transport or server failure
        """
        path = f"/auth/{self.provider}/mobile"
        try:
            response = await self.client.post(path, json={"id_token": assertion})
        except httpx.TransportError as e:
            logger.error(f"Identity exchange failed: {e}")
            raise RequestFailed(f"Identity exchange failed: {e}") from e

        if response.status_code in (UNAUTHORIZED, 403):
            logger.error(f"Identity exchange rejected: {response.status_code}")
            raise Unauthenticated(f"Identity exchange rejected ({response.status_code})")

        data = self._decode("POST", path, response)
        try:
            user = data.get("user") or {}
            credential = Credential(
                token=data["token"],
                email=user.get("email") or "",
                name=user.get("name") or "",
                user_id=str(user.get("id") or ""),
            )
        except (KeyError, TypeError, AttributeError) as e:
            logger.error(f"Malformed identity exchange response: {response.text!r}")
            raise ParseFailed("Malformed identity exchange response", response.text, response.status_code) from e

        self.credentials.save(credential)
        logger.info(f"Exchanged identity assertion for {credential!r}")
        return credential

    async def sign_in(self, assertion: str) -> Credential:
        """Explicit sign-in with an assertion from the provider's consent UI."""
        return await self.exchange_identity(assertion)

    def sign_out(self):
        """Forget the session credential."""
        self.credentials.clear()

    async def _reauthenticate(self, stale: Credential) -> Optional[Credential]:
        """
        Replace a rejected credential, coalescing concurrent callers.

        All callers that saw `stale` rejected await the same refresh and
        observe the same outcome.
        """
        self.credentials.discard(stale.token)

        refresh = self._refreshes.get(stale.token)
        if refresh is None:
            current = self.credentials.load()
            if current is not None and current.token != stale.token:
                return current

            # No await between lookup and insert: one refresh per stale token
            self._refreshes = {
                token: task for token, task in self._refreshes.items() if not task.done()
            }
            refresh = asyncio.ensure_future(self._refresh())
            self._refreshes[stale.token] = refresh
        else:
            logger.info(f"Joining in-flight refresh for {mask_token(stale.token)}")

        return await asyncio.shield(refresh)

    async def _await_refresh(self) -> Optional[Credential]:
        for refresh in list(self._refreshes.values()):
            if not refresh.done():
                return await asyncio.shield(refresh)
        return None

    async def _refresh(self) -> Optional[Credential]:
        if self.identity is None:
            logger.warning("Cannot re-authenticate: no identity provider configured")
            return None

        logger.info("Attempting silent re-authentication...")
        try:
            assertion = await self.identity.fetch_assertion()
        except Exception as e:
            # any provider failure ends as Unauthenticated for every waiter
            logger.error(f"Re-authentication failed: identity provider error: {e}")
            return None
        if not assertion:
            logger.warning("Re-authentication failed: could not get identity assertion")
            return None

        try:
            credential = await self.exchange_identity(assertion)
        except SyncError as e:
            logger.error(f"Re-authentication failed: {e}")
            return None

        logger.info("Re-authentication successful")
        return credential

    # -- request engine --------------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None
    ) -> Any:
        """
        Make an authenticated request with one re-authentication retry.

        Args:
            method: HTTP method
            path: Path below the base URL
            params: Query parameters
            json: JSON body; encoded afresh for every attempt

        Returns:
            Decoded JSON body, or None for an empty 2xx body

        Raises:
            Unauthenticated: no credential, or the retry was rejected too
            RequestFailed: any other HTTP status or transport failure
            ParseFailed: 2xx with a body that is not JSON
        """
        credential = self.credentials.load()
        if credential is None:
            # the store is empty while a refresh is running
            credential = await self._await_refresh()
        if credential is None:
            raise Unauthenticated(f"Not signed in: {method} {path}")

        response = await self._send(method, path, credential, params, json)

        if response.status_code == UNAUTHORIZED:
            logger.warning(f"Received 401 for {method} {path}, attempting re-authentication...")
            fresh = await self._reauthenticate(credential)
            if fresh is None:
                logger.error(f"Re-authentication failed for {method} {path}")
                raise Unauthenticated("Authentication failed: please sign in again")

            logger.info(f"Retrying {method} {path}")
            response = await self._send(method, path, fresh, params, json)
            if response.status_code == UNAUTHORIZED:
                self.credentials.discard(fresh.token)
                logger.error(f"Retry of {method} {path} rejected again")
                raise Unauthenticated("Authentication failed: please sign in again")

        return self._decode(method, path, response)

    async def _send(
        self,
        method: str,
        path: str,
        credential: Credential,
        params: Optional[Dict[str, Any]],
        json: Any
    ) -> httpx.Response:
        # Request bodies are single-use, so every attempt builds a new request
        request = self.client.build_request(
            method,
            path,
            params=params,
            json=json,
            headers={"Authorization": f"Bearer {credential.token}"}
        )
        try:
            logger.debug(f"{method} {path}")
            return await self.client.send(request)
        except httpx.TimeoutException as e:
            logger.warning(f"Timeout on {method} {path}")
            raise RequestFailed(f"Timeout on {method} {path}") from e
        except httpx.TransportError as e:
            logger.warning(f"Connection error on {method} {path}: {e}")
            raise RequestFailed(f"Connection error on {method} {path}: {e}") from e

    def _decode(self, method: str, path: str, response: httpx.Response) -> Any:
        if not response.is_success:
            logger.error(f"{method} {path} failed: {response.status_code} - {response.text}")
            raise RequestFailed(f"{method} {path} failed", response.status_code)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"Unreadable response for {method} {path}: {response.text!r}")
            raise ParseFailed(f"Unreadable response for {method} {path}", response.text, response.status_code) from e

    @staticmethod
    def _parse(parser: Callable[[Any], Any], data: Any, what: str) -> Any:
        try:
            return parser(data)
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            logger.error(f"Malformed {what} payload: {data!r}")
            raise ParseFailed(f"Malformed {what} payload", repr(data)) from e

    # -- typed operations ------------------------------------------------

    async def list_books(self, tag_ids: Optional[Iterable[str]] = None) -> List[Book]:
        """
        List the user's books.

        Args:
            tag_ids: Only books carrying these tags; empty or None means all
        """
        tag_ids = list(tag_ids or [])
        params = {"tags": ",".join(tag_ids)} if tag_ids else None
        data = await self.request("GET", "/api/books", params=params)
        return self._parse(parse_books_response, data, "books")

    async def add_book(self, isbn: str) -> Book:
        """Add a book by ISBN; the server creates it or returns the existing one."""
        data = await self.request("POST", "/api/books/add", json={"isbn": isbn})
        return self._parse(parse_book, data, "book")

    async def get_book_by_isbn(self, isbn: str) -> Book:
        """Look up a book the backend already knows by ISBN."""
        data = await self.request("GET", f"/api/books/isbn/{isbn}")
        return self._parse(parse_book, data, "book")

    async def delete_book(self, book_id: str) -> None:
        """Delete a book from the user's collection."""
        await self.request("DELETE", f"/api/books/{book_id}")
        logger.info(f"Deleted book {book_id}")

    async def list_tags(self) -> List[Tag]:
        """List the user's tags."""
        data = await self.request("GET", "/api/tags")
        return self._parse(parse_tags_response, data, "tags")

    async def create_tag(self, name: str) -> Tag:
        """Create a tag by name."""
        data = await self.request("POST", "/api/tags", json={"name": name})
        return self._parse(parse_tag, data, "tag")

    async def set_book_tags(self, book_id: str, names: List[str]) -> Optional[Book]:
        """
        Replace a book's tags.

        Returns:
            The updated book when the server sends one back, else None
        """
        data = await self.request("PUT", f"/api/books/{book_id}/tags", json={"tags": list(names)})
        if isinstance(data, dict) and "title" in data:
            return self._parse(parse_book, data, "book")
        return None

    async def get_preferences(self) -> Preferences:
        """Fetch the user's preferences (default tag filter)."""
        data = await self.request("GET", "/api/user/preferences")
        return self._parse(parse_preferences, data or {}, "preferences")

    async def update_preferences(self, default_tag_ids: List[str]) -> Preferences:
        """Store the default tag filter."""
        data = await self.request(
            "PUT",
            "/api/user/preferences",
            json={"default_tag_ids": list(default_tag_ids)}
        )
        if not data:
            return Preferences(default_tag_ids=list(default_tag_ids))
        return self._parse(parse_preferences, data, "preferences")

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
