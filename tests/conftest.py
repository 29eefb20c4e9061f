"""Shared pytest fixtures and an in-memory stand-in for the shelf backend."""
import asyncio
import itertools
import json
from typing import Any, Dict, List, Optional

import httpx
import pytest

from shelfscan.async_client import SyncClient
from shelfscan.credentials import Credential, CredentialStore
from shelfscan.identity import StaticIdentityProvider
from shelfscan.storage import MemoryKeyValueStore

BASE_URL = "https://shelf.test"


class FakeBackend:
    """
    Serves the shelf API from memory through httpx.MockTransport.

    Every handled request is recorded as (method, path, token, body).
    `fail` queues raw status codes for a route, answered before auth checks.
    """

    def __init__(self):
        self.requests: List[tuple] = []
        self.valid_tokens = {"token-1"}
        self.assertions = {"good-assertion": "token-2"}
        self.books: Dict[str, Dict[str, Any]] = {}
        self.tags: Dict[str, Dict[str, Any]] = {}
        self.default_tag_ids: List[str] = []
        self.queued: Dict[tuple, List[Any]] = {}
        self._ids = itertools.count(100)

    # -- setup helpers ---------------------------------------------------

    def add_book(self, title, isbn13="", tags=(), book_id=None):
        book_id = book_id or str(next(self._ids))
        self.books[book_id] = {
            "id": book_id,
            "title": title,
            "isbn13": isbn13,
            "isbn10": "",
            "thumbnail": None,
            "tags": [self.tags[tag_id] for tag_id in tags],
        }
        return book_id

    def add_tag(self, name, tag_id=None):
        tag_id = tag_id or str(next(self._ids))
        self.tags[tag_id] = {"id": tag_id, "name": name}
        return tag_id

    def expire(self, token="token-1"):
        self.valid_tokens.discard(token)

    def fail(self, method, path, *responses):
        """Queue status codes (or exceptions to raise) for a route."""
        self.queued.setdefault((method, path), []).extend(responses)

    def count(self, method, path):
        return sum(1 for m, p, _, _ in self.requests if m == method and p == path)

    # -- transport -------------------------------------------------------

    async def handler(self, request: httpx.Request) -> httpx.Response:
        # yield so concurrent callers interleave like real network I/O
        await asyncio.sleep(0)

        path = request.url.path
        body = json.loads(request.content) if request.content else None
        auth = request.headers.get("Authorization", "")
        token = auth[len("Bearer "):] if auth.startswith("Bearer ") else None
        self.requests.append((request.method, path, token, body))

        queued = self.queued.get((request.method, path))
        if queued:
            outcome = queued.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, httpx.Response):
                return outcome
            return httpx.Response(outcome, json={"error": "queued failure"})

        if path.startswith("/auth/"):
            return self._exchange(body)

        if token not in self.valid_tokens:
            return httpx.Response(401, json={"error": "unauthorized"})

        return self._route(request, path, body)

    def _exchange(self, body):
        token = self.assertions.get((body or {}).get("id_token"))
        if token is None:
            return httpx.Response(401, json={"error": "invalid id token"})
        self.valid_tokens.add(token)
        return httpx.Response(200, json={
            "token": token,
            "user": {"id": "u-1", "email": "reader@example.com", "name": "Reader"},
        })

    def _route(self, request, path, body):
        method = request.method
        parts = path.strip("/").split("/")

        if path == "/api/books" and method == "GET":
            wanted = [t for t in request.url.params.get("tags", "").split(",") if t]
            books = [
                b for b in self.books.values()
                if not wanted or any(tag["id"] in wanted for tag in b["tags"])
            ]
            return httpx.Response(200, json={"books": books, "count": len(books)})

        if path == "/api/books/add" and method == "POST":
            isbn = body["isbn"]
            for book in self.books.values():
                if book["isbn13"] == isbn:
                    return httpx.Response(200, json=book)
            book_id = self.add_book(f"Book {isbn}", isbn13=isbn)
            return httpx.Response(201, json=self.books[book_id])

        if parts[:3] == ["api", "books", "isbn"] and method == "GET":
            for book in self.books.values():
                if book["isbn13"] == parts[3]:
                    return httpx.Response(200, json=book)
            return httpx.Response(404, json={"error": "not found"})

        if len(parts) == 3 and parts[:2] == ["api", "books"] and method == "DELETE":
            if self.books.pop(parts[2], None) is None:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(204)

        if len(parts) == 4 and parts[3] == "tags" and method == "PUT":
            book = self.books.get(parts[2])
            if book is None:
                return httpx.Response(404, json={"error": "not found"})
            book["tags"] = [self._tag_named(name) for name in body["tags"]]
            return httpx.Response(204)

        if path == "/api/tags" and method == "GET":
            tags = list(self.tags.values())
            return httpx.Response(200, json={"tags": tags, "count": len(tags)})

        if path == "/api/tags" and method == "POST":
            return httpx.Response(201, json=self._tag_named(body["name"]))

        if path == "/api/user/preferences":
            if method == "PUT":
                self.default_tag_ids = list(body["default_tag_ids"])
            return httpx.Response(200, json={
                "user_id": "u-1",
                "default_tag_ids": self.default_tag_ids,
                "updated_at": "2026-01-01T00:00:00Z",
            })

        return httpx.Response(404, json={"error": "no route"})

    def _tag_named(self, name):
        for tag in self.tags.values():
            if tag["name"].lower() == name.lower():
                return tag
        return self.tags[self.add_tag(name)]


def make_client(
    backend: FakeBackend,
    store: Optional[CredentialStore] = None,
    assertion: Optional[str] = "good-assertion",
    identity=None
) -> SyncClient:
    """SyncClient wired to the fake backend; signed in as token-1 by default."""
    if store is None:
        store = CredentialStore(MemoryKeyValueStore())
        store.save(Credential(token="token-1", email="reader@example.com", name="Reader"))
    return SyncClient(
        BASE_URL,
        store,
        identity=identity or StaticIdentityProvider(assertion),
        transport=httpx.MockTransport(backend.handler)
    )


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def credential_store() -> CredentialStore:
    store = CredentialStore(MemoryKeyValueStore())
    store.save(Credential(token="token-1", email="reader@example.com", name="Reader"))
    return store


@pytest.fixture
def sample_isbn() -> str:
    """A valid ISBN-13."""
    return "9780134190440"
