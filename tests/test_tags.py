"""Tests for tag reconciliation."""
import asyncio

from conftest import make_client
from shelfscan.collection import CollectionCache
from shelfscan.models import Book, Tag
from shelfscan.tags import TagReconciler, initial_selection, unique_names


def run(coro):
    return asyncio.run(coro)


def test_initial_selection_is_intersection():
    a = Book("A", id="1", tags=[Tag("1", "x"), Tag("2", "y")])
    b = Book("B", id="2", tags=[Tag("2", "y"), Tag("3", "z")])

    assert initial_selection([a, b]) == {"y"}


def test_initial_selection_edge_cases():
    a = Book("A", id="1", tags=[Tag("1", "x")])
    untagged = Book("B", id="2")

    assert initial_selection([]) == set()
    assert initial_selection([a]) == {"x"}
    assert initial_selection([a, untagged]) == set()


def test_unique_names():
    assert unique_names([" Fiction", "fiction", "", "  ", "Sci-Fi", "FICTION"]) == ["Fiction", "Sci-Fi"]


def test_resolve_matches_case_insensitively_and_creates_missing(backend):
    fiction = backend.add_tag("Fiction")

    async def scenario():
        async with make_client(backend) as client:
            cache = CollectionCache(client)
            reconciler = TagReconciler(client, cache)
            tags = await reconciler.resolve(["fiction", "to-read", "TO-READ", "classics"])
            return tags, cache.tags

    tags, known = run(scenario())

    assert tags[0] == Tag(fiction, "Fiction")
    assert [t.name for t in tags] == ["Fiction", "to-read", "classics"]
    assert backend.count("POST", "/api/tags") == 2
    assert {t.name for t in known} == {"Fiction", "to-read", "classics"}


def test_tag_creation_is_sequential(backend):
    """Creates never overlap: each one is answered before the next is sent."""
    in_flight = []
    peak = []
    original = backend.handler

    async def tracking_handler(request):
        if request.url.path == "/api/tags" and request.method == "POST":
            in_flight.append(request)
            peak.append(len(in_flight))
            await asyncio.sleep(0)
            response = await original(request)
            in_flight.remove(request)
            return response
        return await original(request)

    backend.handler = tracking_handler

    async def scenario():
        async with make_client(backend) as client:
            reconciler = TagReconciler(client, CollectionCache(client))
            return await reconciler.resolve(["a", "b", "c", "d"])

    tags = run(scenario())

    assert len(tags) == 4
    assert max(peak) == 1


def test_apply_tags_batch_and_refreshes_once(backend):
    first = backend.add_book("Dune", isbn13="9780441172719")
    second = backend.add_book("SPQR", isbn13="9781631492228")

    async def scenario():
        async with make_client(backend) as client:
            cache = CollectionCache(client)
            await cache.refresh()
            reconciler = TagReconciler(client, cache)
            result = await reconciler.apply(cache.books, ["favourites"])
            return result, cache

    result, cache = run(scenario())

    assert result.total == result.completed == 2
    assert result.ok
    assert all(b.tag_names == ["favourites"] for b in cache.books)
    assert {t.name for t in cache.tags} == {"favourites"}
    assert backend.count("PUT", f"/api/books/{first}/tags") == 1
    assert backend.count("PUT", f"/api/books/{second}/tags") == 1
    # initial load plus the single refresh after the batch
    assert backend.count("GET", "/api/books") == 2
    puts = [i for i, r in enumerate(backend.requests) if r[0] == "PUT"]
    last_books = max(i for i, r in enumerate(backend.requests) if r[1] == "/api/books")
    assert last_books > max(puts)


def test_apply_counts_failures_and_still_completes(backend):
    fiction = backend.add_tag("fiction")
    ok_id = backend.add_book("Dune", isbn13="9780441172719")
    bad_id = backend.add_book("SPQR", isbn13="9781631492228")
    backend.fail("PUT", f"/api/books/{bad_id}/tags", 500)

    async def scenario():
        async with make_client(backend) as client:
            cache = CollectionCache(client)
            await cache.refresh()
            books = cache.books + [Book("Scanned only", isbn13="9780134190440")]
            return await TagReconciler(client, cache).apply(books, ["Fiction"])

    result = run(scenario())

    assert result.total == result.completed == 3
    assert [b.id for b in result.updated] == [ok_id]
    assert sorted(b.title for b in result.failed) == ["SPQR", "Scanned only"]
    assert not result.ok
    assert backend.books[ok_id]["tags"] == [{"id": fiction, "name": "fiction"}]
    assert backend.count("POST", "/api/tags") == 0


def test_apply_empty_names_clears_tags(backend):
    fiction = backend.add_tag("fiction")
    book_id = backend.add_book("Dune", isbn13="9780441172719", tags=[fiction])

    async def scenario():
        async with make_client(backend) as client:
            cache = CollectionCache(client)
            await cache.refresh()
            await TagReconciler(client, cache).apply(cache.books, [])
            return cache

    cache = run(scenario())

    assert cache.books[0].tags == []
    assert backend.books[book_id]["tags"] == []
