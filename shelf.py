#!/usr/bin/env python3
"""Shelf CLI - scan ISBNs into a tagged, synced book collection."""
import argparse
import asyncio
import csv
import inspect
import json
import sys
from tabulate import tabulate
from shelfscan.async_client import SyncClient
from shelfscan.client import GoogleBooksClient
from shelfscan.collection import CollectionCache
from shelfscan.config import Config
from shelfscan.credentials import CredentialStore
from shelfscan.errors import SyncError, Unauthenticated
from shelfscan.identity import StaticIdentityProvider
from shelfscan.isbn import normalize_isbn, isbn10_to_isbn13
from shelfscan.scanner import ScanSession
from shelfscan.storage import FileKeyValueStore
from shelfscan.tags import TagReconciler, initial_selection
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def setup_store(config: Config):
    """Open the configured key-value store."""
    if config.STORE == "postgres":
        from shelfscan.database import PostgresKeyValueStore
        store = PostgresKeyValueStore(config.DATABASE_URL)
        store.init_schema()
        return store
    return FileKeyValueStore(config.STORE_PATH)


def setup_client(config: Config, store, id_token=None) -> SyncClient:
    """Build the backend client around the credential store."""
    return SyncClient(
        config.API_URL,
        CredentialStore(store),
        identity=StaticIdentityProvider(id_token or config.ID_TOKEN),
        provider=config.AUTH_PROVIDER,
        timeout=config.DEFAULT_TIMEOUT
    )


def split_ids(value):
    """Parse a comma-separated id list."""
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def book_to_dict(book):
    return {
        "id": book.id,
        "title": book.title,
        "isbn13": book.isbn13,
        "isbn10": book.isbn10,
        "thumbnail": book.thumbnail,
        "tags": [{"id": tag.id, "name": tag.name} for tag in book.tags]
    }


def display_books(books, format_type: str):
    """Display books in specified format."""
    if format_type == "table":
        headers = ["ID", "Title", "ISBN", "Tags"]
        rows = [
            [
                book.id or "-",
                book.title[:50] + "..." if len(book.title) > 50 else book.title,
                book.isbn or "-",
                book.tags_str[:30] + "..." if len(book.tags_str) > 30 else book.tags_str
            ]
            for book in books
        ]
        print("\n" + tabulate(rows, headers=headers, tablefmt="grid"))

    elif format_type == "json":
        print(json.dumps([book_to_dict(book) for book in books], indent=2))

    elif format_type == "compact":
        for i, book in enumerate(books, 1):
            print(f"{i}. {book.title} ({book.isbn or 'no ISBN'})")


async def login(args, config: Config, store):
    """Exchange an identity assertion for a session."""
    assertion = args.id_token or config.ID_TOKEN
    if not assertion:
        logger.error("No identity token: pass --id-token or set SHELF_ID_TOKEN")
        return 1
    async with setup_client(config, store, assertion) as client:
        credential = await client.sign_in(assertion)
    print(f"Signed in as {credential.name or credential.email}")
    return 0


def logout(args, config: Config, store):
    CredentialStore(store).clear()
    print("Signed out")
    return 0


def whoami(args, config: Config, store):
    credential = CredentialStore(store).load()
    if credential is None:
        print("Not signed in")
        return 1
    print(f"{credential.name} <{credential.email}>")
    return 0


async def list_books(args, config: Config, store):
    """List books, optionally filtered by tag ids."""
    async with setup_client(config, store) as client:
        cache = CollectionCache(client)
        if args.default_filter:
            books = await cache.load_default_filter()
        else:
            books = await cache.filter_by_tags(split_ids(args.tags))
    display_books(books, args.format)
    return 0


def read_barcodes(args):
    """Barcodes from arguments, else one per line from stdin."""
    if args.isbns:
        return list(args.isbns)
    return [line.strip() for line in sys.stdin if line.strip()]


async def scan(args, config: Config, store):
    """Add scanned ISBNs to the collection."""
    async with setup_client(config, store) as client:
        cache = CollectionCache(client)
        await cache.refresh()
        session = ScanSession(cache, TagReconciler(client, cache), auto_tags=args.tag or [])

        added = []
        failures = 0
        with session:
            for raw in read_barcodes(args):
                isbn = normalize_isbn(raw)
                if isbn and len(isbn) == 10:
                    isbn = isbn10_to_isbn13(isbn)
                try:
                    book = await session.handle(isbn or raw)
                except Unauthenticated:
                    raise
                except SyncError as e:
                    logger.error(f"Could not add {raw}: {e}")
                    failures += 1
                    continue
                if book is None:
                    logger.info(f"Skipped {raw} (invalid or already scanned)")
                else:
                    added.append(book)

    logger.info(f"Added {len(added)} books")
    display_books(added, args.format)
    return 1 if failures else 0


async def remove_books(args, config: Config, store):
    """Remove books by id."""
    async with setup_client(config, store) as client:
        cache = CollectionCache(client)
        await cache.refresh()
        failures = 0
        for book_id in args.book_ids:
            book = next((b for b in cache.books if b.id == book_id), None)
            if book is None:
                logger.warning(f"No book with id {book_id}")
                failures += 1
                continue
            try:
                await cache.remove(book)
            except Unauthenticated:
                raise
            except SyncError as e:
                logger.error(f"Could not remove {book.title}: {e}")
                failures += 1
    return 1 if failures else 0


async def list_tags(args, config: Config, store):
    async with setup_client(config, store) as client:
        tags = await client.list_tags()
    print("\n" + tabulate([[tag.id, tag.name] for tag in tags], headers=["ID", "Name"], tablefmt="grid"))
    return 0


async def tag_books(args, config: Config, store):
    """Replace the tags of the given books."""
    async with setup_client(config, store) as client:
        cache = CollectionCache(client)
        await cache.refresh()
        await cache.refresh_tags()
        reconciler = TagReconciler(client, cache)

        wanted = set(args.book_ids)
        books = [b for b in cache.books if b.id in wanted]
        if not books:
            logger.error("None of the given book ids are in the collection")
            return 1

        names = list(args.name or [])
        if args.add:
            names = sorted(initial_selection(books)) + names

        result = await reconciler.apply(books, names)
        display_books(cache.books, args.format)
    return 0 if result.ok else 1


async def preferences(args, config: Config, store):
    """Show or set the default tag filter."""
    async with setup_client(config, store) as client:
        if args.set is not None:
            tag_ids = await CollectionCache(client).save_default_filter(split_ids(args.set))
        else:
            tag_ids = (await client.get_preferences()).default_tag_ids
    print(f"Default tag filter: {', '.join(tag_ids) or 'all books'}")
    return 0


def lookup(args, config: Config, store):
    """Look up an ISBN on Google Books."""
    with GoogleBooksClient(
        api_key=config.GOOGLE_BOOKS_API_KEY,
        max_retries=config.DEFAULT_MAX_RETRIES
    ) as client:
        book = client.lookup_isbn(normalize_isbn(args.isbn) or args.isbn)

    if book is None:
        logger.error(f"No unique Google Books match for {args.isbn}")
        return 1
    display_books([book], args.format)
    return 0


async def export_data(args, config: Config, store):
    """Export the collection."""
    async with setup_client(config, store) as client:
        books = await client.list_books()

    if args.format == "json":
        data = [book_to_dict(book) for book in books]
        if args.output:
            with open(args.output, 'w') as f:
                json.dump(data, f, indent=2)
            logger.info(f"✅ Exported {len(books)} books to {args.output}")
        else:
            print(json.dumps(data, indent=2))

    elif args.format == "csv":
        output_file = args.output or "books_export.csv"
        with open(output_file, 'w', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow(["ID", "Title", "ISBN13", "ISBN10", "Tags"])

            for book in books:
                writer.writerow([
                    book.id,
                    book.title,
                    book.isbn13,
                    book.isbn10,
                    ";".join(book.tag_names)
                ])

        logger.info(f"✅ Exported {len(books)} books to {output_file}")
    return 0


COMMANDS = {
    "login": login,
    "logout": logout,
    "whoami": whoami,
    "books": list_books,
    "scan": scan,
    "remove": remove_books,
    "tags": list_tags,
    "tag": tag_books,
    "prefs": preferences,
    "lookup": lookup,
    "export": export_data,
}


def build_parser():
    parser = argparse.ArgumentParser(
        description="Shelf - scan and tag your book collection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Sign in with an ID token from the identity provider
  %(prog)s login --id-token eyJhbGciOi...

  # Scan barcodes piped from a decoder, tagging them on the way in
  zbarcam --raw | %(prog)s scan --tag to-read

  # Books carrying tags 3 and 7
  %(prog)s books --tags 3,7

  # Tag two books
  %(prog)s tag 12 15 --name fiction --name favourites
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    login_parser = subparsers.add_parser("login", help="Sign in with an identity token")
    login_parser.add_argument("--id-token", help="Identity assertion (default: SHELF_ID_TOKEN)")

    subparsers.add_parser("logout", help="Forget the stored session")
    subparsers.add_parser("whoami", help="Show the signed-in user")

    books_parser = subparsers.add_parser("books", help="List books")
    books_parser.add_argument("--tags", help="Comma-separated tag ids to filter on")
    books_parser.add_argument("--default-filter", action="store_true", help="Use the saved default filter")
    books_parser.add_argument("--format", choices=["table", "json", "compact"], default="table", help="Output format")

    scan_parser = subparsers.add_parser("scan", help="Add books by ISBN")
    scan_parser.add_argument("isbns", nargs="*", help="ISBNs (default: read stdin)")
    scan_parser.add_argument("--tag", action="append", help="Tag every scanned book (repeatable)")
    scan_parser.add_argument("--format", choices=["table", "json", "compact"], default="compact", help="Output format")

    remove_parser = subparsers.add_parser("remove", help="Remove books by id")
    remove_parser.add_argument("book_ids", nargs="+", help="Book ids")

    subparsers.add_parser("tags", help="List tags")

    tag_parser = subparsers.add_parser("tag", help="Set tags on books")
    tag_parser.add_argument("book_ids", nargs="+", help="Book ids")
    tag_parser.add_argument("--name", action="append", help="Tag name (repeatable); none clears tags")
    tag_parser.add_argument("--add", action="store_true", help="Keep the tags the books share")
    tag_parser.add_argument("--format", choices=["table", "json", "compact"], default="table", help="Output format")

    prefs_parser = subparsers.add_parser("prefs", help="Show or set the default tag filter")
    prefs_parser.add_argument("--set", help="Comma-separated tag ids ('' for all books)")

    lookup_parser = subparsers.add_parser("lookup", help="Look up an ISBN on Google Books")
    lookup_parser.add_argument("isbn", help="ISBN-10 or ISBN-13")
    lookup_parser.add_argument("--format", choices=["table", "json", "compact"], default="table", help="Output format")

    export_parser = subparsers.add_parser("export", help="Export the collection")
    export_parser.add_argument("--format", choices=["json", "csv"], default="json", help="Export format")
    export_parser.add_argument("--output", help="Output file (default: stdout for JSON)")

    return parser


def main():
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = Config()
    store = setup_store(config)
    command = COMMANDS[args.command]

    try:
        if inspect.iscoroutinefunction(command):
            code = asyncio.run(command(args, config, store))
        else:
            code = command(args, config, store)
        sys.exit(code)

    except Unauthenticated as e:
        logger.error(f"❌ {e}. Run 'login' to sign in again.")
        sys.exit(2)
    except SyncError as e:
        logger.error(f"❌ {e}. Please retry.")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("\n⚠️  Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
