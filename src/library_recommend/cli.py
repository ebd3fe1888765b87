"""
CLI for library-recommend.

Usage:
    library-recommend [OPTIONS] COMMAND

    # Create (or upgrade) the catalog database, with a few sample titles
    library-recommend init-db --db library.db --seed

    # Stream a recommendation from a running Datasette
    library-recommend ask "cozy mysteries with cats" --media-type book
"""

import argparse
import asyncio
import json
import logging
import sqlite3
import sys
from pathlib import Path

from .client import DEFAULT_BASE_URL, RecommendationStreamClient, StreamSnapshot, StreamStatus
from .config import RecommendConfig
from .models import AGE_GROUPS, MEDIA_FORMATS, MEDIA_TYPES

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("library-recommend")

SAMPLE_MEDIA = [
    {
        "id": "bk-cat-who",
        "title": "The Cat Who Could Read Backwards",
        "creator": "Lilian Jackson Braun",
        "media_type": "book",
        "media_format": "print",
        "genre": "Mystery",
        "subject": "Cozy mysteries; Cats",
        "description": "A newspaper reporter and his Siamese cat solve a murder in the art world.",
        "published_at": "1966-01-01",
        "metadata": {"series": "The Cat Who", "pages": 224},
    },
    {
        "id": "bk-mrs-murphy",
        "title": "Wish You Were Here",
        "creator": "Rita Mae Brown",
        "media_type": "book",
        "media_format": "ebook",
        "genre": "Mystery",
        "subject": "Cozy mysteries; Cats; Small towns",
        "description": "Postmistress Harry and her cat Mrs. Murphy investigate strange postcards.",
        "published_at": "1990-11-01",
        "metadata": {"series": "Mrs. Murphy"},
    },
    {
        "id": "bk-gone-girl",
        "title": "Gone Girl",
        "creator": "Gillian Flynn",
        "media_type": "book",
        "media_format": "print",
        "genre": "Thriller",
        "subject": "Marriage; Missing persons",
        "description": "A dark psychological thriller about a marriage gone wrong.",
        "published_at": "2012-06-05",
        "metadata": {},
    },
    {
        "id": "au-dune",
        "title": "Dune",
        "creator": "Frank Herbert",
        "media_type": "audio",
        "media_format": "audiobook",
        "genre": "Science fiction",
        "subject": "Space opera; Desert planets",
        "description": "Epic space opera of politics and prophecy on the desert planet Arrakis.",
        "published_at": "2007-01-01",
        "metadata": {"narrator": "Scott Brick"},
    },
    {
        "id": "vd-paddington",
        "title": "Paddington",
        "creator": "Paul King",
        "media_type": "video",
        "media_format": "dvd",
        "genre": "Family",
        "subject": "Bears; London",
        "description": "A polite bear from Peru finds a home with a London family.",
        "published_at": "2014-11-28",
        "metadata": {"rating": "PG"},
    },
]


def init_db(db_path: Path, seed: bool = False) -> list[int]:
    """Migrate the catalog database and optionally load the sample titles."""
    from datasette_library_recommend.migrations import run_migrations

    logger.info(f"Initializing catalog database: {db_path}")
    applied = run_migrations(db_path)
    if applied:
        logger.info(f"Applied {len(applied)} migration(s): {applied}")
    else:
        logger.info("No new migrations to apply.")

    if seed:
        seed_sample_media(db_path)
    return applied


def seed_sample_media(db_path: Path) -> int:
    conn = sqlite3.connect(db_path)
    try:
        for item in SAMPLE_MEDIA:
            conn.execute(
                """
                INSERT OR REPLACE INTO media
                    (id, title, creator, media_type, media_format, genre, subject,
                     description, published_at, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item["id"],
                    item["title"],
                    item["creator"],
                    item["media_type"],
                    item["media_format"],
                    item["genre"],
                    item["subject"],
                    item["description"],
                    item["published_at"],
                    json.dumps(item["metadata"]),
                ),
            )
        conn.commit()
    finally:
        conn.close()

    logger.info(f"Seeded {len(SAMPLE_MEDIA)} sample item(s)")
    return len(SAMPLE_MEDIA)


def build_filters(args: argparse.Namespace) -> dict:
    filters = {}
    if args.media_type:
        filters["mediaType"] = args.media_type
    if args.media_format:
        filters["mediaFormat"] = args.media_format
    if args.age_group:
        filters["ageGroup"] = args.age_group
    if args.limit is not None:
        filters["limit"] = args.limit
    return filters


async def ask(args: argparse.Namespace) -> StreamSnapshot:
    """Stream one recommendation to stdout as it arrives."""
    cookies = {"ds_actor": args.actor_cookie} if args.actor_cookie else None
    printed = 0

    def on_change(snapshot: StreamSnapshot) -> None:
        nonlocal printed
        if len(snapshot.text) > printed:
            sys.stdout.write(snapshot.text[printed:])
            sys.stdout.flush()
            printed = len(snapshot.text)

    async with RecommendationStreamClient(args.url, cookies=cookies) as client:
        client.subscribe(on_change)
        snapshot = await client.send_prompt(args.prompt, build_filters(args))

    sys.stdout.write("\n")
    if args.show_items:
        for item in snapshot.items:
            print(f"  - {item.get('title')} ({item.get('author') or 'unknown'})")
    return snapshot


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="library-recommend: AI reading recommendations from a media catalog",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Create the catalog database with sample titles
    library-recommend init-db --db library.db --seed

    # Ask a running Datasette for recommendations
    library-recommend ask "space opera audiobooks" --media-format audiobook
        """,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("datasette.yaml"),
        help="Path to config file (default: datasette.yaml)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    subparsers = parser.add_subparsers(dest="command")

    init_parser = subparsers.add_parser("init-db", help="Create or upgrade the catalog database")
    init_parser.add_argument(
        "--db",
        type=Path,
        help="Override catalog database path from config",
    )
    init_parser.add_argument(
        "--seed",
        action="store_true",
        help="Insert a handful of sample titles",
    )

    ask_parser = subparsers.add_parser("ask", help="Stream a recommendation from a server")
    ask_parser.add_argument("prompt", help="What the patron is looking for")
    ask_parser.add_argument(
        "--url",
        default=DEFAULT_BASE_URL,
        help=f"Base URL of the Datasette instance (default: {DEFAULT_BASE_URL})",
    )
    ask_parser.add_argument("--media-type", choices=MEDIA_TYPES)
    ask_parser.add_argument("--media-format", choices=MEDIA_FORMATS)
    ask_parser.add_argument("--age-group", choices=AGE_GROUPS)
    ask_parser.add_argument("--limit", type=int)
    ask_parser.add_argument(
        "--actor-cookie",
        help="Signed ds_actor cookie value to authenticate with",
    )
    ask_parser.add_argument(
        "--show-items",
        action="store_true",
        help="List the candidate titles after the summary",
    )

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.command == "init-db":
        config = RecommendConfig.from_yaml(args.config)
        db_path = args.db or config.catalog_db_path
        init_db(db_path, seed=args.seed)
        return 0

    if args.command == "ask":
        try:
            snapshot = asyncio.run(ask(args))
        except KeyboardInterrupt:
            logger.info("Cancelled by user")
            return 130
        if snapshot.status == StreamStatus.ERROR:
            logger.error(f"Recommendation failed: {snapshot.error}")
            return 1
        return 0

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
