"""Shared pytest fixtures for library-recommend tests."""

import json
import sqlite3

import pytest
from datasette.app import Datasette

from datasette_library_recommend.migrations import run_migrations
from datasette_library_recommend.plugin import set_service
from library_recommend.config import RecommendConfig
from library_recommend.errors import UpstreamError
from library_recommend.llm import StreamChunk
from library_recommend.ratelimit import RateLimiter
from library_recommend.service import RecommendationService

PLUGIN = "datasette-library-recommend"

SEED_MEDIA = [
    # id, title, creator, media_type, media_format, genre, subject, description, published_at
    (
        "m1",
        "The Cat Who Could Read Backwards",
        "Lilian Jackson Braun",
        "book",
        "print",
        "Mystery",
        "Cozy mysteries; Cats",
        "A reporter and his Siamese cat solve a murder in the art world.",
        "1966-01-01",
    ),
    (
        "m2",
        "Murder Past Due",
        "Miranda James",
        "book",
        "print",
        "Cozy mystery",
        "Cats; Libraries",
        "A librarian and his Maine Coon cat solve a small-town murder.",
        "2010-06-01",
    ),
    (
        "m3",
        "Gone Girl",
        "Gillian Flynn",
        "book",
        "print",
        "Thriller",
        "Marriage",
        "A dark psychological thriller about a marriage gone wrong.",
        "2012-06-05",
    ),
    (
        "m4",
        "Dune",
        "Frank Herbert",
        "audio",
        "audiobook",
        "Science fiction",
        "Space opera",
        "Politics and prophecy on the desert planet Arrakis.",
        "2007-01-01",
    ),
    (
        "m5",
        "The Grisly Cat Case",
        "Ann Onymous",
        "book",
        "ebook",
        "Mystery",
        "Cats; Gore",
        "A gory and violent whodunit with a cat detective.",
        "2015-03-01",
    ),
    (
        "m6",
        "Paddington",
        "Paul King",
        "video",
        "dvd",
        "Family",
        "Bears; London",
        "A polite bear from Peru finds a home with a London family.",
        "2014-11-28",
    ),
    (
        "m7",
        "Untitled Cat Stories",
        None,
        "book",
        "print",
        None,
        "Cats",
        None,
        None,
    ),
]


class RecordingTransport:
    """In-memory stream transport that keeps every frame written to it."""

    def __init__(self, fail_after: int | None = None):
        self.frames: list[str] = []
        self.close_count = 0
        self.fail_after = fail_after

    async def write(self, data: str) -> None:
        if self.fail_after is not None and len(self.frames) >= self.fail_after:
            raise ConnectionResetError("client went away")
        self.frames.append(data)

    async def close(self) -> None:
        self.close_count += 1

    @property
    def text(self) -> str:
        return "".join(self.frames)

    @property
    def event_names(self) -> list[str]:
        return [frame.split("\n", 1)[0].removeprefix("event: ") for frame in self.frames]

    def payloads(self, name: str) -> list:
        result = []
        for frame in self.frames:
            lines = frame.strip("\n").split("\n")
            if lines[0] == f"event: {name}":
                data = "\n".join(line.removeprefix("data: ") for line in lines[1:])
                result.append(json.loads(data))
        return result


class FakeProvider:
    """Stands in for LLMProvider: canned keyword JSON and summary chunks."""

    def __init__(
        self,
        keywords=None,
        chunks=None,
        complete_error: Exception | None = None,
        stream_error: Exception | None = None,
    ):
        self.keywords = keywords
        self.chunks = chunks if chunks is not None else ["Try ", "these ", "titles."]
        self.complete_error = complete_error
        self.stream_error = stream_error
        self.complete_calls: list = []
        self.stream_calls: list = []
        self.streams_closed = 0
        self.closed = False

    async def complete(self, messages, schema=None):
        self.complete_calls.append((messages, schema))
        if self.complete_error is not None:
            raise self.complete_error
        if self.keywords is None:
            raise UpstreamError("no keyword model configured")
        return self.keywords

    async def stream_complete(self, messages):
        self.stream_calls.append(messages)
        try:
            for i, delta in enumerate(self.chunks):
                if self.stream_error is not None and i == 1:
                    raise self.stream_error
                finish = "stop" if i == len(self.chunks) - 1 else None
                yield StreamChunk(delta=delta, finish_reason=finish)
        finally:
            self.streams_closed += 1

    async def aclose(self):
        self.closed = True


def seed_media(db_path, rows=SEED_MEDIA):
    conn = sqlite3.connect(db_path)
    try:
        conn.executemany(
            """
            INSERT INTO media
                (id, title, creator, media_type, media_format, genre, subject,
                 description, published_at, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [(*row, json.dumps({"source": "test"})) for row in rows],
        )
        conn.commit()
    finally:
        conn.close()


@pytest.fixture
def db_path(tmp_path):
    """Temporary catalog database created through the real migrations."""
    db_file = tmp_path / "test_library.db"
    run_migrations(db_file)
    return db_file


@pytest.fixture
def seeded_db(db_path):
    seed_media(db_path)
    return db_path


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def plugin_config(seeded_db):
    return {
        "catalog_db_path": str(seeded_db),
        "llm": {"provider": "openai", "model": "test-model", "api_key_env": None},
        "rate_limit": {"max_requests": 30, "window_seconds": 300},
    }


@pytest.fixture
def datasette(seeded_db, plugin_config, fake_provider):
    """Datasette with the plugin configured and a fake LLM provider installed."""
    ds = Datasette(
        [str(seeded_db)],
        config={"plugins": {PLUGIN: plugin_config}},
    )
    set_service(
        ds,
        RecommendationService(
            RecommendConfig.from_dict(plugin_config),
            provider=fake_provider,
            rate_limiter=RateLimiter(),
        ),
    )
    return ds


@pytest.fixture
def make_provider():
    """Factory for FakeProvider instances with custom behaviour."""
    return FakeProvider


@pytest.fixture
def make_transport():
    return RecordingTransport


@pytest.fixture
def actor_cookies(datasette):
    """Build signed ds_actor cookies for the datasette fixture."""

    def cookies_for(actor: dict) -> dict[str, str]:
        return {"ds_actor": datasette.sign({"a": actor}, "actor")}

    return cookies_for
