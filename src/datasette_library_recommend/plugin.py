"""
Datasette plugin exposing AI library recommendations.

- POST /recommend: JSON body {prompt, filters?}, answered with a
  Server-Sent Event stream (status, metadata, token*, done | error)
- Media catalog schema is migrated on startup
"""

import json
import logging
import weakref
from pathlib import Path
from typing import Any

from datasette import Response, hookimpl
from datasette.utils.asgi import AsgiStream, Request

from library_recommend.config import PLUGIN_NAME, RecommendConfig
from library_recommend.errors import (
    RateLimitError,
    RecommendError,
    StreamClosedError,
    ValidationError,
)
from library_recommend.service import RecommendationService, client_key_from_scope, resolve_identity
from library_recommend.sse import SSE_CONTENT_TYPE, SSE_HEADERS

logger = logging.getLogger(__name__)

# One service (rate limiter, LLM client) per Datasette instance
_services: "weakref.WeakKeyDictionary[Any, RecommendationService]" = weakref.WeakKeyDictionary()

# -----------------------------------------------------------------------------
# Plugin Configuration
# -----------------------------------------------------------------------------


def get_plugin_config(datasette) -> RecommendConfig:
    """Get plugin configuration from datasette.yaml."""
    return RecommendConfig.from_dict(datasette.plugin_config(PLUGIN_NAME) or {})


def get_service(datasette) -> RecommendationService:
    """Return the recommendation service for this Datasette, creating it on first use."""
    service = _services.get(datasette)
    if service is None:
        service = RecommendationService(get_plugin_config(datasette))
        _services[datasette] = service
    return service


def set_service(datasette, service: RecommendationService) -> None:
    """Install a specific service for a Datasette instance (fakes in tests)."""
    _services[datasette] = service


# -----------------------------------------------------------------------------
# Database Helpers
# -----------------------------------------------------------------------------


def get_db_path(datasette) -> Path:
    return get_plugin_config(datasette).catalog_db_path


def ensure_db_exists(db_path: Path) -> None:
    """Create or upgrade the catalog schema. Safe to call repeatedly."""
    from datasette_library_recommend.migrations import run_migrations

    run_migrations(db_path)


# -----------------------------------------------------------------------------
# Streaming Helpers
# -----------------------------------------------------------------------------


class AsgiWriterTransport:
    """Adapts Datasette's AsgiWriter to the stream Transport interface."""

    def __init__(self, writer):
        self._writer = writer
        self.closed = False

    async def write(self, data: str) -> None:
        if self.closed:
            raise StreamClosedError("Transport is closed.")
        await self._writer.write(data)

    async def close(self) -> None:
        self.closed = True


def disconnect_waiter(receive):
    """Build a coroutine function that returns once the ASGI client disconnects."""

    async def wait_for_disconnect() -> None:
        while True:
            message = await receive()
            if message.get("type") == "http.disconnect":
                return

    return wait_for_disconnect


def error_response(error: RecommendError) -> Response:
    headers = {}
    if isinstance(error, RateLimitError) and error.retry_after is not None:
        headers["Retry-After"] = str(error.retry_after)
    return Response.json(
        {"ok": False, "error": error.public_message},
        status=error.status_code,
        headers=headers,
    )


async def read_json_body(request: Request) -> Any:
    body = await request.post_body()
    if not body:
        raise ValidationError("Request body must be a JSON object.")
    try:
        return json.loads(body)
    except ValueError as e:
        raise ValidationError("Request body is not valid JSON.") from e


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------


async def recommend(request: Request, datasette, receive):
    """
    Stream recommendations for a patron prompt.

    Everything up to candidate retrieval happens before the response starts,
    so those failures are ordinary JSON error responses.
    """
    if request.method != "POST":
        return Response.json({"ok": False, "error": "Method not allowed."}, status=405)

    service = get_service(datasette)
    try:
        identity = resolve_identity(request.actor)
        # Counted before the body is read, so unparseable bodies use up the quota too
        service.check_rate_limit(client_key_from_scope(request.scope))
        body = await read_json_body(request)
        context = await service.prepare(body, identity)
    except RecommendError as e:
        logger.info(f"Recommendation request rejected ({e.status_code}): {e}")
        return error_response(e)
    except Exception:
        logger.exception("Unexpected error preparing recommendation")
        return Response.json(
            {"ok": False, "error": RecommendError.public_message},
            status=500,
        )

    wait_for_disconnect = disconnect_waiter(receive)

    async def stream_fn(writer):
        await service.stream(context, AsgiWriterTransport(writer), wait_for_disconnect)

    return AsgiStream(
        stream_fn,
        status=200,
        headers=dict(SSE_HEADERS),
        content_type=SSE_CONTENT_TYPE,
    )


# -----------------------------------------------------------------------------
# Datasette Hooks
# -----------------------------------------------------------------------------


@hookimpl
def register_routes():
    """Register plugin routes with Datasette."""
    return [
        (r"^/recommend$", recommend),
    ]


@hookimpl
def skip_csrf(datasette, scope):
    """
    The recommend endpoint is a JSON API called from scripts and the
    browser's fetch(); it requires an actor and is rate limited instead.
    """
    if scope.get("path", "") == "/recommend":
        return True
    return None


@hookimpl
def startup(datasette):
    """Migrate the catalog database on Datasette startup."""
    db_path = get_db_path(datasette)
    ensure_db_exists(db_path)
    logger.info(f"Catalog database ready: {db_path}")
