"""
Recommendation service.

Runs the pre-stream steps for one request (rate limit, sanitize, extract
keywords, fetch candidates) and then hands the prepared context to the
stream orchestrator. Anything that fails before the stream opens raises a
RecommendError so the caller can answer with a plain HTTP error.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .catalog import Catalog, MediaCatalog, fetch_candidates
from .config import RecommendConfig
from .errors import AuthenticationError, RateLimitError
from .keywords import KeywordExtractor
from .llm import LLMProvider
from .models import Identity, Role
from .ratelimit import RateLimiter
from .sanitize import sanitize_request
from .stream import RecommendationContext, StreamOrchestrator, StreamSession, Transport

logger = logging.getLogger(__name__)

RATE_LIMIT_PREFIX = "ai-recommend"


def resolve_identity(actor: dict[str, Any] | None) -> Identity:
    """
    Map a Datasette actor to an Identity.

    An explicit ``role`` wins; staff actors are librarians; everyone else
    is a member.

    Raises:
        AuthenticationError: if there is no actor or it has no id
    """
    if not actor or not actor.get("id"):
        raise AuthenticationError()

    role = actor.get("role")
    if role:
        return Identity(user_id=str(actor["id"]), role=Role.parse(role))
    if actor.get("principal_type") == "staff":
        return Identity(user_id=str(actor["id"]), role=Role.LIBRARIAN)
    return Identity(user_id=str(actor["id"]), role=Role.MEMBER)


def client_key_from_scope(scope: dict[str, Any]) -> str:
    """Rate limit key for an ASGI request: first X-Forwarded-For hop, else peer address."""
    address = None
    for name, value in scope.get("headers") or []:
        if name.lower() == b"x-forwarded-for":
            address = value.decode("latin-1").split(",")[0].strip()
            break
    if not address:
        client = scope.get("client")
        address = client[0] if client else None
    return f"{RATE_LIMIT_PREFIX}:{address or 'unknown'}"


class RecommendationService:
    """One per host process; shared by all requests."""

    def __init__(
        self,
        config: RecommendConfig,
        catalog: Catalog | None = None,
        provider: Any = None,
        rate_limiter: RateLimiter | None = None,
    ):
        self.config = config
        self.catalog = catalog if catalog is not None else MediaCatalog(config.catalog_db_path)
        self.provider = provider if provider is not None else LLMProvider(config.llm)
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter()
        self.extractor = KeywordExtractor(self.provider)
        self.orchestrator = StreamOrchestrator(self.provider)

    def check_rate_limit(self, client_key: str) -> None:
        result = self.rate_limiter.check(
            client_key,
            self.config.rate_limit.window_seconds,
            self.config.rate_limit.max_requests,
        )
        if not result.allowed:
            logger.warning(f"Rate limit exceeded for {client_key}")
            raise RateLimitError(retry_after=result.retry_after)

    async def prepare(self, body: Any, identity: Identity) -> RecommendationContext:
        """
        Everything between the rate limit check and the first streamed byte.

        The caller runs ``check_rate_limit`` before it even reads the body.

        Raises:
            ValidationError: bad request body
            RetrievalError: the catalog query failed
        """
        request = sanitize_request(body)
        keywords = await self.extractor.extract(request.prompt)
        items = await fetch_candidates(
            self.catalog, keywords.keywords, keywords.exclude, request.filters
        )

        logger.info(
            f"Recommendation for {identity.user_id} ({identity.role.value}): "
            f"{len(items)} candidates, keywords {keywords.keywords} ({keywords.source.value})"
        )
        return RecommendationContext(
            identity=identity, request=request, keywords=keywords, items=items
        )

    async def stream(
        self,
        context: RecommendationContext,
        transport: Transport,
        wait_for_disconnect: Callable[[], Awaitable[Any]] | None = None,
    ) -> StreamSession:
        return await self.orchestrator.run(context, transport, wait_for_disconnect)

    async def aclose(self) -> None:
        aclose = getattr(self.provider, "aclose", None)
        if aclose is not None:
            await aclose()
