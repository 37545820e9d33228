"""
External collaborators used by processors.

Processors never reach analytics, trend sources or storage directly; they
call the async callables bundled in Collaborators. Deployments wire real
implementations, tests wire fakes. Anything left as None makes the
processors that need it fail with ProcessorError.
"""

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from taskqueue.config import get_settings
from taskqueue.errors import ProcessorError

logger = logging.getLogger(__name__)

PROFILE_FIELDS = "id,username,media_count,followers_count"
MEDIA_FIELDS = (
    "id,caption,media_type,media_url,thumbnail_url,permalink,timestamp,"
    "like_count,comments_count"
)


@dataclass
class InstagramCredentials:
    """Per-user Graph API credentials."""

    access_token: str
    instagram_user_id: str


class InstagramGraphClient:
    """Thin async client for the Instagram Graph API."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Graph API root, including the version.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        settings = get_settings()
        self.base_url = (base_url or settings.instagram_graph_url).rstrip("/")
        self.timeout = settings.instagram_timeout_seconds if timeout is None else timeout
        self._transport = transport

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            response = await client.get(path, params=params)

        if not response.is_success:
            raise ProcessorError(
                f"Instagram Graph API returned HTTP {response.status_code} for {path}"
            )
        return response.json()

    async def fetch_profile(self, credentials: InstagramCredentials) -> dict[str, Any]:
        return await self._get(
            f"/{credentials.instagram_user_id}",
            {"fields": PROFILE_FIELDS, "access_token": credentials.access_token},
        )

    async def fetch_media(
        self,
        credentials: InstagramCredentials,
        limit: int = 25,
    ) -> dict[str, Any]:
        """Recent media; the posts are under the "data" key."""
        return await self._get(
            f"/{credentials.instagram_user_id}/media",
            {
                "fields": MEDIA_FIELDS,
                "limit": limit,
                "access_token": credentials.access_token,
            },
        )


@dataclass
class Collaborators:
    """
    Async callables processors depend on.

    Signatures:
        detect_changes() -> list of change dicts
        record_insights(changes) -> None
        collect_daily_summary(user_id) -> dict
        collect_hashtag_trends(hashtags, limit) -> list of trend dicts
        save_trends(niche, trends) -> None
        generate_weekly_plan(user_id, payload) -> dict
        discover_brands(user_id, payload) -> dict
        instagram_credentials(user_id) -> InstagramCredentials or None
        store_instagram_sync(user_id, profile, posts) -> None
    """

    detect_changes: Callable[[], Awaitable[list[dict[str, Any]]]] | None = None
    record_insights: Callable[[list[dict[str, Any]]], Awaitable[None]] | None = None
    collect_daily_summary: Callable[[str], Awaitable[dict[str, Any]]] | None = None
    collect_hashtag_trends: (
        Callable[[Sequence[str], int], Awaitable[list[dict[str, Any]]]] | None
    ) = None
    save_trends: Callable[[str, list[dict[str, Any]]], Awaitable[None]] | None = None
    generate_weekly_plan: (
        Callable[[str, dict[str, Any]], Awaitable[dict[str, Any]]] | None
    ) = None
    discover_brands: Callable[[str, dict[str, Any]], Awaitable[dict[str, Any]]] | None = None
    instagram_credentials: (
        Callable[[str], Awaitable[InstagramCredentials | None]] | None
    ) = None
    store_instagram_sync: (
        Callable[[str, dict[str, Any], list[dict[str, Any]]], Awaitable[None]] | None
    ) = None
    instagram_client: InstagramGraphClient | None = None

    def require(self, name: str) -> Any:
        """
        Get a collaborator, failing the job if it is not configured.

        Raises:
            ProcessorError: If the collaborator is None.
        """
        collaborator = getattr(self, name)
        if collaborator is None:
            raise ProcessorError(f"Collaborator '{name}' is not configured")
        return collaborator
