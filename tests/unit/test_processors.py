"""
Unit tests for job processors.
"""

from uuid import uuid4

import httpx
import pytest

from taskqueue.constants import JobType
from taskqueue.errors import ProcessorError
from taskqueue.queue import CacheService
from taskqueue.types.job import JobContext
from taskqueue.worker.collaborators import (
    Collaborators,
    InstagramCredentials,
    InstagramGraphClient,
)
from taskqueue.worker.processors import (
    ProcessorRegistry,
    build_default_registry,
    get_niche_hashtags,
)


@pytest.fixture
def registry() -> ProcessorRegistry:
    return build_default_registry()


@pytest.fixture
def make_context(cache: CacheService, clock):
    """Build a JobContext for a processor call."""

    def _make(
        job_type: JobType,
        collaborators: Collaborators,
        payload: dict | None = None,
        user_id: str | None = "u1",
    ) -> JobContext:
        return JobContext(
            job_id=uuid4(),
            job_type=job_type,
            user_id=user_id,
            attempt=1,
            max_attempts=3,
            payload=payload or {},
            cache=cache,
            collaborators=collaborators,
            now=clock.now,
        )

    return _make


class TestRegistry:
    """Tests for ProcessorRegistry."""

    def test_every_job_type_has_a_processor(self, registry: ProcessorRegistry):
        assert registry.missing() == []

    def test_unknown_type_returns_none(self, registry: ProcessorRegistry):
        assert registry.get("no_such_type") is None
        assert registry.get("trend_collection") is not None

    def test_missing_lists_unregistered(self):
        registry = ProcessorRegistry()

        @registry.register(JobType.BRAND_DISCOVERY)
        async def process(ctx):
            return {}

        assert JobType.BRAND_DISCOVERY in registry
        assert JobType.BRAND_DISCOVERY not in registry.missing()
        assert len(registry.missing()) == len(JobType) - 1


def test_niche_hashtags():
    assert get_niche_hashtags("Fitness")[0] == "fitness"
    assert get_niche_hashtags("knitting") == ["trending", "knitting"]


class TestProcessors:
    """Tests for the built-in processors."""

    async def test_algorithm_detection_records_insights_once(self, registry, make_context):
        recorded = []

        async def detect_changes():
            return [{"metric": "reach", "percent_change": -32.5}]

        async def record_insights(changes):
            recorded.append(changes)

        collaborators = Collaborators(detect_changes=detect_changes, record_insights=record_insights)
        process = registry.get(JobType.ALGORITHM_DETECTION)

        first = await process(make_context(JobType.ALGORITHM_DETECTION, collaborators))
        second = await process(make_context(JobType.ALGORITHM_DETECTION, collaborators))

        assert first == second == {"changes": [{"metric": "reach", "percent_change": -32.5}]}
        assert len(recorded) == 1

    async def test_performance_collection_requires_user(self, registry, make_context):
        async def collect(user_id):
            return {"user_id": user_id}

        process = registry.get(JobType.PERFORMANCE_COLLECTION)
        ctx = make_context(
            JobType.PERFORMANCE_COLLECTION,
            Collaborators(collect_daily_summary=collect),
            user_id=None,
        )

        with pytest.raises(ProcessorError, match="User ID required"):
            await process(ctx)

    async def test_performance_collection(self, registry, make_context):
        calls = []

        async def collect(user_id):
            calls.append(user_id)
            return {"user_id": user_id, "reach": 1200}

        process = registry.get(JobType.PERFORMANCE_COLLECTION)
        collaborators = Collaborators(collect_daily_summary=collect)

        result = await process(make_context(JobType.PERFORMANCE_COLLECTION, collaborators))
        await process(make_context(JobType.PERFORMANCE_COLLECTION, collaborators))

        assert result == {"user_id": "u1", "reach": 1200}
        assert calls == ["u1"]

    async def test_trend_collection(self, registry, make_context):
        requests = []
        saved = []

        async def collect(hashtags, limit):
            requests.append((list(hashtags), limit))
            return [{"hashtag": tag, "post_count": 10} for tag in hashtags]

        async def save(niche, trends):
            saved.append((niche, len(trends)))

        process = registry.get(JobType.TREND_COLLECTION)
        collaborators = Collaborators(collect_hashtag_trends=collect, save_trends=save)

        result = await process(
            make_context(JobType.TREND_COLLECTION, collaborators, payload={"niche": "food"})
        )

        assert result == {"trends": 5, "niche": "food"}
        assert requests == [(["foodie", "foodstagram", "foodporn", "recipe", "cooking"], 200)]
        assert saved == [("food", 5)]

        again = await process(
            make_context(JobType.TREND_COLLECTION, collaborators, payload={"niche": "food"})
        )
        assert again == result
        assert len(requests) == 1

    async def test_trend_collection_requires_niche(self, registry, make_context):
        process = registry.get(JobType.TREND_COLLECTION)

        with pytest.raises(ProcessorError, match="Niche required"):
            await process(make_context(JobType.TREND_COLLECTION, Collaborators()))

    async def test_missing_collaborator(self, registry, make_context):
        process = registry.get(JobType.TREND_COLLECTION)
        ctx = make_context(JobType.TREND_COLLECTION, Collaborators(), payload={"niche": "tech"})

        with pytest.raises(ProcessorError, match="collect_hashtag_trends"):
            await process(ctx)

    async def test_content_generation_cached_per_week(self, registry, make_context, clock):
        calls = []

        async def generate(user_id, payload):
            calls.append(payload)
            return {"posts": 7}

        process = registry.get(JobType.CONTENT_GENERATION)
        collaborators = Collaborators(generate_weekly_plan=generate)

        # 2024-01-15 is a Monday; Saturday shares its week, the next Sunday does not
        await process(make_context(JobType.CONTENT_GENERATION, collaborators, payload={"n": 1}))
        clock.advance(days=5)
        await process(make_context(JobType.CONTENT_GENERATION, collaborators, payload={"n": 2}))
        clock.advance(days=1)
        result = await process(
            make_context(JobType.CONTENT_GENERATION, collaborators, payload={"n": 3})
        )

        assert result == {"posts": 7}
        assert calls == [{"n": 1}, {"n": 3}]

    async def test_brand_discovery(self, registry, make_context):
        async def discover(user_id, payload):
            return {"brands_discovered": 2, "user_id": user_id}

        process = registry.get(JobType.BRAND_DISCOVERY)
        result = await process(
            make_context(JobType.BRAND_DISCOVERY, Collaborators(discover_brands=discover))
        )

        assert result == {"brands_discovered": 2, "user_id": "u1"}


class TestInstagramSync:
    """Tests for the Instagram sync processor and Graph client."""

    @staticmethod
    def graph_transport(calls: list[str]) -> httpx.MockTransport:
        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            assert request.url.params["access_token"] == "token-1"
            if request.url.path.endswith("/media"):
                return httpx.Response(
                    200,
                    json={"data": [{"id": "m1", "like_count": 3}, {"id": "m2"}]},
                )
            return httpx.Response(200, json={"id": "ig-1", "followers_count": 500})

        return httpx.MockTransport(handler)

    async def test_sync_fetches_caches_and_stores(self, registry, make_context):
        calls: list[str] = []
        stored = []

        async def credentials(user_id):
            return InstagramCredentials(access_token="token-1", instagram_user_id="ig-1")

        async def store(user_id, profile, posts):
            stored.append((user_id, profile["followers_count"], len(posts)))

        collaborators = Collaborators(
            instagram_credentials=credentials,
            store_instagram_sync=store,
            instagram_client=InstagramGraphClient(
                base_url="https://graph.example.test/v21.0",
                transport=self.graph_transport(calls),
            ),
        )
        process = registry.get(JobType.INSTAGRAM_SYNC)

        result = await process(make_context(JobType.INSTAGRAM_SYNC, collaborators))
        await process(make_context(JobType.INSTAGRAM_SYNC, collaborators))

        assert result == {"profile_updated": True, "posts_synced": 2}
        assert calls == ["/v21.0/ig-1", "/v21.0/ig-1/media"]
        assert stored == [("u1", 500, 2), ("u1", 500, 2)]

    async def test_sync_without_token(self, registry, make_context):
        async def credentials(user_id):
            return None

        async def store(user_id, profile, posts):
            raise AssertionError("should not store")

        collaborators = Collaborators(instagram_credentials=credentials, store_instagram_sync=store)
        process = registry.get(JobType.INSTAGRAM_SYNC)

        with pytest.raises(ProcessorError, match="No Instagram access token"):
            await process(make_context(JobType.INSTAGRAM_SYNC, collaborators))

    async def test_graph_error_is_processor_error(self):
        client = InstagramGraphClient(
            base_url="https://graph.example.test/v21.0",
            transport=httpx.MockTransport(lambda request: httpx.Response(400, json={})),
        )

        with pytest.raises(ProcessorError, match="HTTP 400"):
            await client.fetch_profile(
                InstagramCredentials(access_token="t", instagram_user_id="ig-1")
            )
