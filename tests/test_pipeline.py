"""End-to-end tests for the generation pipeline over a mocked backend."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from explora.cache.content_cache import InMemoryContentCache
from explora.engine.pipeline import GenerationPipeline
from explora.errors import TransportError, UpstreamError
from explora.models.graph import ProgressSnapshot
from explora.models.resources import SessionContext
from explora.persistence.store import InMemoryStore
from explora.persistence.sync import PersistenceSynchronizer
from explora.utils.cancellation import CancellationToken

from conftest import expansion_answer, photosynthesis_stream, sse_body

TOPIC_PATH = "/analyze-topic-stream"
URL_PATH = "/analyze-url-stream"
EXPAND_PATH = "/expand-concept"
CONTENT_PATH = "/generate-content-stream"


class Recorder:
    """Progress callback that keeps every snapshot."""

    def __init__(self) -> None:
        self.snapshots: list[ProgressSnapshot] = []

    def __call__(self, snapshot: ProgressSnapshot) -> None:
        self.snapshots.append(snapshot)


def content_stream() -> bytes:
    return sse_body(
        {"type": "metadata", "data": {"title": "Photosynthesis", "description": "Light to sugar"}},
        {"type": "outline", "data": {"sections": [{"id": "s1", "title": "Introduction", "type": "introduction"}]}},
        {"type": "paragraph", "data": {"id": "p1", "sectionId": "s1", "title": "Plants"}},
        {"type": "paragraph_chunk", "data": {"id": "p1", "content": "Plants use"}},
        {"type": "paragraph_complete", "data": {"id": "p1", "sectionId": "s1", "title": "Plants", "content": "Plants use light."}},
        {"type": "complete"},
    )


class TestAnalyze:
    """Tests for GenerationPipeline.analyze()."""

    @pytest.mark.asyncio
    async def test_live_run(self, make_client, synchronizer, store, session) -> None:
        """Test a live run delivers ordered snapshots and persists the map."""
        client = make_client({TOPIC_PATH: sse_body(*photosynthesis_stream())})
        pipeline = GenerationPipeline(client=client, synchronizer=synchronizer)
        recorder = Recorder()

        result = await pipeline.analyze("Photosynthesis", recorder, ctx=session)

        assert result.snapshot.is_complete
        assert len(result.snapshot.nodes) == 5
        assert len(result.snapshot.edges) == 4
        assert not result.from_cache

        counts = [len(s.nodes) for s in recorder.snapshots]
        assert counts == sorted(counts)
        assert recorder.snapshots[0].root.is_loading
        assert recorder.snapshots[-1].is_complete
        assert pipeline.last_snapshot is recorder.snapshots[-1]

        maps = await store.find("mind_map", topic_id=result.topic.id)
        assert len(maps) == 1
        assert len(maps[0].nodes) == 5
        assert result.topic.mind_map_data["nodeCount"] == 5

        body = json.loads(client.requests[0].content)
        assert body == {"topic": "Photosynthesis", "language": "en"}

    @pytest.mark.asyncio
    async def test_second_run_replays_stored_map(self, make_client, synchronizer, session, no_sleep) -> None:
        """Test a stored complete map is replayed without calling the backend."""
        client = make_client({TOPIC_PATH: sse_body(*photosynthesis_stream())})
        pipeline = GenerationPipeline(client=client, synchronizer=synchronizer, sleep=no_sleep)

        live = await pipeline.analyze("Photosynthesis", ctx=session)
        recorder = Recorder()
        cached = await pipeline.analyze("Photosynthesis", recorder, ctx=session)

        assert cached.from_cache
        assert len(client.requests) == 1
        assert cached.snapshot.nodes == live.snapshot.nodes
        assert cached.snapshot.edges == live.snapshot.edges
        assert [s.current_step for s in recorder.snapshots][-1] == "Complete"
        assert cached.mind_map.id == live.mind_map.id

    @pytest.mark.asyncio
    async def test_url_analysis(self, make_client, synchronizer, session) -> None:
        """Test URLs go to the URL endpoint with a domain-based title."""
        client = make_client(
            {
                URL_PATH: sse_body(
                    {"type": "metadata", "data": {"title": "Content from example.com", "summary": "A post", "sourceUrl": "https://example.com/post"}},
                    {"type": "concepts_batch", "data": [{"name": "Idea"}, {"name": "Method"}]},
                    {"type": "complete"},
                )
            }
        )
        pipeline = GenerationPipeline(client=client, synchronizer=synchronizer)
        recorder = Recorder()

        result = await pipeline.analyze("https://example.com/post", recorder, ctx=session)

        assert recorder.snapshots[0].root.label == "Content from example.com"
        assert result.snapshot.root.description == "A post"
        assert [n.label for n in result.snapshot.nodes[1:]] == ["Idea", "Method"]
        assert result.topic.source_url == "https://example.com/post"
        assert result.snapshot.nodes[1].source_url == "https://example.com/post"
        assert json.loads(client.requests[0].content)["url"] == "https://example.com/post"

    @pytest.mark.asyncio
    async def test_upstream_error(self, make_client, synchronizer, store, session) -> None:
        """Test an error frame raises with the partial graph attached."""
        payloads = photosynthesis_stream(complete=False)
        payloads.append({"type": "error", "data": {"message": "Failed to analyze topic"}})
        client = make_client({TOPIC_PATH: sse_body(*payloads)})
        pipeline = GenerationPipeline(client=client, synchronizer=synchronizer)
        recorder = Recorder()

        with pytest.raises(UpstreamError) as exc_info:
            await pipeline.analyze("Photosynthesis", recorder, ctx=session)

        snapshot = exc_info.value.snapshot
        assert snapshot.error == "Failed to analyze topic"
        assert len(snapshot.nodes) == 5
        assert sum(1 for s in recorder.snapshots if s.error) == 1

        maps = await store.find("mind_map")
        assert len(maps) == 1
        assert maps[0].layout_data["isComplete"] is False

    @pytest.mark.asyncio
    async def test_stream_ends_early(self, make_client, session) -> None:
        """Test a stream without complete raises TransportError."""
        client = make_client({TOPIC_PATH: sse_body(*photosynthesis_stream(complete=False))})
        pipeline = GenerationPipeline(client=client)
        recorder = Recorder()

        with pytest.raises(TransportError) as exc_info:
            await pipeline.analyze("Photosynthesis", recorder, ctx=session)

        assert len(exc_info.value.snapshot.nodes) == 5
        assert exc_info.value.snapshot.root.error
        assert recorder.snapshots[-1] is exc_info.value.snapshot

    @pytest.mark.asyncio
    async def test_bad_status(self, make_client, session) -> None:
        """Test a non-200 response raises TransportError."""
        client = make_client({TOPIC_PATH: lambda request: httpx.Response(500, text="boom")})
        pipeline = GenerationPipeline(client=client)

        with pytest.raises(TransportError) as exc_info:
            await pipeline.analyze("Photosynthesis", ctx=session)

        assert exc_info.value.details["status"] == 500
        assert exc_info.value.snapshot.error is not None

    @pytest.mark.asyncio
    async def test_cancellation(self, make_client, session) -> None:
        """Test no callback fires after cancellation."""
        client = make_client({TOPIC_PATH: sse_body(*photosynthesis_stream())})
        pipeline = GenerationPipeline(client=client)
        token = CancellationToken()
        seen: list[ProgressSnapshot] = []

        def on_progress(snapshot: ProgressSnapshot) -> None:
            seen.append(snapshot)
            if snapshot.root and snapshot.root.label == "Photosynthesis":
                token.cancel("user navigated away")

        result = await pipeline.analyze("Photosynthesis", on_progress, ctx=session, cancel=token)

        assert result.cancelled
        assert len(seen) == 2
        assert not result.snapshot.is_complete
        assert pipeline.last_snapshot is not None

    @pytest.mark.asyncio
    async def test_async_callback(self, make_client, session) -> None:
        """Test coroutine callbacks are awaited."""
        client = make_client({TOPIC_PATH: sse_body(*photosynthesis_stream())})
        pipeline = GenerationPipeline(client=client)
        callback = AsyncMock()

        await pipeline.analyze("Photosynthesis", callback, ctx=session)

        assert callback.await_count == 4

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_break_stream(self, make_client, session) -> None:
        """Test write errors are collected while the UI stream completes."""
        synchronizer = PersistenceSynchronizer(InMemoryStore())
        synchronizer.upsert_graph = AsyncMock(side_effect=OSError("disk full"))
        client = make_client({TOPIC_PATH: sse_body(*photosynthesis_stream())})
        pipeline = GenerationPipeline(client=client, synchronizer=synchronizer)

        result = await pipeline.analyze("Photosynthesis", ctx=session)

        assert result.snapshot.is_complete
        assert result.persistence_errors
        assert result.mind_map is None


class TestExpand:
    """Tests for GenerationPipeline.expand()."""

    @pytest.mark.asyncio
    async def test_expand_node(self, make_client, synchronizer, session) -> None:
        """Test an expansion is merged under the node and stored."""
        client = make_client(
            {
                TOPIC_PATH: sse_body(*photosynthesis_stream()),
                EXPAND_PATH: lambda request: httpx.Response(200, json=expansion_answer("ATP", "NADPH")),
            }
        )
        pipeline = GenerationPipeline(client=client, synchronizer=synchronizer)
        analysis = await pipeline.analyze("Photosynthesis", ctx=session)
        node = analysis.snapshot.nodes[1]

        result = await pipeline.expand(analysis.topic.id, node.id, ctx=session)

        assert len(result.new_node_ids) == 2
        assert result.snapshot.get_node(node.id).expanded
        assert all(result.snapshot.get_node(i).parent_id == node.id for i in result.new_node_ids)

        stored = await synchronizer.load_snapshot(analysis.topic.id)
        assert len(stored.nodes) == 7
        assert stored.get_node(node.id).expanded

        body = json.loads(client.requests[-1].content)
        assert body["concept"] == node.label
        assert body["parentTopic"] == "Photosynthesis"

        again = await pipeline.expand(analysis.topic.id, node.id, ctx=session)
        assert again.from_cache
        assert len(client.requests) == 2

    @pytest.mark.asyncio
    async def test_expand_failure_reported(self, make_client, synchronizer, session) -> None:
        """Test an unsuccessful expansion raises UpstreamError and stores nothing."""
        client = make_client(
            {
                TOPIC_PATH: sse_body(*photosynthesis_stream()),
                EXPAND_PATH: lambda request: httpx.Response(200, json={"success": False, "error": "No ideas"}),
            }
        )
        pipeline = GenerationPipeline(client=client, synchronizer=synchronizer)
        analysis = await pipeline.analyze("Photosynthesis", ctx=session)
        node = analysis.snapshot.nodes[1]

        with pytest.raises(UpstreamError) as exc_info:
            await pipeline.expand(analysis.topic.id, node.id, ctx=session)

        assert "No ideas" in exc_info.value.message
        stored = await synchronizer.load_snapshot(analysis.topic.id)
        assert len(stored.nodes) == 5
        assert not stored.get_node(node.id).expanded

    @pytest.mark.asyncio
    async def test_expand_unknown_node(self, make_client, synchronizer, session) -> None:
        """Test expanding a missing node raises KeyError."""
        client = make_client({TOPIC_PATH: sse_body(*photosynthesis_stream())})
        pipeline = GenerationPipeline(client=client, synchronizer=synchronizer)
        analysis = await pipeline.analyze("Photosynthesis", ctx=session)

        with pytest.raises(KeyError):
            await pipeline.expand(analysis.topic.id, "ghost", ctx=session)

    @pytest.mark.asyncio
    async def test_root_not_expandable(self, make_client, synchronizer, session) -> None:
        """Test the root cannot be expanded."""
        client = make_client({TOPIC_PATH: sse_body(*photosynthesis_stream())})
        pipeline = GenerationPipeline(client=client, synchronizer=synchronizer)
        analysis = await pipeline.analyze("Photosynthesis", ctx=session)

        with pytest.raises(ValueError):
            await pipeline.expand(analysis.topic.id, "main", ctx=session)


class TestGenerateContent:
    """Tests for GenerationPipeline.generate_content()."""

    @pytest.mark.asyncio
    async def test_live_then_cached(self, make_client, no_sleep) -> None:
        """Test a generated page is cached and replayed on the next call."""
        client = make_client({CONTENT_PATH: content_stream()})
        cache = InMemoryContentCache()
        pipeline = GenerationPipeline(client=client, content_cache=cache, sleep=no_sleep)

        live = await pipeline.generate_content("Photosynthesis")
        recorder = Recorder()
        cached = await pipeline.generate_content("Photosynthesis", recorder)

        assert not live.from_cache
        assert cached.from_cache
        assert len(client.requests) == 1
        assert live.page.sections[0].paragraphs[0].content == "Plants use light."
        assert cached.page.sections == live.page.sections
        assert cached.page.title == "Photosynthesis"
        assert recorder.snapshots[-1].is_complete

    @pytest.mark.asyncio
    async def test_different_difficulty_misses_cache(self, make_client, no_sleep) -> None:
        """Test the cache key includes the difficulty."""
        client = make_client({CONTENT_PATH: content_stream()})
        pipeline = GenerationPipeline(client=client, content_cache=InMemoryContentCache(), sleep=no_sleep)

        await pipeline.generate_content("Photosynthesis", difficulty="beginner")
        result = await pipeline.generate_content("Photosynthesis", difficulty="advanced")

        assert not result.from_cache
        assert len(client.requests) == 2
