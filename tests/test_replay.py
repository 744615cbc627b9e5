"""Tests for replaying stored graphs and cached content."""

from __future__ import annotations

import pytest

from explora.engine.builder import BuildContext, GraphBuilder
from explora.engine.replay import ReplayDelays, graph_batches, replay_content, replay_graph
from explora.models.content import ContentPage, ContentParagraph, ContentSection, SectionType
from explora.models.graph import ROOT_NODE_ID
from explora.models.messages import AspectsBatchMessage, ConceptsBatchMessage
from explora.utils.config import Settings

from conftest import message, photosynthesis_stream


def live_graph(ctx: BuildContext) -> GraphBuilder:
    """A graph with two root batches and one expansion."""
    builder = GraphBuilder(ctx)
    payloads = photosynthesis_stream(complete=False)
    payloads.append({"type": "aspects_batch", "data": [{"name": "Glucose", "importance": "low"}, {"name": "Oxygen"}]})
    for payload in payloads:
        builder.apply(message(payload))

    parent = builder.snapshot.nodes[1]
    builder.apply(
        message({"type": "concepts_batch", "data": {"parentId": parent.id, "concepts": [{"name": "ATP"}, {"name": "NADPH"}]}})
    )
    builder.apply(message({"type": "complete"}))
    return builder


def sample_page() -> ContentPage:
    return ContentPage(
        id="photosynthesis",
        topic="Photosynthesis",
        title="Photosynthesis",
        description="How plants turn light into sugar",
        sections=[
            ContentSection(
                id="s2",
                title="Summary",
                type=SectionType.SUMMARY,
                order=1,
                paragraphs=[
                    ContentParagraph(id="p3", section_id="s2", order=0, content="In short: light in, sugar out.", is_loaded=True),
                ],
            ),
            ContentSection(
                id="s1",
                title="Introduction",
                type=SectionType.INTRODUCTION,
                order=0,
                paragraphs=[
                    ContentParagraph(id="p1", section_id="s1", order=0, title="Plants", content="Plants use light", is_loaded=True),
                    ContentParagraph(id="p2", section_id="s1", order=1, title="Cells", content="Chloroplasts do the work", is_loaded=True),
                ],
            ),
        ],
    )


class TestGraphReplay:
    """Tests for replay_graph()."""

    @pytest.mark.asyncio
    async def test_round_trip_reproduces_graph(self, build_ctx: BuildContext, no_sleep) -> None:
        """Test replaying a stored graph rebuilds the same nodes and edges."""
        live = live_graph(build_ctx).snapshot

        replayed = GraphBuilder(BuildContext.from_settings("Photosynthesis"))
        async for msg in replay_graph(live.graph, sleep=no_sleep):
            replayed.apply(msg)
        snapshot = replayed.snapshot

        assert snapshot.is_complete
        assert {n.id: n for n in snapshot.nodes} == {n.id: n for n in live.nodes}
        assert {e.id: e for e in snapshot.edges} == {e.id: e for e in live.edges}

    @pytest.mark.asyncio
    async def test_message_sequence(self, build_ctx: BuildContext, no_sleep) -> None:
        """Test metadata first, then batches, then complete."""
        live = live_graph(build_ctx).snapshot
        types = [m.type async for m in replay_graph(live.graph, sleep=no_sleep)]

        assert types == ["metadata", "aspects_batch", "aspects_batch", "concepts_batch", "complete"]

    @pytest.mark.asyncio
    async def test_batch_pacing(self, build_ctx: BuildContext, no_sleep) -> None:
        """Test one bounded pause before each batch."""
        live = live_graph(build_ctx).snapshot
        [m async for m in replay_graph(live.graph, sleep=no_sleep)]

        assert no_sleep.delays == [0.12, 0.12, 0.12]

    def test_batches_grouped_by_parent(self, build_ctx: BuildContext) -> None:
        """Test batch sizes and parents follow the stored structure."""
        live = live_graph(build_ctx).snapshot
        batches = graph_batches(live.graph, batch_size=4)

        assert isinstance(batches[0], AspectsBatchMessage)
        assert [len(b.data) for b in batches[:2]] == [4, 2]
        assert isinstance(batches[2], ConceptsBatchMessage)
        assert batches[2].data.parent_id == live.nodes[1].id
        assert batches[2].data.parent_id != ROOT_NODE_ID

    def test_invalid_batch_size(self, build_ctx: BuildContext) -> None:
        """Test batch size must be positive."""
        with pytest.raises(ValueError):
            graph_batches(live_graph(build_ctx).snapshot.graph, batch_size=0)


class TestContentReplay:
    """Tests for replay_content()."""

    @pytest.mark.asyncio
    async def test_sequence_shape(self, no_sleep) -> None:
        """Test outline, paragraph, chunks and paragraph_complete per section."""
        types = [m.type async for m in replay_content(sample_page(), sleep=no_sleep)]

        assert types[0] == "metadata"
        assert types[-1] == "complete"
        assert types[1:6] == ["outline", "paragraph", "paragraph_chunk", "paragraph_chunk", "paragraph_chunk"]
        assert types.count("outline") == 2
        assert types.count("paragraph_complete") == 3

    @pytest.mark.asyncio
    async def test_sections_in_stored_order(self, no_sleep) -> None:
        """Test sections replay by their order field."""
        outlines = [
            m.data.sections[0].id
            async for m in replay_content(sample_page(), sleep=no_sleep)
            if m.type == "outline"
        ]
        assert outlines == ["s1", "s2"]

    @pytest.mark.asyncio
    async def test_chunks_accumulate(self, no_sleep) -> None:
        """Test word-by-word chunks carry the text so far."""
        chunks = [
            m.data.content
            async for m in replay_content(sample_page(), sleep=no_sleep)
            if m.type == "paragraph_chunk" and m.data.id == "p1"
        ]
        assert chunks == ["Plants", "Plants use", "Plants use light"]

    @pytest.mark.asyncio
    async def test_without_word_streaming(self, no_sleep) -> None:
        """Test paragraphs arrive whole when word streaming is off."""
        types = [m.type async for m in replay_content(sample_page(), stream_words=False, sleep=no_sleep)]
        assert "paragraph_chunk" not in types

    @pytest.mark.asyncio
    async def test_round_trip_through_builder(self, no_sleep) -> None:
        """Test the builder reassembles the cached page."""
        page = sample_page()
        builder = GraphBuilder(BuildContext.from_settings("Photosynthesis"))
        async for msg in replay_content(page, sleep=no_sleep):
            builder.apply(msg)

        rebuilt = builder.content_page()
        assert builder.snapshot.is_complete
        assert rebuilt.title == page.title
        assert rebuilt.description == page.description
        assert rebuilt.sections == sorted(page.sections, key=lambda s: s.order)

    @pytest.mark.asyncio
    async def test_delays_bounded(self, no_sleep) -> None:
        """Test pauses use the paragraph and word delays."""
        [m async for m in replay_content(sample_page(), sleep=no_sleep)]
        assert set(no_sleep.delays) == {0.1, 0.03}
        assert max(no_sleep.delays) <= 0.25


class TestReplayDelays:
    """Tests for ReplayDelays."""

    def test_capped_by_max(self) -> None:
        """Test configured delays never exceed the cap."""
        settings = Settings(replay_batch_delay_ms=5000, replay_word_delay_ms=10, replay_max_delay_ms=250)
        delays = ReplayDelays.from_settings(settings)

        assert delays.batch == 0.25
        assert delays.word == 0.01

    def test_none(self) -> None:
        """Test the zero-delay preset."""
        assert ReplayDelays.none() == ReplayDelays(0.0, 0.0, 0.0)
