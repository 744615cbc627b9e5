"""Generation pipeline: stream -> builder -> callbacks -> persistence.

One pipeline call drives one run. Snapshots reach the caller's callback
in message order. A completed graph found in storage, or a cached page,
is replayed through the same builder, so callers cannot tell a replay
from a live run except through ``from_cache`` on the result.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field

from explora.cache.content_cache import ContentCache, ContentCacheKey
from explora.engine.builder import BuildContext, GraphBuilder
from explora.engine.replay import Sleep, replay_content, replay_graph
from explora.errors import TransportError, UpstreamError
from explora.models.content import ContentPage
from explora.models.graph import ProgressSnapshot
from explora.models.messages import (
    AspectsBatchMessage,
    CompleteMessage,
    ConceptsBatchMessage,
    ErrorMessage,
    StreamMessage,
)
from explora.models.resources import MindMap, SessionContext, SourceType, Topic
from explora.persistence.sync import PersistenceSynchronizer
from explora.stream.client import GenerationClient
from explora.utils.cancellation import CancellationToken, is_cancelled
from explora.utils.config import get_settings
from explora.utils.urls import is_valid_url, url_topic_title

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressSnapshot], Awaitable[None] | None]


@dataclass
class AnalysisResult:
    """Outcome of ``GenerationPipeline.analyze``."""

    snapshot: ProgressSnapshot
    topic: Topic | None = None
    mind_map: MindMap | None = None
    from_cache: bool = False
    cancelled: bool = False
    persistence_errors: list[Exception] = field(default_factory=list)


@dataclass
class ExpansionResult:
    """Outcome of ``GenerationPipeline.expand``."""

    snapshot: ProgressSnapshot
    node_id: str
    new_node_ids: list[str] = field(default_factory=list)
    from_cache: bool = False
    cancelled: bool = False


@dataclass
class ContentResult:
    """Outcome of ``GenerationPipeline.generate_content``."""

    page: ContentPage
    snapshot: ProgressSnapshot
    from_cache: bool = False
    cancelled: bool = False


class LiveGraphWriter:
    """Writes snapshots to the live mind map from a single background task.

    Snapshots submitted while a write is in flight collapse into the most
    recent one, so writes never overlap and never go backwards. Failures
    are logged and collected; they never interrupt the stream.
    """

    def __init__(self, synchronizer: PersistenceSynchronizer, topic_id: str):
        self.synchronizer = synchronizer
        self.topic_id = topic_id
        self.mind_map: MindMap | None = None
        self.errors: list[Exception] = []
        self.writes = 0
        self._pending: ProgressSnapshot | None = None
        self._task: asyncio.Task | None = None

    def submit(self, snapshot: ProgressSnapshot) -> None:
        self._pending = snapshot
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while self._pending is not None:
            snapshot, self._pending = self._pending, None
            try:
                self.mind_map = await self.synchronizer.upsert_graph(
                    self.topic_id,
                    snapshot,
                    mind_map_id=self.mind_map.id if self.mind_map else None,
                )
                self.writes += 1
            except Exception as e:
                logger.error(f"Failed to persist mind map for topic {self.topic_id}: {e}")
                self.errors.append(e)

    async def flush(self) -> MindMap | None:
        """Wait until every submitted snapshot has been written."""
        while self._task is not None and not self._task.done():
            await self._task
        return self.mind_map


class GenerationPipeline:
    """Runs topic analysis, node expansion and content generation."""

    def __init__(
        self,
        client: GenerationClient | None = None,
        synchronizer: PersistenceSynchronizer | None = None,
        content_cache: ContentCache | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = get_settings()
        self.client = client or GenerationClient()
        self.synchronizer = synchronizer
        self.content_cache = content_cache
        self.sleep = sleep
        self.last_snapshot: ProgressSnapshot | None = None

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _emit(
        self,
        on_progress: ProgressCallback | None,
        snapshot: ProgressSnapshot,
        cancel: CancellationToken | None,
    ) -> None:
        self.last_snapshot = snapshot
        if on_progress is None or is_cancelled(cancel):
            return
        result = on_progress(snapshot)
        if inspect.isawaitable(result):
            await result

    async def _run(
        self,
        builder: GraphBuilder,
        messages: AsyncIterator[StreamMessage],
        on_progress: ProgressCallback | None,
        cancel: CancellationToken | None,
        apply: Callable[[StreamMessage], ProgressSnapshot] | None = None,
        writer: LiveGraphWriter | None = None,
    ) -> bool:
        """Feed ``messages`` through ``builder``; return True if the run completed.

        Returns False when cancelled. On a backend ``error`` message raises
        ``UpstreamError``; on a network failure or a stream that ends
        without ``complete`` raises ``TransportError``. Either way the
        failed snapshot is delivered to ``on_progress`` exactly once and
        attached to the exception.
        """
        apply = apply or builder.apply
        completed = False

        try:
            async for message in messages:
                if is_cancelled(cancel):
                    break

                snapshot = apply(message)
                await self._emit(on_progress, snapshot, cancel)
                if writer is not None:
                    writer.submit(snapshot)

                if isinstance(message, ErrorMessage):
                    logger.warning(f"Backend reported an error: {message.reason}")
                    raise UpstreamError(message.reason, snapshot=snapshot)
                if isinstance(message, CompleteMessage):
                    completed = True
                    break
        except TransportError as e:
            await self._fail(builder, e, on_progress, cancel, writer)
            raise
        finally:
            aclose = getattr(messages, "aclose", None)
            if aclose is not None:
                await aclose()

        if is_cancelled(cancel):
            logger.info(f"Run cancelled: {cancel.reason}")
            return False

        if not completed:
            error = TransportError("Stream ended before the run completed")
            await self._fail(builder, error, on_progress, cancel, writer)
            raise error

        return True

    async def _fail(
        self,
        builder: GraphBuilder,
        error: TransportError,
        on_progress: ProgressCallback | None,
        cancel: CancellationToken | None,
        writer: LiveGraphWriter | None,
    ) -> None:
        logger.error(f"Stream failed: {error.message}")
        snapshot = builder.fail(error.message)
        error.snapshot = snapshot
        await self._emit(on_progress, snapshot, cancel)
        if writer is not None:
            writer.submit(snapshot)

    # ==================== Topic analysis ====================

    async def analyze(
        self,
        topic_or_url: str,
        on_progress: ProgressCallback | None = None,
        ctx: SessionContext | None = None,
        cancel: CancellationToken | None = None,
    ) -> AnalysisResult:
        """Build the mind map for a topic or URL.

        A complete map already stored for the same session topic is
        replayed instead of generated.

        Raises:
            UpstreamError: the backend sent an ``error`` message
            TransportError: the stream broke or ended early
        """
        ctx = ctx or SessionContext(language=self.settings.default_language)
        text = topic_or_url.strip()
        is_url = is_valid_url(text)
        title = url_topic_title(text) if is_url else text
        source_url = text if is_url else None

        builder = GraphBuilder(BuildContext.from_settings(title, source_url, self.settings))
        await self._emit(
            on_progress,
            builder.start(
                label=title if is_url else None,
                step="Extracting and analyzing content..." if is_url else None,
            ),
            cancel,
        )

        result = AnalysisResult(snapshot=builder.snapshot)
        writer = None
        stored = None

        if self.synchronizer is not None:
            try:
                found = await self.synchronizer.get_or_create_topic(
                    ctx,
                    title,
                    source_type=SourceType.URL if is_url else SourceType.TOPIC,
                    source_url=source_url,
                )
                result.topic = found.resource
                if found.is_existing:
                    stored = await self.synchronizer.load_snapshot(found.resource.id)
            except Exception as e:
                logger.error(f"Topic lookup failed for '{title}', continuing unsaved: {e}")
                result.persistence_errors.append(e)

        if stored is not None and stored.is_complete:
            logger.info(f"Replaying stored mind map for '{title}'")
            result.from_cache = True
            messages = replay_graph(stored.graph, title, sleep=self.sleep)
        else:
            if result.topic is not None:
                writer = LiveGraphWriter(self.synchronizer, result.topic.id)
            if is_url:
                messages = self.client.analyze_url(text, ctx.language, cancel)
            else:
                messages = self.client.analyze_topic(text, ctx.language, cancel)

        try:
            completed = await self._run(builder, messages, on_progress, cancel, writer=writer)
        finally:
            if writer is not None:
                result.mind_map = await writer.flush()
                result.persistence_errors.extend(writer.errors)

        result.snapshot = builder.snapshot
        result.cancelled = not completed

        if completed and writer is not None and result.mind_map is not None:
            try:
                result.topic = await self.synchronizer.finalize_topic(
                    result.topic.id, result.mind_map.id
                )
            except Exception as e:
                logger.error(f"Failed to finalize topic {result.topic.id}: {e}")
                result.persistence_errors.append(e)
        elif result.from_cache and self.synchronizer is not None:
            result.mind_map = await self.synchronizer.get_live_mind_map(result.topic.id)

        return result

    # ==================== Node expansion ====================

    async def expand(
        self,
        topic_id: str,
        node_id: str,
        on_progress: ProgressCallback | None = None,
        ctx: SessionContext | None = None,
        cancel: CancellationToken | None = None,
    ) -> ExpansionResult:
        """Fetch sub-concepts for one node and append them to the stored map.

        A node that was already expanded is returned as stored.

        Raises:
            KeyError: unknown topic or node
            ValueError: the node cannot be expanded
            UpstreamError: the backend reported a failed expansion
            TransportError: the request failed or the answer was unreadable
        """
        if self.synchronizer is None:
            raise ValueError("Expanding a node needs a persistence synchronizer")

        ctx = ctx or SessionContext(language=self.settings.default_language)
        mind_map = await self.synchronizer.get_live_mind_map(topic_id)
        if mind_map is None:
            raise KeyError(f"No mind map for topic {topic_id}")

        snapshot = await self.synchronizer.load_snapshot(topic_id)
        node = snapshot.get_node(node_id)
        if node is None:
            raise KeyError(f"Node {node_id} not in mind map {mind_map.id}")
        if not node.expandable:
            raise ValueError(f"Node {node_id} cannot be expanded")

        root = snapshot.root
        root_label = root.label if root else node.label
        builder = GraphBuilder.from_snapshot(
            snapshot,
            BuildContext.from_settings(root_label, root.source_url if root else None, self.settings),
        )

        existing_children = snapshot.graph.children_of(node_id)
        if node.expanded and existing_children:
            logger.info(f"Node {node_id} already expanded, returning stored children")
            await self._emit(on_progress, snapshot, cancel)
            return ExpansionResult(
                snapshot=snapshot,
                node_id=node_id,
                new_node_ids=[n.id for n in existing_children],
                from_cache=True,
            )

        def apply(message: StreamMessage) -> ProgressSnapshot:
            if isinstance(message, ConceptsBatchMessage):
                return builder.merge_expansion(node_id, message.data.concepts)
            if isinstance(message, AspectsBatchMessage):
                return builder.merge_expansion(node_id, message.data)
            if isinstance(message, ErrorMessage):
                return builder.fail(message.reason)
            return builder.snapshot

        before = {n.id for n in snapshot.nodes}
        before_edges = {e.id for e in snapshot.edges}
        messages = self.client.expand_concept(node.label, node.id, root_label, ctx.language, cancel)
        completed = await self._run(builder, messages, on_progress, cancel, apply=apply)

        final = builder.snapshot
        new_nodes = [n for n in final.nodes if n.id not in before]
        new_edges = [e for e in final.edges if e.id not in before_edges]

        if new_nodes:
            try:
                await self.synchronizer.save_node_expansion(mind_map.id, node_id, new_nodes, new_edges)
            except Exception as e:
                logger.error(f"Failed to save expansion of {node_id}: {e}")

        return ExpansionResult(
            snapshot=final,
            node_id=node_id,
            new_node_ids=[n.id for n in new_nodes],
            cancelled=not completed,
        )

    # ==================== Content generation ====================

    async def generate_content(
        self,
        topic: str,
        on_progress: ProgressCallback | None = None,
        context: str = "",
        difficulty: str = "intermediate",
        language: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> ContentResult:
        """Generate (or replay from cache) the reading page for a topic.

        Raises:
            UpstreamError: the backend sent an ``error`` message
            TransportError: the stream broke or ended early
        """
        language = language or self.settings.default_language
        key = ContentCacheKey.from_request(topic, context, difficulty, language)

        cached = await self.content_cache.get(key) if self.content_cache else None

        builder = GraphBuilder(BuildContext.from_settings(topic, settings=self.settings))
        await self._emit(on_progress, builder.start(step="Generating content..."), cancel)

        if cached is not None:
            logger.info(f"Replaying cached content for '{topic}'")
            messages = replay_content(cached, sleep=self.sleep)
        else:
            messages = self.client.generate_content(topic, context, difficulty, cancel)

        completed = await self._run(builder, messages, on_progress, cancel)
        page = builder.content_page()

        if completed and cached is None and self.content_cache is not None:
            await self.content_cache.put(key, page)

        return ContentResult(
            page=page,
            snapshot=builder.snapshot,
            from_cache=cached is not None,
            cancelled=not completed,
        )
