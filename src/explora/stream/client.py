"""HTTP client for the generation backend's streaming endpoints.

Every endpoint accepts a JSON POST body. The analysis and content
endpoints answer with an event stream of ``data: <json>`` frames; the
client only moves bytes and framing and validation live in
:mod:`explora.stream.parser`. Concept expansion answers with one JSON
document, which is turned into the same message types.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from explora.errors import TransportError
from explora.models.messages import (
    CompleteMessage,
    ConceptsBatchMessage,
    ConceptsBatchPayload,
    ErrorMessage,
    ErrorPayload,
    ExpansionResponse,
    StreamMessage,
)
from explora.stream.parser import parse_stream
from explora.utils.cancellation import CancellationToken, is_cancelled
from explora.utils.config import get_settings

logger = logging.getLogger(__name__)

ANALYZE_TOPIC_PATH = "/analyze-topic-stream"
ANALYZE_URL_PATH = "/analyze-url-stream"
EXPAND_CONCEPT_PATH = "/expand-concept"
GENERATE_CONTENT_PATH = "/generate-content-stream"


class GenerationClient:
    """Streams typed messages from the generation backend."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Backend API root (default from settings)
            timeout: Request timeout in seconds (default from settings)
            http_client: Pre-built client, e.g. one using ``httpx.MockTransport``
        """
        settings = get_settings()

        self.base_url = base_url or settings.backend_url
        self.timeout = timeout if timeout is not None else settings.backend_timeout
        self._client = http_client
        self._owns_client = http_client is None

    def _create_client(self) -> httpx.AsyncClient:
        """Create the HTTP client."""
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "text/event-stream"},
            timeout=self.timeout,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self._create_client()
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> GenerationClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def stream(
        self,
        path: str,
        body: dict[str, Any],
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[StreamMessage]:
        """POST ``body`` to ``path`` and yield messages as they arrive.

        Raises:
            TransportError: connection failure, non-200 status, or broken body
        """
        client = self._get_client()
        logger.debug(f"Opening stream {path}")

        try:
            async with client.stream("POST", path, json=body) as response:
                if response.status_code != 200:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(
                        f"Backend returned status {response.status_code} for {path}",
                        details={"status": response.status_code, "body": detail[:500]},
                    )

                async for message in parse_stream(response.aiter_bytes(), cancel):
                    yield message
                    if is_cancelled(cancel):
                        return
        except httpx.HTTPError as e:
            raise TransportError(f"Stream {path} failed: {e}", details={"path": path}) from e

    def analyze_topic(
        self,
        topic: str,
        language: str,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[StreamMessage]:
        return self.stream(ANALYZE_TOPIC_PATH, {"topic": topic, "language": language}, cancel)

    def analyze_url(
        self,
        url: str,
        language: str,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[StreamMessage]:
        return self.stream(ANALYZE_URL_PATH, {"url": url, "language": language}, cancel)

    async def expand_concept(
        self,
        concept: str,
        parent_id: str,
        parent_topic: str | None,
        language: str,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[StreamMessage]:
        """Expand ``concept`` and yield the answer as stream messages.

        The expand endpoint answers with one JSON document. Sub-concepts
        come out as a single ``concepts_batch`` under ``parent_id`` followed
        by ``complete``; a ``success: false`` answer becomes an ``error``.

        Raises:
            TransportError: connection failure, non-200 status, or unreadable body
        """
        client = self._get_client()
        body = {"concept": concept, "parentTopic": parent_topic, "language": language}
        logger.debug(f"Expanding {concept!r} under {parent_id}")

        try:
            response = await client.post(
                EXPAND_CONCEPT_PATH, json=body, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as e:
            raise TransportError(
                f"Request {EXPAND_CONCEPT_PATH} failed: {e}", details={"path": EXPAND_CONCEPT_PATH}
            ) from e

        if response.status_code != 200:
            raise TransportError(
                f"Backend returned status {response.status_code} for {EXPAND_CONCEPT_PATH}",
                details={"status": response.status_code, "body": response.text[:500]},
            )

        try:
            answer = ExpansionResponse.model_validate(response.json())
        except ValueError as e:
            raise TransportError(
                f"Unreadable answer from {EXPAND_CONCEPT_PATH}: {e}",
                details={"body": response.text[:500]},
            ) from e

        if is_cancelled(cancel):
            return
        if not answer.success or answer.data is None:
            yield ErrorMessage(data=ErrorPayload(message=answer.error or "Failed to expand concept"))
            return

        concepts = [sub.to_item() for sub in answer.data.sub_concepts]
        yield ConceptsBatchMessage(data=ConceptsBatchPayload(parent_id=parent_id, concepts=concepts))
        yield CompleteMessage()

    def generate_content(
        self,
        topic: str,
        context: str = "",
        difficulty: str = "intermediate",
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[StreamMessage]:
        body = {"topic": topic, "context": context, "difficulty": difficulty}
        return self.stream(GENERATE_CONTENT_PATH, body, cancel)
