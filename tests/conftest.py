"""Pytest fixtures and configuration."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx
import pytest

from explora.engine.builder import BuildContext
from explora.models.messages import StreamMessage, encode_frame, parse_message
from explora.models.resources import SessionContext
from explora.persistence.store import InMemoryStore
from explora.persistence.sync import PersistenceSynchronizer
from explora.stream.client import GenerationClient

PHOTOSYNTHESIS_ASPECTS = [
    {"name": "Light Reactions", "description": "Capture light energy", "importance": "high"},
    {"name": "Calvin Cycle", "description": "Fix carbon dioxide", "importance": "high"},
    {"name": "Chlorophyll", "description": "Green pigment", "importance": "medium"},
    {"name": "Stomata", "description": "Leaf pores", "importance": "low"},
]


def message(payload: dict[str, Any]) -> StreamMessage:
    """Build a typed message from its wire form."""
    return parse_message(payload)


def sse_body(*payloads: dict[str, Any]) -> bytes:
    """Encode wire payloads as one event stream body."""
    return b"".join(encode_frame(parse_message(p)) for p in payloads)


def photosynthesis_stream(complete: bool = True) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = [
        {"type": "metadata", "data": {"mainTopic": "Photosynthesis", "description": "How plants make food"}},
        {"type": "aspects_batch", "data": PHOTOSYNTHESIS_ASPECTS},
    ]
    if complete:
        payloads.append({"type": "complete"})
    return payloads


def expansion_answer(*names: str, concept: str = "Calvin Cycle") -> dict[str, Any]:
    """JSON body the expand endpoint returns for the given sub-concepts."""
    return {
        "success": True,
        "data": {
            "concept": concept,
            "subConcepts": [
                {"name": name, "description": f"About {name}", "relatedTo": [concept], "difficulty": "intermediate"}
                for name in names
            ],
            "practicalApplications": [],
        },
    }


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def no_sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def session() -> SessionContext:
    return SessionContext(session_id="session-1", language="en")


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def synchronizer(store: InMemoryStore) -> PersistenceSynchronizer:
    return PersistenceSynchronizer(store, max_retries=3)


@pytest.fixture
def build_ctx() -> BuildContext:
    return BuildContext.from_settings("Photosynthesis")


@pytest.fixture
def make_client() -> Callable[..., GenerationClient]:
    """Factory for a GenerationClient backed by httpx.MockTransport.

    ``routes`` maps a request path to a response body, or to a callable
    taking the request and returning an ``httpx.Response``.
    """

    def _make(routes: dict[str, Any]) -> GenerationClient:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            route = routes.get(request.url.path)
            if route is None:
                return httpx.Response(404, text="not found")
            if callable(route):
                return route(request)
            return httpx.Response(
                200, content=route, headers={"content-type": "text/event-stream"}
            )

        http_client = httpx.AsyncClient(
            base_url="http://backend.test", transport=httpx.MockTransport(handler)
        )
        client = GenerationClient(base_url="http://backend.test", http_client=http_client)
        client.requests = requests  # type: ignore[attr-defined]
        return client

    return _make
