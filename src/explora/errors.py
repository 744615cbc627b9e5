"""Exception hierarchy for the generation engine.

Recoverable errors (``FrameParseError``, ``PersistenceConflict``) are
handled close to where they occur. Terminal errors (``TransportError``,
``UpstreamError``) carry the last good snapshot so callers never lose the
graph built before the failure.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from explora.models.graph import ProgressSnapshot


class ExploraError(Exception):
    """Base class for all Explora errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class FrameParseError(ExploraError):
    """A single stream frame could not be decoded. Skip it and continue."""

    def __init__(self, message: str, frame: str = "") -> None:
        super().__init__(message, {"frame": frame[:200]})
        self.frame = frame


class TerminalStreamError(ExploraError):
    """Base for errors that end a generation run."""

    def __init__(
        self,
        message: str,
        snapshot: ProgressSnapshot | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.snapshot = snapshot


class TransportError(TerminalStreamError):
    """The network stream failed (connect error, bad status, broken body)."""


class UpstreamError(TerminalStreamError):
    """The backend sent an ``error`` message."""


class PersistenceConflict(ExploraError):
    """A write raced with another writer and could not be reconciled."""


class DuplicateKeyError(ExploraError):
    """A store rejected an insert because the key already exists."""


class ResolverExhausted(ExploraError):
    """Slug uniqueness search hit its attempt cap."""


class GraphFrozenError(ExploraError):
    """A completed graph received a non-additive mutation."""


class BuilderClosedError(ExploraError):
    """A builder that already reached a terminal state received a message."""
