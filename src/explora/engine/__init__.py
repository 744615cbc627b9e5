"""Graph building, replay and the generation pipeline."""

from explora.engine.builder import BuildContext, GraphBuilder, merge_expansion, reduce
from explora.engine.pipeline import (
    AnalysisResult,
    ContentResult,
    ExpansionResult,
    GenerationPipeline,
    LiveGraphWriter,
)
from explora.engine.replay import ReplayDelays, replay_content, replay_graph

__all__ = [
    "AnalysisResult",
    "BuildContext",
    "ContentResult",
    "ExpansionResult",
    "GenerationPipeline",
    "GraphBuilder",
    "LiveGraphWriter",
    "ReplayDelays",
    "merge_expansion",
    "reduce",
    "replay_content",
    "replay_graph",
]
