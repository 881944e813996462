from .encoder import Encoder, ProgressTracker
from .fetcher import AssetFetcher
from .planner import CompositionPlanner, FilterGraphPlan, FilterStage, InputSpec

__all__ = [
    "AssetFetcher",
    "CompositionPlanner",
    "Encoder",
    "FilterGraphPlan",
    "FilterStage",
    "InputSpec",
    "ProgressTracker",
]
