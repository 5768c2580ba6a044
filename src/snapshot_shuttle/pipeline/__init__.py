from .chunking import ChunkingStrategy, FixedSizeChunker, block_id
from .planner import Plan, WorkItem, WorkKind, plan_backup, relative_path, validate_sources
from .scheduler import ProgressTracker, WorkScheduler, resolve_concurrency

__all__ = [
    "ChunkingStrategy",
    "FixedSizeChunker",
    "block_id",
    "Plan",
    "WorkItem",
    "WorkKind",
    "plan_backup",
    "relative_path",
    "validate_sources",
    "ProgressTracker",
    "WorkScheduler",
    "resolve_concurrency",
]
