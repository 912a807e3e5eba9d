"""Infrastructure modules for the insight layer"""

from .latency_tracker import LatencyTracker  # noqa: F401
from .metrics import QualityRecorder  # noqa: F401
from .state_store import InsightStore, JsonFileBackend, MemoryBackend  # noqa: F401

__all__ = [
	"LatencyTracker",
	"QualityRecorder",
	"InsightStore",
	"JsonFileBackend",
	"MemoryBackend",
]
