"""Infrastructure modules for the cycle investor"""

from .metrics import MetricsRecorder, IterationStats  # noqa: F401
from .scheduler import IterationScheduler  # noqa: F401
from .state_store import CalibrationStore, CycleStore, PositionStore  # noqa: F401

__all__ = [
	"MetricsRecorder",
	"IterationStats",
	"IterationScheduler",
	"CalibrationStore",
	"CycleStore",
	"PositionStore",
]
