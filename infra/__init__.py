"""Infrastructure modules for PegSentinel"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder, PollStats  # noqa: F401
from .healthcheck import HealthServer  # noqa: F401
from .state_store import StateStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"PollStats",
	"HealthServer",
	"StateStore",
]
