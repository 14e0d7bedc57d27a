"""Infrastructure modules for basketbot"""

from .alerting import AlertService, NotificationKind  # noqa: F401
from .job_queue import CronScheduler, JobQueue  # noqa: F401
from .metrics import MetricsRecorder, JobStats  # noqa: F401
from .state_store import StateStore  # noqa: F401

__all__ = [
	"AlertService",
	"NotificationKind",
	"CronScheduler",
	"JobQueue",
	"MetricsRecorder",
	"JobStats",
	"StateStore",
]
