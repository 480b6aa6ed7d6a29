from .scheduler import BackgroundScheduler
from .watchdog import TimeoutWatchdog

__all__ = ["BackgroundScheduler", "TimeoutWatchdog"]
