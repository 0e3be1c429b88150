"""
Once-per-outage reporting for backing store failures.
"""

from typing import Optional

from .exceptions import StoreUnavailable
from .fanout_logger import FanoutLogger
from .log_record import Severity
from .metrics import MetricsCollector


class OutageLatch:
    """
    Tracks whether a component's store is down.

    The first failure of an outage is logged as an error and the first
    success afterwards as a recovery. Failures in between are only counted.
    """

    def __init__(
        self,
        component: str,
        logger: FanoutLogger,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.component = component
        self.logger = logger
        self.metrics = metrics
        self.down = False

    def failed(self, error: StoreUnavailable) -> None:
        if self.metrics:
            self.metrics.record_store_error(self.component)
        if self.down:
            return
        self.down = True
        self.logger.emit(
            Severity.ERROR,
            f"{self.component} store unavailable",
            {"component": self.component, "store": error.store, "error": str(error)},
        )

    def succeeded(self) -> None:
        if not self.down:
            return
        self.down = False
        self.logger.emit(
            Severity.INFO,
            f"{self.component} store recovered",
            {"component": self.component},
        )
