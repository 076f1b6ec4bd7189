# docker_dns_proxy/stats.py
"""Query and error counters, and the periodic reporter that logs them"""

import logging
import threading
from typing import Tuple

from twisted.internet import task

from docker_dns_proxy.constants import DEFAULT_METRICS_INTERVAL

logger = logging.getLogger(__name__)


class QueryCounters:
    """Thread-safe pair of monotonically increasing counters

    Only the router increments these. Everyone else reads them through
    ``snapshot()``.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._queries = 0
        self._errors = 0

    def record_query(self) -> int:
        """Count one received query and return the new total"""
        with self._lock:
            self._queries += 1
            return self._queries

    def record_error(self) -> int:
        """Count one error and return the new total"""
        with self._lock:
            self._errors += 1
            return self._errors

    def snapshot(self) -> Tuple[int, int]:
        """Return (query_count, error_count)"""
        with self._lock:
            return self._queries, self._errors


class StatsReporter:
    """Logs counter totals periodically using Twisted's task.LoopingCall"""

    def __init__(self, counters: QueryCounters, interval: float = DEFAULT_METRICS_INTERVAL,
                 clock=None):
        self.counters = counters
        self.interval = interval
        self._loop = task.LoopingCall(self.report)
        if clock is not None:
            self._loop.clock = clock

    def report(self):
        queries, errors = self.counters.snapshot()
        logger.info(f"[METRICS] Total queries: {queries}, Errors: {errors}")

    def start(self):
        """Start periodic reporting; the first line is logged after one interval"""
        if self._loop.running:
            logger.warning("Stats reporter already started")
            return
        self._loop.start(self.interval, now=False)
        logger.info(f"Statistics will be logged every {self.interval}s")

    def stop(self):
        if self._loop.running:
            self._loop.stop()
