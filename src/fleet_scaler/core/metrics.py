"""Load signal sampling for the fleet."""

import logging
import re
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Union

from .exceptions import FleetScalerError
from .types import MetricsSnapshot
from ..runtimes.base import ContainerRuntime


logger = logging.getLogger(__name__)


_RESPONSE_TIME = re.compile(r"\brt=(\d+(?:\.\d+)?)")
_TIME_LOCAL = re.compile(r"\[(\d{2}/[A-Za-z]{3}/\d{4}:\d{2}:\d{2}:\d{2} [+-]\d{4})\]")


@dataclass
class AccessLogStats:
    """Latency and request rate derived from proxy access records."""
    avg_latency_seconds: Optional[float]
    requests_last_minute: int
    records_read: int = 0


class AccessLogReader:
    """Reads request timing from an nginx access log.

    Records must carry ``[$time_local]`` and ``rt=$request_time``, as in the
    ``timed`` log format shipped with the default proxy config.
    """

    def __init__(
        self,
        path: Union[str, Path],
        latency_window: int = 50,
        scan_lines: int = 20000
    ):
        """Initialize access log reader.

        Args:
            path: Access log path
            latency_window: Number of most recent records averaged for latency
            scan_lines: Maximum trailing lines scanned for the request rate
        """
        self.path = Path(path)
        self.latency_window = latency_window
        self.scan_lines = max(scan_lines, latency_window)

    def read(self, now: Optional[datetime] = None) -> AccessLogStats:
        """Compute latency and request rate.

        A missing or unreadable log yields unknown latency and zero rate.
        """
        try:
            with open(self.path, 'r', errors='replace') as f:
                lines = deque(f, maxlen=self.scan_lines)
        except OSError as e:
            logger.warning(f"Access log {self.path} unavailable: {e}")
            return AccessLogStats(avg_latency_seconds=None, requests_last_minute=0)

        return AccessLogStats(
            avg_latency_seconds=self._average_latency(lines),
            requests_last_minute=self._count_recent(lines, now),
            records_read=len(lines)
        )

    def _average_latency(self, lines) -> Optional[float]:
        recent = list(lines)[-self.latency_window:]
        samples: List[float] = []
        for line in recent:
            match = _RESPONSE_TIME.search(line)
            if match:
                samples.append(float(match.group(1)))
        if not samples:
            return None
        return sum(samples) / len(samples)

    def _count_recent(self, lines, now: Optional[datetime]) -> int:
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.astimezone()
        cutoff = now - timedelta(seconds=60)

        count = 0
        for line in reversed(lines):
            match = _TIME_LOCAL.search(line)
            if not match:
                continue
            try:
                stamp = datetime.strptime(match.group(1), "%d/%b/%Y:%H:%M:%S %z")
            except ValueError:
                continue
            if stamp < cutoff:
                break
            if stamp <= now:
                count += 1
        return count


class MetricsCollector:
    """Samples CPU from the runtime and latency/rate from the access log."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        access_log: Optional[AccessLogReader],
        name_prefix: str = "worker"
    ):
        """Initialize metrics collector.

        Args:
            runtime: Container runtime for instance listing and CPU stats
            access_log: Access log reader (None disables latency and rate)
            name_prefix: Fleet container name prefix
        """
        self.runtime = runtime
        self.access_log = access_log
        self.name_prefix = name_prefix

    async def sample(self, now: Optional[datetime] = None) -> MetricsSnapshot:
        """Take one read-only snapshot of the fleet's load.

        Unavailable per-instance CPU readings are left out of the average; if
        none are available the average is None.
        """
        try:
            containers = await self.runtime.list(self.name_prefix)
        except FleetScalerError as e:
            logger.warning(f"Cannot list fleet containers: {e}")
            containers = []

        cpu_readings: List[float] = []
        for container in containers:
            try:
                reading = await self.runtime.stats(container.name)
            except FleetScalerError as e:
                logger.warning(f"CPU reading for {container.name} unavailable: {e}")
                continue
            if reading is None:
                logger.debug(f"No CPU reading for {container.name}")
                continue
            cpu_readings.append(reading)

        if self.access_log is not None:
            log_stats = self.access_log.read(now)
        else:
            log_stats = AccessLogStats(avg_latency_seconds=None, requests_last_minute=0)

        instance_count = len(containers)
        rate = float(log_stats.requests_last_minute)
        snapshot = MetricsSnapshot(
            instance_count=instance_count,
            avg_cpu_percent=sum(cpu_readings) / len(cpu_readings) if cpu_readings else None,
            avg_latency_seconds=log_stats.avg_latency_seconds,
            request_rate_per_minute=rate,
            request_rate_per_instance=rate / instance_count if instance_count else 0.0,
            cpu_samples=len(cpu_readings)
        )

        logger.debug(f"Metrics sample: {snapshot.to_dict()}")
        return snapshot
