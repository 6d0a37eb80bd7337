"""
EdPsych Usage Statistics Collector
Aggregates the operation log over a daily, weekly or monthly window.
"""

import calendar
import gzip
import json
import logging
import math
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from edpsych_maintenance.config import resolve_config
from edpsych_maintenance.operation_logger import (
    LogStream, format_timestamp, parse_timestamp, partition_of, utc_now
)

logger = logging.getLogger('edpsych.usage_statistics')

READ_OPERATIONS = frozenset({'read', 'count', 'findMany', 'findUnique', 'findFirst'})
WRITE_OPERATIONS = frozenset({'create', 'createMany', 'update', 'updateMany', 'upsert'})
DELETE_OPERATIONS = frozenset({'delete', 'deleteMany', 'bulkDelete'})


class UsagePeriod(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class UsageStatus(Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class OperationCounts:
    total: int = 0
    reads: int = 0
    writes: int = 0
    deletes: int = 0

    def add(self, operation: str):
        self.total += 1
        if operation in READ_OPERATIONS:
            self.reads += 1
        elif operation in WRITE_OPERATIONS:
            self.writes += 1
        elif operation in DELETE_OPERATIONS:
            self.deletes += 1


@dataclass
class ActorActivity:
    operations: int = 0
    last_active: Optional[str] = None


@dataclass
class LatencyStats:
    average_query_time_ms: float = 0.0
    slowest_query_time_ms: float = 0.0
    slowest_query_model: str = ''
    p50_query_time_ms: float = 0.0
    p95_query_time_ms: float = 0.0
    sampled_queries: int = 0


@dataclass
class UsageReport:
    status: UsageStatus
    period: UsagePeriod
    timestamp: str
    window_start: str
    window_end: str
    operations: OperationCounts = field(default_factory=OperationCounts)
    models: Dict[str, OperationCounts] = field(default_factory=dict)
    users: Dict[str, ActorActivity] = field(default_factory=dict)
    performance: LatencyStats = field(default_factory=LatencyStats)
    files_read: int = 0
    unreadable_files: int = 0
    malformed_entries: int = 0
    error: Optional[str] = None


def window_start(period: UsagePeriod, now: datetime) -> datetime:
    """Start of the window ending at ``now``; monthly is one calendar month."""
    if period == UsagePeriod.DAILY:
        return now - timedelta(days=1)
    if period == UsagePeriod.WEEKLY:
        return now - timedelta(days=7)

    year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


def percentile(values: List[float], fraction: float) -> float:
    """Nearest-rank percentile of an already sorted list."""
    if not values:
        return 0.0
    rank = max(1, math.ceil(fraction * len(values)))
    return values[rank - 1]


class UsageStatisticsCollector:
    """Reads the db-operations stream, including archived partitions."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = resolve_config(config)
        logging_config = self.config.get('logging', {})
        self.log_dir = Path(logging_config.get('log_dir', './logs'))
        self.archive_dir = Path(logging_config.get('archive_dir', './logs/archive'))

    def _log_files(self, start: datetime) -> List[Path]:
        files = []
        candidates = []
        if self.log_dir.exists():
            candidates.extend(self.log_dir.glob(f"{LogStream.OPERATIONS.value}-*.log"))
        if self.archive_dir.exists():
            candidates.extend(self.archive_dir.glob(f"{LogStream.OPERATIONS.value}-*.log.gz"))

        for path in sorted(candidates):
            partition = partition_of(path.name)
            if partition is None:
                continue
            _, day = partition
            if day < start.date():
                continue
            files.append(path)
        return files

    async def _read_lines(self, path: Path) -> List[str]:
        if path.suffix == '.gz':
            async with aiofiles.open(path, 'rb') as f:
                raw = await f.read()
            return gzip.decompress(raw).decode('utf-8', errors='replace').splitlines()
        async with aiofiles.open(path, 'r', encoding='utf-8', errors='replace') as f:
            content = await f.read()
        return content.splitlines()

    async def collect_usage(self, period) -> UsageReport:
        """Count operations logged in ``[now - period, now]``."""
        period = UsagePeriod(period)
        now = utc_now()
        start = window_start(period, now)
        report = UsageReport(
            status=UsageStatus.SUCCESS,
            period=period,
            timestamp=format_timestamp(now),
            window_start=format_timestamp(start),
            window_end=format_timestamp(now)
        )

        logger.info(f"Collecting {period.value} usage statistics")

        if not self.log_dir.exists() and not self.archive_dir.exists():
            logger.warning(f"Log directory {self.log_dir} not found, reporting zero usage")
            return report

        last_active: Dict[str, datetime] = {}
        query_times: List[float] = []

        try:
            files = self._log_files(start)
        except OSError as e:
            logger.error(f"Failed to list operation log files: {e}")
            report.status = UsageStatus.ERROR
            report.error = str(e)
            return report

        for path in files:
            try:
                lines = await self._read_lines(path)
            except (OSError, EOFError, zlib.error, gzip.BadGzipFile) as e:
                logger.warning(f"Skipping unreadable log file {path}: {e}")
                report.unreadable_files += 1
                continue
            report.files_read += 1

            for line in lines:
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                    moment = parse_timestamp(entry['timestamp'])
                    operation = entry['operation']
                    model = entry['model']
                except (ValueError, KeyError, TypeError, AttributeError):
                    report.malformed_entries += 1
                    continue
                if not isinstance(operation, str) or not isinstance(model, str):
                    report.malformed_entries += 1
                    continue

                if moment < start or moment > now:
                    continue

                report.operations.add(operation)
                report.models.setdefault(model, OperationCounts()).add(operation)

                user_id = str(entry.get('userId') or 'anonymous')
                activity = report.users.setdefault(user_id, ActorActivity())
                activity.operations += 1
                if user_id not in last_active or moment > last_active[user_id]:
                    last_active[user_id] = moment
                    activity.last_active = format_timestamp(moment)

                details = entry.get('details')
                if isinstance(details, dict) and details.get('queryTimeMs') is not None:
                    try:
                        query_time = float(details['queryTimeMs'])
                    except (TypeError, ValueError):
                        continue
                    query_times.append(query_time)
                    if query_time > report.performance.slowest_query_time_ms:
                        report.performance.slowest_query_time_ms = query_time
                        report.performance.slowest_query_model = model

        if query_times:
            ordered = sorted(query_times)
            report.performance.average_query_time_ms = sum(ordered) / len(ordered)
            report.performance.p50_query_time_ms = percentile(ordered, 0.50)
            report.performance.p95_query_time_ms = percentile(ordered, 0.95)
            report.performance.sampled_queries = len(ordered)

        if report.malformed_entries:
            logger.warning(f"Skipped {report.malformed_entries} malformed log entries")
        if report.unreadable_files:
            logger.warning(f"Skipped {report.unreadable_files} unreadable log file(s)")
        logger.info(f"Usage statistics collected: {report.operations.total} operations "
                    f"from {report.files_read} file(s)")
        return report
