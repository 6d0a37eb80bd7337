"""
EdPsych Operation Logger
Date-partitioned JSON-line operation logs with audit and educational-data
streams, plus rotation and archival of old partitions.
"""

import asyncio
import gzip
import json
import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from edpsych_maintenance.config import resolve_config

logger = logging.getLogger('edpsych.operation_logger')

SENSITIVE_OPERATIONS = ('delete', 'deleteMany', 'bulkDelete', 'updateRole', 'updatePermissions')
EDUCATIONAL_MODELS = ('Assessment', 'SemhAssessment', 'BiofeedbackSession', 'EmotionalPatternRecord')

_PARTITION_NAME = re.compile(
    r'^(?P<stream>db-operations|audit-log|educational-data)-(?P<date>\d{4}-\d{2}-\d{2})\.log(?P<gz>\.gz)?$'
)


class LogStream(Enum):
    OPERATIONS = "db-operations"
    AUDIT = "audit-log"
    EDUCATIONAL = "educational-data"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a trailing Z."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def parse_timestamp(value: str) -> datetime:
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def partition_of(filename: str) -> Optional[tuple]:
    """Return (stream, date) for a partition file name, or None."""
    match = _PARTITION_NAME.match(filename)
    if not match:
        return None
    try:
        day = datetime.strptime(match.group('date'), '%Y-%m-%d').date()
    except ValueError:
        return None
    return LogStream(match.group('stream')), day


@dataclass
class OperationLogEntry:
    timestamp: str
    operation: str
    model: str
    user_id: str
    details: Any

    def to_record(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'operation': self.operation,
            'model': self.model,
            'userId': self.user_id,
            'details': self.details
        }


@dataclass
class RotationResult:
    compressed_files: List[str] = field(default_factory=list)
    deleted_files: List[str] = field(default_factory=list)
    total_space_saved: int = 0
    total_space_freed: int = 0
    errors: List[str] = field(default_factory=list)


class OperationLogger:
    """Appends operation records to the standard, audit and educational streams."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = resolve_config(config)
        logging_config = self.config.get('logging', {})

        self.log_dir = Path(logging_config.get('log_dir', './logs'))
        self.archive_dir = Path(logging_config.get('archive_dir', './logs/archive'))
        self.retention_days = logging_config.get('retention_days', 365)
        self.compression_age_days = logging_config.get('compression_age_days', 7)
        self.sensitive_operations = set(logging_config.get('sensitive_operations', SENSITIVE_OPERATIONS))
        self.educational_models = set(logging_config.get('educational_models', EDUCATIONAL_MODELS))

        self._write_lock = asyncio.Lock()
        self.stats = {
            'entries_written': 0,
            'write_failures': 0
        }

    def stream_path(self, stream: LogStream, moment: Optional[datetime] = None) -> Path:
        day = (moment or utc_now()).astimezone(timezone.utc).strftime('%Y-%m-%d')
        return self.log_dir / f"{stream.value}-{day}.log"

    async def log_operation(self, operation: str, model: str, actor_id: Any,
                            details: Any = None, context: Optional[Dict[str, str]] = None) -> bool:
        """Append one operation record; never raises.

        Returns False when the record could not be written.
        """
        try:
            now = utc_now()
            entry = OperationLogEntry(
                timestamp=format_timestamp(now),
                operation=operation,
                model=model,
                user_id=str(actor_id),
                details=details if details is not None else {}
            )
            record = entry.to_record()

            writes = [(LogStream.OPERATIONS, record)]

            if operation in self.sensitive_operations:
                context = context or {}
                writes.append((LogStream.AUDIT, {
                    **record,
                    'auditLevel': 'HIGH',
                    'ipAddress': context.get('ip_address', 'IP_ADDRESS'),
                    'userAgent': context.get('user_agent', 'USER_AGENT')
                }))

            if model in self.educational_models:
                writes.append((LogStream.EDUCATIONAL, {
                    **record,
                    'dataCategory': 'EDUCATIONAL',
                    'sensitivityLevel': 'HIGH',
                    'retentionPolicy': 'STANDARD_EDUCATIONAL'
                }))

            async with self._write_lock:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                for stream, payload in writes:
                    line = json.dumps(payload, default=str)
                    await self._append_line(self.stream_path(stream, now), line)

            self.stats['entries_written'] += 1
            return True

        except Exception as e:
            self.stats['write_failures'] += 1
            logger.error(f"Failed to log database operation: {e}")
            return False

    async def _append_line(self, path: Path, line: str):
        async with aiofiles.open(path, 'a', encoding='utf-8') as f:
            await f.write(line + '\n')
            await f.flush()

    async def rotate_logs(self) -> RotationResult:
        """Compress aged partitions into the archive and drop expired archives."""
        logger.info("Starting log rotation")
        result = RotationResult()
        today = utc_now().date()

        if self.log_dir.exists():
            for log_file in sorted(self.log_dir.glob('*.log')):
                partition = partition_of(log_file.name)
                if partition is None:
                    continue
                _, day = partition
                if (today - day).days < self.compression_age_days:
                    continue
                try:
                    self._compress_file(log_file, result)
                except OSError as e:
                    error_msg = f"Error rotating file {log_file}: {e}"
                    logger.error(error_msg)
                    result.errors.append(error_msg)

        self._cleanup_old_archives(result, today)

        logger.info(f"Log rotation completed. Compressed: {len(result.compressed_files)}, "
                    f"Deleted: {len(result.deleted_files)}, "
                    f"Space freed: {result.total_space_freed / 1024 / 1024:.2f} MB")
        return result

    def _compress_file(self, log_file: Path, result: RotationResult):
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        original_size = log_file.stat().st_size
        archive_path = self.archive_dir / f"{log_file.name}.gz"

        # Appending adds a gzip member; readers see one continuous stream
        with open(log_file, 'rb') as f_in:
            with gzip.open(archive_path, 'ab') as f_out:
                shutil.copyfileobj(f_in, f_out)
        log_file.unlink()

        compressed_size = archive_path.stat().st_size
        result.compressed_files.append(str(archive_path))
        result.total_space_saved += max(0, original_size - compressed_size)
        logger.info(f"Compressed {log_file} to {archive_path}")

    def _cleanup_old_archives(self, result: RotationResult, today: date):
        if not self.archive_dir.exists():
            return

        for archive_file in self.archive_dir.glob('*.log.gz'):
            partition = partition_of(archive_file.name)
            if partition is None:
                continue
            _, day = partition
            if (today - day).days <= self.retention_days:
                continue
            try:
                file_size = archive_file.stat().st_size
                archive_file.unlink()
                result.deleted_files.append(str(archive_file))
                result.total_space_freed += file_size
                logger.info(f"Deleted old archive: {archive_file}")
            except OSError as e:
                error_msg = f"Error deleting archive {archive_file}: {e}"
                logger.warning(error_msg)
                result.errors.append(error_msg)
