"""
EdPsych Snapshot Manager
Exports model data before a repair and for the daily backup, verifies the
export and enforces backup retention.
"""

import gzip
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from edpsych_maintenance.config import resolve_config
from edpsych_maintenance.operation_logger import format_timestamp, utc_now
from edpsych_maintenance.repository import Repository

logger = logging.getLogger('edpsych.snapshot')

_TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S_%f'
_LEGACY_TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'


class SnapshotMode(Enum):
    EXPORT = "export"
    REFERENCE = "reference"


class SnapshotError(Exception):
    """A snapshot could not be written or did not verify."""


@dataclass
class SnapshotResult:
    snapshot_id: str
    location: str
    mode: SnapshotMode
    created_at: str
    models: List[str] = field(default_factory=list)
    row_counts: Dict[str, int] = field(default_factory=dict)
    size_bytes: int = 0
    verified: Optional[bool] = None


class SnapshotManager:
    """Writes JSON exports of selected models into the backup directory."""

    def __init__(self, repository: Repository, config: Optional[Dict[str, Any]] = None):
        self.repository = repository
        self.config = resolve_config(config)

        backup_config = self.config.get('backup', {})
        self.backup_dir = Path(backup_config.get('backup_dir', './backups'))
        self.compression = backup_config.get('enable_compression', True)
        self.verification = backup_config.get('enable_verification', True)
        self.retention_days = backup_config.get('retention_days', 30)
        self.archive_dir = Path(backup_config.get('archive_dir', './backups/archive'))
        self.default_mode = SnapshotMode(self.config.get('repair', {}).get('snapshot_mode', 'export'))

    def snapshot_path(self, label: str, moment: datetime, directory: Optional[Path] = None) -> Path:
        suffix = '.json.gz' if self.compression else '.json'
        return (directory or self.backup_dir) / f"{label}_backup_{moment.strftime(_TIMESTAMP_FORMAT)}{suffix}"

    def create_snapshot(self, models: Optional[List[str]] = None, label: str = 'pre_repair',
                        mode: Optional[SnapshotMode] = None,
                        directory: Optional[Path] = None) -> SnapshotResult:
        """Export ``models`` (every live model when None).

        Blocking; raises SnapshotError when the export cannot be written or
        fails verification.
        """
        mode = mode or self.default_mode
        now = utc_now()
        path = self.snapshot_path(label, now, directory)

        if models is None:
            models = sorted(self.repository.introspect())

        result = SnapshotResult(
            snapshot_id=path.name.split('.')[0],
            location=str(path),
            mode=mode,
            created_at=format_timestamp(now),
            models=list(models)
        )

        if mode == SnapshotMode.REFERENCE:
            logger.info(f"Snapshot reference recorded for {', '.join(models)}: {path}")
            return result

        logger.info(f"Creating snapshot: {path}")
        created = False
        data = {}
        for model in models:
            rows = self.repository.query(model)
            data[model] = rows
            result.row_counts[model] = len(rows)

        payload = json.dumps({
            'snapshot_id': result.snapshot_id,
            'label': label,
            'created_at': result.created_at,
            'models': data
        }, default=str).encode('utf-8')

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SnapshotError(f"Snapshot write failed: {e}") from e

        try:
            # exclusive create, an earlier export is never truncated
            with open(path, 'xb') as raw:
                created = True
                if self.compression:
                    with gzip.GzipFile(filename=path.name, mode='wb', fileobj=raw) as f:
                        f.write(payload)
                else:
                    raw.write(payload)
        except FileExistsError as e:
            raise SnapshotError(f"Snapshot already exists: {path}") from e
        except OSError as e:
            if created and path.exists():
                path.unlink()
            raise SnapshotError(f"Snapshot write failed: {e}") from e

        result.size_bytes = path.stat().st_size

        if self.verification:
            result.verified = self.verify_snapshot(path, result.row_counts)
            if not result.verified:
                raise SnapshotError(f"Snapshot verification failed: {path}")
            logger.info("Snapshot verification passed")

        logger.info(f"Snapshot created successfully: {path} ({result.size_bytes} bytes)")
        return result

    def verify_snapshot(self, path: Path, expected_counts: Dict[str, int]) -> bool:
        """Re-read the export and compare row counts."""
        try:
            if path.suffix == '.gz':
                with gzip.open(path, 'rb') as f:
                    content = json.loads(f.read().decode('utf-8'))
            else:
                content = json.loads(path.read_text(encoding='utf-8'))

            stored = content.get('models', {})
            return all(
                len(stored.get(model, [])) == count for model, count in expected_counts.items()
            )
        except (OSError, ValueError) as e:
            logger.error(f"Snapshot verification error: {e}")
            return False

    @staticmethod
    def _parse_stamp(name: str) -> Optional[datetime]:
        parts = name.split('.')[0].rsplit('_backup_', 1)
        if len(parts) != 2:
            return None
        for fmt in (_TIMESTAMP_FORMAT, _LEGACY_TIMESTAMP_FORMAT):
            try:
                return datetime.strptime(parts[1], fmt)
            except ValueError:
                continue
        return None

    def cleanup_old_snapshots(self) -> Dict[str, int]:
        """Delete exports older than the retention period."""
        cutoff = utc_now().replace(tzinfo=None) - timedelta(days=self.retention_days)
        deleted_count = 0
        total_size_freed = 0

        if not self.backup_dir.exists():
            return {'deleted': 0, 'space_freed_bytes': 0}

        for snapshot_file in self.backup_dir.glob('*_backup_*.json*'):
            file_date = self._parse_stamp(snapshot_file.name)
            if file_date is None:
                logger.warning(f"Skipping backup file with unexpected name: {snapshot_file}")
                continue

            if file_date < cutoff:
                file_size = snapshot_file.stat().st_size
                snapshot_file.unlink()
                deleted_count += 1
                total_size_freed += file_size
                logger.info(f"Deleted old backup: {snapshot_file}")

        if deleted_count > 0:
            logger.info(f"Cleaned up {deleted_count} old backups, freed {total_size_freed / 1024 / 1024:.2f} MB")

        return {'deleted': deleted_count, 'space_freed_bytes': total_size_freed}
