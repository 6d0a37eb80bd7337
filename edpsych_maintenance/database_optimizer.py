"""
EdPsych Database Optimizer
Store-level maintenance (VACUUM, ANALYZE, REINDEX), backups and backup
retention cleanup.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from edpsych_maintenance.config import resolve_config
from edpsych_maintenance.operation_logger import OperationLogger, format_timestamp, utc_now
from edpsych_maintenance.repository import Repository, supports_optimization
from edpsych_maintenance.snapshot import SnapshotManager, SnapshotMode

logger = logging.getLogger('edpsych.database_optimizer')


class MaintenanceType(Enum):
    VACUUM = "vacuum"
    ANALYZE = "analyze"
    REINDEX = "reindex"
    CLEANUP = "cleanup"
    BACKUP = "backup"


class OptimizationStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    PARTIAL = "partial"
    IN_PROGRESS = "in_progress"
    ERROR = "error"


@dataclass
class MaintenanceTask:
    task_id: str
    task_type: MaintenanceType
    status: OptimizationStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    space_freed_bytes: Optional[int] = None
    error_message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OptimizationReport:
    status: OptimizationStatus
    message: str
    timestamp: str
    operations: Dict[str, bool] = field(default_factory=dict)
    tasks_performed: List[MaintenanceTask] = field(default_factory=list)
    total_duration_seconds: float = 0.0
    space_freed_bytes: int = 0
    error: Optional[str] = None


class DatabaseOptimizer:
    """Runs optimizer commands when the repository offers them."""

    def __init__(self, repository: Repository, config: Optional[Dict[str, Any]] = None,
                 snapshot_manager: Optional[SnapshotManager] = None,
                 operation_logger: Optional[OperationLogger] = None):
        self.repository = repository
        self.config = resolve_config(config)
        self.snapshot_manager = snapshot_manager or SnapshotManager(repository, self.config)
        self.operation_logger = operation_logger
        self.actor_id = self.config.get('repair', {}).get('actor_id', 'system:maintenance')

    def _database_size(self) -> int:
        db_path = getattr(self.repository, 'db_path', None)
        if db_path and os.path.exists(db_path):
            return os.path.getsize(db_path)
        return 0

    async def _run_task(self, task_type: MaintenanceType,
                        operation: Callable[[MaintenanceTask], None]) -> MaintenanceTask:
        task = MaintenanceTask(
            task_id=f"{task_type.value}_{int(time.time())}",
            task_type=task_type,
            status=OptimizationStatus.IN_PROGRESS,
            started_at=datetime.now()
        )
        logger.info(f"Starting {task_type.value.upper()} operation (Task: {task.task_id})")

        try:
            await asyncio.get_running_loop().run_in_executor(None, operation, task)
            if task.status == OptimizationStatus.IN_PROGRESS:
                task.status = OptimizationStatus.SUCCESS
            logger.info(f"{task_type.value.upper()} completed with status {task.status.value}")
        except Exception as e:
            task.status = OptimizationStatus.FAILED
            task.error_message = str(e)
            logger.error(f"{task_type.value.upper()} operation failed: {e}")

        task.completed_at = datetime.now()
        task.duration_seconds = (task.completed_at - task.started_at).total_seconds()
        return task

    def _skipped(self, task_type: MaintenanceType) -> MaintenanceTask:
        now = datetime.now()
        logger.info(f"Repository has no optimizer capability, skipping {task_type.value.upper()}")
        return MaintenanceTask(
            task_id=f"{task_type.value}_{int(time.time())}",
            task_type=task_type,
            status=OptimizationStatus.SKIPPED,
            started_at=now,
            completed_at=now,
            duration_seconds=0.0,
            details={'reason': 'optimizer capability not available'}
        )

    async def perform_vacuum(self) -> MaintenanceTask:
        """Reclaim space and reduce fragmentation."""
        if not supports_optimization(self.repository):
            return self._skipped(MaintenanceType.VACUUM)

        def vacuum(task: MaintenanceTask):
            initial_size = self._database_size()
            self.repository.vacuum()
            final_size = self._database_size()
            task.space_freed_bytes = max(0, initial_size - final_size)
            task.details.update({
                'initial_size_bytes': initial_size,
                'final_size_bytes': final_size,
                'space_freed_mb': round(task.space_freed_bytes / 1024 / 1024, 2)
            })

        return await self._run_task(MaintenanceType.VACUUM, vacuum)

    async def perform_analyze(self) -> MaintenanceTask:
        """Update query planner statistics."""
        if not supports_optimization(self.repository):
            return self._skipped(MaintenanceType.ANALYZE)
        return await self._run_task(MaintenanceType.ANALYZE, lambda task: self.repository.analyze())

    async def perform_reindex(self) -> MaintenanceTask:
        if not supports_optimization(self.repository):
            return self._skipped(MaintenanceType.REINDEX)
        return await self._run_task(MaintenanceType.REINDEX, lambda task: self.repository.reindex())

    async def perform_cleanup(self) -> MaintenanceTask:
        """Drop backups past their retention period."""
        def cleanup(task: MaintenanceTask):
            result = self.snapshot_manager.cleanup_old_snapshots()
            task.space_freed_bytes = result['space_freed_bytes']
            task.details['backups_deleted'] = result['deleted']

        return await self._run_task(MaintenanceType.CLEANUP, cleanup)

    async def create_backup(self) -> MaintenanceTask:
        """Export every live model, then apply backup retention."""
        def backup(task: MaintenanceTask):
            snapshot = self.snapshot_manager.create_snapshot(
                None, label='edpsych', mode=SnapshotMode.EXPORT
            )
            task.details.update({
                'backup_path': snapshot.location,
                'backup_size_bytes': snapshot.size_bytes,
                'row_counts': snapshot.row_counts,
                'verification_passed': snapshot.verified
            })
            self.snapshot_manager.cleanup_old_snapshots()

        return await self._run_task(MaintenanceType.BACKUP, backup)

    async def optimize_database(self, operations: Optional[List[str]] = None) -> OptimizationReport:
        """Run vacuum, analyze, reindex and cleanup and summarize."""
        logger.info("Starting database optimization")
        started = time.monotonic()
        operations = operations or ['vacuum', 'analyze', 'reindex', 'cleanup']

        runners = {
            'vacuum': self.perform_vacuum,
            'analyze': self.perform_analyze,
            'reindex': self.perform_reindex,
            'cleanup': self.perform_cleanup
        }

        tasks_performed = []
        results: Dict[str, bool] = {}
        for name in operations:
            task = await runners[name]()
            tasks_performed.append(task)
            results[name] = task.status == OptimizationStatus.SUCCESS

        succeeded = sum(1 for ok in results.values() if ok)
        if succeeded == len(results):
            status = OptimizationStatus.SUCCESS
            message = 'Database optimization completed successfully'
        elif succeeded:
            status = OptimizationStatus.PARTIAL
            message = 'Database optimization partially completed'
        else:
            status = OptimizationStatus.ERROR
            message = 'Database optimization failed'

        errors = [f"{task.task_type.value}: {task.error_message}" for task in tasks_performed if task.error_message]
        report = OptimizationReport(
            status=status,
            message=message,
            timestamp=format_timestamp(utc_now()),
            operations=results,
            tasks_performed=tasks_performed,
            total_duration_seconds=time.monotonic() - started,
            space_freed_bytes=sum(task.space_freed_bytes or 0 for task in tasks_performed),
            error='; '.join(errors) or None
        )

        logger.info(f"{message} in {report.total_duration_seconds:.1f}s. "
                    f"Space freed: {report.space_freed_bytes / 1024 / 1024:.2f} MB")

        if self.operation_logger is not None:
            await self.operation_logger.log_operation(
                'optimizeDatabase', 'Database', self.actor_id,
                {'status': status.value, 'operations': results,
                 'queryTimeMs': round(report.total_duration_seconds * 1000, 3)}
            )
        return report
