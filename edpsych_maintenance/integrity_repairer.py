"""
EdPsych Data Integrity Repairer
Snapshot, then repair orphans, invalid accounts, one-sided links and
duplicate accounts, one unit of work per step.
"""

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from edpsych_maintenance.config import resolve_config
from edpsych_maintenance.integrity_checker import IntegrityChecker, IntegrityStatus, is_blank
from edpsych_maintenance.operation_logger import OperationLogger, format_timestamp, utc_now
from edpsych_maintenance.repository import Repository
from edpsych_maintenance.snapshot import SnapshotManager, SnapshotResult

logger = logging.getLogger('edpsych.integrity_repairer')

FIXED_ACCOUNTS = 'fixed_users'
FIXED_RELATIONSHIPS = 'fixed_relationships'
DEDUPLICATED_RECORDS = 'de_duplicated_records'

LogOperation = Tuple[str, str, Dict[str, Any]]


class RepairStatus(Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class StepStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


class StepTimeout(Exception):
    """A repair step ran past its deadline."""


@dataclass
class RepairStep:
    name: str
    status: StepStatus
    affected: int = 0
    error: Optional[str] = None
    duration_seconds: float = 0.0
    details: Dict[str, int] = field(default_factory=dict)


@dataclass
class RepairReport:
    status: RepairStatus
    timestamp: str
    repairs: Dict[str, int] = field(default_factory=dict)
    steps: List[RepairStep] = field(default_factory=list)
    snapshot: Optional[SnapshotResult] = None
    pre_repair_issues: Optional[Dict[str, int]] = None
    issues: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def total_affected(self) -> int:
        return sum(self.repairs.values())


class _Deadline:
    def __init__(self, seconds: float):
        self.seconds = seconds
        self.expires_at = time.monotonic() + seconds

    def check(self):
        if time.monotonic() > self.expires_at:
            raise StepTimeout(f"exceeded {self.seconds}s")


class RepairLock:
    """Exclusive lock file shared by every process running repairs."""

    def __init__(self, path: Path, stale_seconds: float = 3600):
        self.path = Path(path)
        self.stale_seconds = stale_seconds
        self.held = False

    def _is_stale(self, path: Optional[Path] = None) -> bool:
        try:
            age = time.time() - (path or self.path).stat().st_mtime
        except FileNotFoundError:
            return True
        return age > self.stale_seconds

    def _take_over_stale(self) -> bool:
        """Move the stale lock aside atomically, then confirm what was moved.

        Returns False when the moved file turns out to be a fresh lock that
        another process created after the staleness check.
        """
        claimed = self.path.with_name(f"{self.path.name}.{os.getpid()}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(self.path, claimed)
        except FileNotFoundError:
            return True

        if self._is_stale(claimed):
            logger.warning(f"Removed stale repair lock {self.path}")
            claimed.unlink(missing_ok=True)
            return True

        try:
            os.link(claimed, self.path)
        except FileExistsError:
            pass
        claimed.unlink(missing_ok=True)
        return False

    def acquire(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if not self._is_stale() or not self._take_over_stale():
                    return False
                continue
            with os.fdopen(fd, 'w') as f:
                f.write(f"{os.getpid()} {format_timestamp(utc_now())}\n")
            self.held = True
            return True
        return False

    def release(self):
        if self.held:
            self.path.unlink(missing_ok=True)
            self.held = False


class IntegrityRepairer:
    """Mutating counterpart of IntegrityChecker."""

    def __init__(self, repository: Repository, config: Optional[Dict[str, Any]] = None,
                 integrity_checker: Optional[IntegrityChecker] = None,
                 snapshot_manager: Optional[SnapshotManager] = None,
                 operation_logger: Optional[OperationLogger] = None):
        self.repository = repository
        self.config = resolve_config(config)
        self.integrity_checker = integrity_checker or IntegrityChecker(repository, self.config)
        self.snapshot_manager = snapshot_manager or SnapshotManager(repository, self.config)
        self.operation_logger = operation_logger
        self.rules = self.integrity_checker.rules

        repair_config = self.config.get('repair', {})
        self.strict_safety = repair_config.get('strict_safety', True)
        self.placeholder_domain = repair_config.get('placeholder_domain', 'placeholder.invalid')
        self.actor_id = repair_config.get('actor_id', 'system:maintenance')
        self.lock = RepairLock(
            Path(repair_config.get('lock_file', './backups/.repair.lock')),
            repair_config.get('lock_stale_seconds', 3600)
        )
        self.step_timeout = self.config.get('timeouts', {}).get('repair_step_seconds', 300)

    def repair_keys(self) -> List[str]:
        keys = []
        for owned in self.rules.owned_models:
            if owned.repair_key not in keys:
                keys.append(owned.repair_key)
        return keys + [FIXED_ACCOUNTS, FIXED_RELATIONSHIPS, DEDUPLICATED_RECORDS]

    def touched_models(self) -> List[str]:
        models = [self.rules.account_model]
        for owned in self.rules.owned_models:
            models.append(owned.model)
        for side in (self.rules.parent_links, self.rules.child_links):
            if side is not None:
                models.append(side.model)
        return list(dict.fromkeys(models))

    def placeholder_email(self, record_id: Any) -> str:
        return f"placeholder_{record_id}@{self.placeholder_domain}"

    @staticmethod
    def placeholder_name(record_id: Any) -> str:
        return f"User {record_id}"

    def _delete_rows(self, uow: Repository, model: str, rows: List[Dict[str, Any]]) -> int:
        id_field = self.rules.id_field
        ids = [row[id_field] for row in rows if row.get(id_field) is not None]
        deleted = uow.delete(model, {id_field: ids}) if ids else 0
        for row in rows:
            if row.get(id_field) is None:
                deleted += uow.delete(model, dict(row))
        return deleted

    # Steps. Each re-detects its own issues inside the unit of work and
    # returns (repairs, operations to log).

    def _delete_orphans(self, uow: Repository, deadline: _Deadline):
        repairs = {owned.repair_key: 0 for owned in self.rules.owned_models}
        operations: List[LogOperation] = []
        for owned in self.rules.owned_models:
            deadline.check()
            orphans = self.integrity_checker.find_orphans(uow, owned)
            if not orphans:
                continue
            deleted = self._delete_rows(uow, owned.model, orphans)
            repairs[owned.repair_key] += deleted
            operations.append(('deleteMany', owned.model, {'count': deleted, 'reason': 'orphaned'}))
            logger.info(f"Deleted {deleted} orphaned {owned.model} records")
        return repairs, operations

    def _backfill_invalid_accounts(self, uow: Repository, deadline: _Deadline):
        rules = self.rules
        fixed = 0
        for row in self.integrity_checker.find_invalid_accounts(uow):
            deadline.check()
            record_id = row.get(rules.id_field)
            values = {}
            if is_blank(row.get(rules.email_field)):
                values[rules.email_field] = self.placeholder_email(record_id)
            if is_blank(row.get(rules.name_field)):
                values[rules.name_field] = self.placeholder_name(record_id)
            if uow.update(rules.account_model, record_id, values):
                fixed += 1

        operations = []
        if fixed:
            operations.append(('update', rules.account_model, {'count': fixed, 'reason': 'invalid_data'}))
            logger.info(f"Fixed {fixed} invalid {rules.account_model} records")
        return {FIXED_ACCOUNTS: fixed}, operations

    def _restore_relationships(self, uow: Repository, deadline: _Deadline):
        restored: Dict[str, int] = {}
        for link in self.integrity_checker.find_asymmetric_links(uow):
            deadline.check()
            uow.insert(link.side.model, {
                link.side.owner_field: link.owner_id,
                link.side.target_field: link.target_id
            })
            restored[link.side.model] = restored.get(link.side.model, 0) + 1

        operations = [
            ('create', model, {'count': count, 'reason': 'missing_reciprocal_link'})
            for model, count in restored.items()
        ]
        total = sum(restored.values())
        if total:
            logger.info(f"Restored {total} missing reciprocal relationship links")
        return {FIXED_RELATIONSHIPS: total}, operations

    def _deduplicate_accounts(self, uow: Repository, deadline: _Deadline):
        rules = self.rules
        removed = 0
        dependents: Dict[Tuple[str, str], int] = {}

        for group in self.integrity_checker.find_duplicate_groups(uow):
            deadline.check()
            keeper_id = group[0].get(rules.id_field)
            duplicate_ids = [row.get(rules.id_field) for row in group[1:]]

            for owned in rules.owned_models:
                for ref in owned.references:
                    if ref.target != rules.account_model:
                        continue
                    rows = uow.query(owned.model, {ref.field: duplicate_ids})
                    if not rows:
                        continue
                    if owned.on_account_removal == 'reassign':
                        for row in rows:
                            if row.get(rules.id_field) is None:
                                logger.warning(f"{owned.model} row without {rules.id_field} "
                                               f"cannot be reassigned, deleting it")
                                uow.delete(owned.model, dict(row))
                            else:
                                uow.update(owned.model, row[rules.id_field], {ref.field: keeper_id})
                        key = ('updateMany', owned.model)
                        affected = len(rows)
                    else:
                        key = ('deleteMany', owned.model)
                        affected = self._delete_rows(uow, owned.model, rows)
                    dependents[key] = dependents.get(key, 0) + affected

            removed += uow.delete(rules.account_model, {rules.id_field: duplicate_ids})

        operations: List[LogOperation] = [
            (operation, model, {'count': count, 'reason': 'duplicate_account_removed'})
            for (operation, model), count in dependents.items()
        ]
        if removed:
            operations.append(('delete', rules.account_model, {'count': removed, 'reason': 'duplicate_email'}))
            logger.info(f"Removed {removed} duplicate {rules.account_model} records")
        return {DEDUPLICATED_RECORDS: removed}, operations

    def _run_step(self, name: str, action: Callable) -> Tuple[RepairStep, Dict[str, int], List[LogOperation]]:
        """Run one step in its own unit of work. Blocking."""
        started = time.monotonic()
        deadline = _Deadline(self.step_timeout)
        try:
            with self.repository.unit_of_work() as uow:
                repairs, operations = action(uow, deadline)
                deadline.check()
        except StepTimeout as e:
            logger.error(f"Repair step {name} timed out and was rolled back: {e}")
            return RepairStep(name, StepStatus.TIMEOUT, error=f"timed out: {e}",
                              duration_seconds=time.monotonic() - started), {}, []
        except Exception as e:
            logger.error(f"Repair step {name} failed and was rolled back: {e}")
            return RepairStep(name, StepStatus.FAILED, error=str(e),
                              duration_seconds=time.monotonic() - started), {}, []

        step = RepairStep(
            name=name,
            status=StepStatus.COMPLETED,
            affected=sum(repairs.values()),
            duration_seconds=time.monotonic() - started,
            details=repairs
        )
        return step, repairs, operations

    def _error_report(self, error: str, **kwargs) -> RepairReport:
        logger.error(f"Data integrity repair failed: {error}")
        return RepairReport(
            status=RepairStatus.ERROR,
            timestamp=format_timestamp(utc_now()),
            error=error,
            **kwargs
        )

    async def repair_integrity(self) -> RepairReport:
        """Run the repair steps in order; at most one repair at a time."""
        if not self.lock.acquire():
            logger.warning("Data integrity repair rejected: another repair holds the lock")
            return RepairReport(
                status=RepairStatus.ERROR,
                timestamp=format_timestamp(utc_now()),
                error='repair already in progress'
            )
        try:
            return await self._repair()
        finally:
            self.lock.release()

    async def _repair(self) -> RepairReport:
        logger.info("Starting data integrity repair")
        loop = asyncio.get_running_loop()

        pre_check = await self.integrity_checker.check_integrity()
        if pre_check.status == IntegrityStatus.ERROR:
            return self._error_report(f"Pre-repair integrity check failed: {pre_check.error}")

        snapshot = None
        try:
            snapshot = await loop.run_in_executor(
                None, self.snapshot_manager.create_snapshot, self.touched_models(), 'pre_repair'
            )
        except Exception as e:
            if self.strict_safety:
                return self._error_report(f"Snapshot failed, repair aborted: {e}",
                                          pre_repair_issues=pre_check.issues)
            logger.warning(f"Snapshot failed, continuing without one: {e}")

        plan = [
            ('delete_orphans', self._delete_orphans),
            ('backfill_invalid_accounts', self._backfill_invalid_accounts),
            ('restore_relationships', self._restore_relationships),
            ('deduplicate_accounts', self._deduplicate_accounts),
        ]

        repairs = {key: 0 for key in self.repair_keys()}
        steps: List[RepairStep] = []
        issues: List[Dict[str, Any]] = []
        halted = False

        for name, action in plan:
            if halted:
                steps.append(RepairStep(name, StepStatus.SKIPPED))
                continue

            step, step_repairs, operations = await loop.run_in_executor(None, self._run_step, name, action)
            steps.append(step)

            if step.status != StepStatus.COMPLETED:
                halted = True
                if step.status == StepStatus.TIMEOUT:
                    issues.append({
                        'type': 'performance',
                        'severity': 'high',
                        'message': f"Repair step {name} exceeded {self.step_timeout}s and was rolled back",
                        'details': {'step': name, 'timeout_seconds': self.step_timeout}
                    })
                continue

            for key, count in step_repairs.items():
                repairs[key] = repairs.get(key, 0) + count
            await self._log_operations(operations, step.duration_seconds)

        completed = sum(1 for step in steps if step.status == StepStatus.COMPLETED)
        if completed == len(plan):
            status = RepairStatus.SUCCESS
        elif completed:
            status = RepairStatus.PARTIAL
        else:
            status = RepairStatus.ERROR

        failed = next((step for step in steps if step.error), None)
        report = RepairReport(
            status=status,
            timestamp=format_timestamp(utc_now()),
            repairs=repairs,
            steps=steps,
            snapshot=snapshot,
            pre_repair_issues=pre_check.issues,
            issues=issues,
            error=f"{failed.name}: {failed.error}" if failed else None
        )

        if status == RepairStatus.SUCCESS:
            logger.info(f"Data integrity repair completed: {report.total_affected} records affected")
        else:
            logger.warning(f"Data integrity repair finished with status {status.value}: {report.error}")

        if self.operation_logger is not None:
            await self.operation_logger.log_operation(
                'integrityRepair', 'Database', self.actor_id,
                {'status': status.value, 'repairs': repairs, 'error': report.error}
            )
        return report

    async def _log_operations(self, operations: List[LogOperation], duration_seconds: float):
        if self.operation_logger is None:
            return
        for operation, model, details in operations:
            await self.operation_logger.log_operation(
                operation, model, self.actor_id,
                {**details, 'queryTimeMs': round(duration_seconds * 1000, 3)}
            )
