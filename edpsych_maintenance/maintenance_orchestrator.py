#!/usr/bin/env python3
"""
EdPsych Database Maintenance Orchestrator

Runs the task list of a maintenance cadence against the configured store,
records each task's outcome, saves a JSON run report and raises webhook
alerts when the store is unhealthy or a repair does not fully succeed.

Usage:
    edpsych-maintenance --mode health
    edpsych-maintenance --mode weekly --config ./config/maintenance.yaml
    edpsych-maintenance --mode repair --confirm-repair
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import aiohttp
import psutil

from edpsych_maintenance.config import DEFAULT_CONFIG_PATH, load_config, resolve_config
from edpsych_maintenance.database_optimizer import DatabaseOptimizer, OptimizationStatus
from edpsych_maintenance.health_checker import HealthChecker, HealthReport, HealthStatus
from edpsych_maintenance.integrity_checker import IntegrityChecker, IntegrityReport, IntegrityStatus
from edpsych_maintenance.integrity_repairer import IntegrityRepairer, RepairStatus
from edpsych_maintenance.maintenance_scheduler import Cadence, MaintenanceScheduler
from edpsych_maintenance.operation_logger import OperationLogger, format_timestamp, utc_now
from edpsych_maintenance.repository import Repository, create_repository
from edpsych_maintenance.schema_validator import SchemaStatus, SchemaValidator
from edpsych_maintenance.snapshot import SnapshotManager, SnapshotMode
from edpsych_maintenance.usage_statistics import UsagePeriod, UsageStatisticsCollector, UsageStatus

logger = logging.getLogger('edpsych.maintenance_orchestrator')

HEALTH_TASK = 'Check database health'
INTEGRITY_TASK = 'Check data integrity'
REPAIR_TASK = 'Repair data integrity'

# Task types that only touch log and backup files
STORE_INDEPENDENT_TASKS = {'log_rotation', 'usage_statistics', 'storage_cleanup', 'query_review'}

USAGE_PERIODS = {
    Cadence.DAILY: UsagePeriod.DAILY,
    Cadence.WEEKLY: UsagePeriod.WEEKLY,
    Cadence.MONTHLY: UsagePeriod.MONTHLY,
    Cadence.QUARTERLY: UsagePeriod.MONTHLY,
}

MODES = [
    'health', 'schema', 'integrity', 'repair', 'usage', 'optimize',
    'rotate-logs', 'backup', 'schedule'
] + [cadence.value for cadence in Cadence]


class TaskStatus(Enum):
    """Status of maintenance tasks"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class TaskFailed(Exception):
    """A maintenance task ran but did not achieve its purpose."""


@dataclass
class MaintenanceTask:
    """Individual maintenance task"""
    name: str
    task_type: str
    dependencies: List[str] = field(default_factory=list)
    requires_store: bool = True
    status: TaskStatus = TaskStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error_message: Optional[str] = None
    result_data: Any = None


@dataclass
class SystemHealthMetrics:
    """Host metrics around a maintenance run"""
    timestamp: datetime
    cpu_usage: float
    memory_usage: float
    disk_usage: Dict[str, float]
    database_size: int
    log_file_count: int
    last_backup_age: Optional[int] = None  # hours


@dataclass
class MaintenanceRunReport:
    execution_id: str
    cadence: Cadence
    status: str
    start_time: datetime
    end_time: Optional[datetime] = None
    total_duration_seconds: Optional[float] = None
    tasks_executed: List[MaintenanceTask] = field(default_factory=list)
    system_health_before: Optional[SystemHealthMetrics] = None
    system_health_after: Optional[SystemHealthMetrics] = None
    issues_found: List[Dict[str, Any]] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    success_rate: float = 0.0
    report_path: Optional[str] = None


def to_jsonable(value: Any) -> Any:
    """Convert reports (dataclasses, enums, datetimes) into JSON-ready values."""
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, BaseException):
        return str(value)
    return value


class MaintenanceOrchestrator:
    """Main orchestrator for database maintenance operations"""

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 repository: Optional[Repository] = None, confirm_repair: bool = False):
        self.config = resolve_config(config)
        self.repository = repository or create_repository(self.config)

        repair_config = self.config.get('repair', {})
        self.repair_enabled = confirm_repair or repair_config.get('auto_repair', False)

        self.operation_logger = OperationLogger(self.config)
        self.snapshot_manager = SnapshotManager(self.repository, self.config)
        self.integrity_checker = IntegrityChecker(self.repository, self.config, self.operation_logger)
        self.health_checker = HealthChecker(
            self.repository, self.config, self.integrity_checker, self.operation_logger
        )
        self.schema_validator = SchemaValidator(self.repository, self.config)
        self.repairer = IntegrityRepairer(
            self.repository, self.config, self.integrity_checker,
            self.snapshot_manager, self.operation_logger
        )
        self.usage_collector = UsageStatisticsCollector(self.config)
        self.optimizer = DatabaseOptimizer(
            self.repository, self.config, self.snapshot_manager, self.operation_logger
        )
        self.scheduler = MaintenanceScheduler()

        self.report_dir = Path(self.config.get('reports', {}).get('report_dir', './reports'))
        alerts_config = self.config.get('alerts', {})
        self.webhook_url = alerts_config.get('webhook_url')
        self.alert_timeout = alerts_config.get('timeout_seconds', 10)
        self.slow_query_threshold_ms = self.config.get('health', {}).get('slow_query_threshold_ms', 250)

        self.current_report: Optional[MaintenanceRunReport] = None
        self.last_health: Optional[HealthReport] = None
        self.last_integrity: Optional[IntegrityReport] = None

    async def collect_system_health_metrics(self) -> SystemHealthMetrics:
        """Collect host metrics with psutil"""
        loop = asyncio.get_running_loop()
        cpu_usage = await loop.run_in_executor(None, lambda: psutil.cpu_percent(interval=0.1))
        memory_usage = psutil.virtual_memory().percent

        disk_usage = {}
        for disk in psutil.disk_partitions():
            try:
                usage = psutil.disk_usage(disk.mountpoint)
                disk_usage[disk.mountpoint] = (usage.used / usage.total) * 100 if usage.total else 0.0
            except (PermissionError, FileNotFoundError, OSError):
                continue

        db_path = getattr(self.repository, 'db_path', None)
        db_size = Path(db_path).stat().st_size if db_path and Path(db_path).exists() else 0

        log_dir = self.operation_logger.log_dir
        log_count = len(list(log_dir.glob('*.log'))) if log_dir.exists() else 0

        return SystemHealthMetrics(
            timestamp=datetime.now(),
            cpu_usage=cpu_usage,
            memory_usage=memory_usage,
            disk_usage=disk_usage,
            database_size=db_size,
            log_file_count=log_count,
            last_backup_age=self._get_last_backup_age()
        )

    def _get_last_backup_age(self) -> Optional[int]:
        """Age of the newest backup in hours"""
        backup_dir = self.snapshot_manager.backup_dir
        if not backup_dir.exists():
            return None
        backup_files = list(backup_dir.glob('*_backup_*.json*'))
        if not backup_files:
            return None
        latest_backup = max(backup_files, key=lambda x: x.stat().st_mtime)
        backup_time = datetime.fromtimestamp(latest_backup.stat().st_mtime)
        return int((datetime.now() - backup_time).total_seconds() / 3600)

    def _create_maintenance_tasks(self, cadence: Cadence) -> List[MaintenanceTask]:
        """Health check first, then the cadence's scheduled tasks"""
        tasks = [MaintenanceTask(name=HEALTH_TASK, task_type='health_check')]
        for scheduled in self.scheduler.tasks_for(cadence):
            if scheduled.task_type == 'health_check':
                continue
            tasks.append(MaintenanceTask(
                name=scheduled.name,
                task_type=scheduled.task_type,
                requires_store=scheduled.task_type not in STORE_INDEPENDENT_TASKS
            ))
            if scheduled.task_type == 'integrity_check' and self.repair_enabled:
                tasks.append(self._repair_task())
        return tasks

    @staticmethod
    def _repair_task() -> MaintenanceTask:
        return MaintenanceTask(name=REPAIR_TASK, task_type='integrity_repair', dependencies=[INTEGRITY_TASK])

    def _escalate(self, tasks: List[MaintenanceTask]):
        """Queue an integrity check when the health check found data issues"""
        if self.last_health is None:
            return
        data_issues = [issue for issue in self.last_health.issues
                       if issue.type in ('data_integrity', 'data_quality')]
        if not data_issues or any(task.task_type == 'integrity_check' for task in tasks):
            return
        logger.info("Health check found data issues, adding an integrity check")
        tasks.append(MaintenanceTask(name=INTEGRITY_TASK, task_type='integrity_check'))
        if self.repair_enabled:
            tasks.append(self._repair_task())

    async def execute_maintenance(self, cadence) -> MaintenanceRunReport:
        """Execute every task of a cadence"""
        cadence = Cadence(cadence)
        start_time = datetime.now()
        execution_id = f"{cadence.value}_{start_time.strftime('%Y%m%d_%H%M%S')}"
        logger.info(f"Starting maintenance execution: {execution_id}")

        self.last_health = None
        self.last_integrity = None
        tasks = self._create_maintenance_tasks(cadence)

        self.current_report = MaintenanceRunReport(
            execution_id=execution_id,
            cadence=cadence,
            status='running',
            start_time=start_time,
            tasks_executed=tasks,
            system_health_before=await self.collect_system_health_metrics()
        )

        completed_tasks = 0
        index = 0
        while index < len(tasks):
            task = tasks[index]
            index += 1

            if task.requires_store and self._store_down():
                task.status = TaskStatus.SKIPPED
                task.error_message = "Database unavailable"
            elif not self._check_dependencies_met(task, tasks):
                task.status = TaskStatus.SKIPPED
                task.error_message = "Dependencies not met"
            else:
                await self._execute_task(task, cadence)

            if task.status == TaskStatus.COMPLETED:
                completed_tasks += 1
            if task.task_type == 'health_check':
                self._escalate(tasks)

        report = self.current_report
        report.system_health_after = await self.collect_system_health_metrics()
        report.end_time = datetime.now()
        report.total_duration_seconds = (report.end_time - start_time).total_seconds()
        report.success_rate = (completed_tasks / len(tasks)) * 100 if tasks else 0
        report.recommendations = self._generate_recommendations()
        report.status = self._run_status(tasks)

        await self._save_maintenance_report(report)
        await self._alert_if_needed(report)

        logger.info(f"Maintenance execution completed: {execution_id} "
                    f"({completed_tasks}/{len(tasks)} tasks successful)")
        return report

    def _store_down(self) -> bool:
        return self.last_health is not None and not self.last_health.connection_status

    def _run_status(self, tasks: List[MaintenanceTask]) -> str:
        if self.last_health is not None and self.last_health.status == HealthStatus.UNHEALTHY:
            return 'error'
        if any(task.status == TaskStatus.FAILED for task in tasks):
            return 'error'
        if self.current_report.issues_found:
            return 'warning'
        return 'success'

    @staticmethod
    def _check_dependencies_met(task: MaintenanceTask, all_tasks: List[MaintenanceTask]) -> bool:
        for dep_name in task.dependencies:
            dep_task = next((t for t in all_tasks if t.name == dep_name), None)
            if not dep_task or dep_task.status != TaskStatus.COMPLETED:
                return False
        return True

    def _add_issue(self, task: MaintenanceTask, message: str, details: Any = None):
        if self.current_report is None:
            return
        self.current_report.issues_found.append({
            'task': task.name,
            'message': message,
            'details': to_jsonable(details),
            'timestamp': format_timestamp(utc_now())
        })

    async def _execute_task(self, task: MaintenanceTask, cadence: Cadence):
        """Execute individual maintenance task"""
        task.status = TaskStatus.RUNNING
        task.start_time = datetime.now()
        logger.info(f"Executing task: {task.name}")

        handlers = {
            'health_check': self._execute_health_check,
            'backup': self._execute_backup,
            'log_rotation': self._execute_log_rotation,
            'vacuum_analyze': self._execute_vacuum_analyze,
            'integrity_check': self._execute_integrity_check,
            'integrity_repair': self._execute_integrity_repair,
            'usage_statistics': self._execute_usage_statistics,
            'full_optimization': self._execute_full_optimization,
            'schema_validation': self._execute_schema_validation,
            'performance_analysis': self._execute_performance_analysis,
            'storage_cleanup': self._execute_storage_cleanup,
            'comprehensive_audit': self._execute_comprehensive_audit,
            'archival': self._execute_archival,
            'index_optimization': self._execute_index_optimization,
            'query_review': self._execute_query_review,
        }

        try:
            handler = handlers.get(task.task_type)
            if handler is None:
                raise ValueError(f"Unknown task type: {task.task_type}")
            await handler(task, cadence)
            task.status = TaskStatus.COMPLETED
            logger.info(f"Task completed successfully: {task.name}")
        except Exception as e:
            task.status = TaskStatus.FAILED
            task.error_message = str(e)
            logger.error(f"Task failed: {task.name} - {e}")
            self._add_issue(task, str(e))
        finally:
            task.end_time = datetime.now()

    async def _execute_health_check(self, task: MaintenanceTask, cadence: Cadence):
        report = await self.health_checker.check_health()
        self.last_health = report
        task.result_data = to_jsonable(report)
        if report.status == HealthStatus.UNHEALTHY:
            raise TaskFailed(f"Database is unhealthy: {report.error or 'critical issues found'}")
        for issue in report.issues:
            self._add_issue(task, issue.message, issue)

    async def _execute_integrity_check(self, task: MaintenanceTask, cadence: Cadence):
        report = await self.integrity_checker.check_integrity()
        self.last_integrity = report
        task.result_data = to_jsonable(report)
        if report.status == IntegrityStatus.ERROR:
            raise TaskFailed(f"Integrity check failed: {report.error}")
        if report.status == IntegrityStatus.ISSUES:
            found = {key: count for key, count in report.issues.items() if count}
            self._add_issue(task, 'Data integrity issues found', found)

    async def _execute_integrity_repair(self, task: MaintenanceTask, cadence: Cadence):
        if self.last_integrity is None or self.last_integrity.status != IntegrityStatus.ISSUES:
            task.result_data = {'skipped': 'no integrity issues to repair'}
            return
        report = await self.repairer.repair_integrity()
        task.result_data = to_jsonable(report)
        if report.status == RepairStatus.ERROR:
            raise TaskFailed(f"Integrity repair failed: {report.error}")
        if report.status == RepairStatus.PARTIAL:
            self._add_issue(task, 'Integrity repair partially completed', {'error': report.error})

    async def _execute_schema_validation(self, task: MaintenanceTask, cadence: Cadence):
        report = await self.schema_validator.validate_schema()
        task.result_data = to_jsonable(report)
        if report.error:
            raise TaskFailed(f"Schema validation failed: {report.error}")
        if report.status != SchemaStatus.VALID:
            self._add_issue(task, report.message, {
                'missing_models': report.missing_models,
                'extra_models': report.extra_models,
                'model_issues': report.model_issues
            })

    async def _execute_backup(self, task: MaintenanceTask, cadence: Cadence):
        result = await self.optimizer.create_backup()
        task.result_data = to_jsonable(result)
        if result.status == OptimizationStatus.FAILED:
            raise TaskFailed(f"Backup failed: {result.error_message}")

    async def _execute_log_rotation(self, task: MaintenanceTask, cadence: Cadence):
        result = await self.operation_logger.rotate_logs()
        task.result_data = to_jsonable(result)
        for error in result.errors:
            self._add_issue(task, error)

    async def _run_optimization(self, task: MaintenanceTask, operations: Optional[List[str]]):
        report = await self.optimizer.optimize_database(operations)
        task.result_data = to_jsonable(report)
        # Operations skipped for lack of an optimizer capability are not failures
        failed = [t for t in report.tasks_performed if t.status == OptimizationStatus.FAILED]
        if failed and len(failed) == len(report.tasks_performed):
            raise TaskFailed(f"Optimization failed: {report.error or report.message}")
        if failed:
            self._add_issue(task, report.message, report.operations)

    async def _execute_vacuum_analyze(self, task: MaintenanceTask, cadence: Cadence):
        await self._run_optimization(task, ['vacuum', 'analyze'])

    async def _execute_full_optimization(self, task: MaintenanceTask, cadence: Cadence):
        await self._run_optimization(task, None)

    async def _execute_index_optimization(self, task: MaintenanceTask, cadence: Cadence):
        await self._run_optimization(task, ['reindex', 'analyze'])

    async def _execute_storage_cleanup(self, task: MaintenanceTask, cadence: Cadence):
        result = await self.optimizer.perform_cleanup()
        task.result_data = to_jsonable(result)
        if result.status == OptimizationStatus.FAILED:
            raise TaskFailed(f"Storage cleanup failed: {result.error_message}")

    async def _collect_usage(self, cadence: Cadence):
        report = await self.usage_collector.collect_usage(USAGE_PERIODS[cadence])
        if report.status == UsageStatus.ERROR:
            raise TaskFailed(f"Usage statistics failed: {report.error}")
        return report

    async def _execute_usage_statistics(self, task: MaintenanceTask, cadence: Cadence):
        task.result_data = to_jsonable(await self._collect_usage(cadence))

    async def _execute_performance_analysis(self, task: MaintenanceTask, cadence: Cadence):
        usage = await self._collect_usage(cadence)
        task.result_data = {
            'query_latency': to_jsonable(usage.performance),
            'health_performance': to_jsonable(self.last_health.performance) if self.last_health else None
        }
        if usage.performance.p95_query_time_ms > self.slow_query_threshold_ms:
            self._add_issue(task, 'Logged query latency p95 exceeds the slow query threshold',
                            {'p95_query_time_ms': usage.performance.p95_query_time_ms})

    async def _execute_query_review(self, task: MaintenanceTask, cadence: Cadence):
        usage = await self._collect_usage(cadence)
        busiest = sorted(usage.models.items(), key=lambda item: item[1].total, reverse=True)[:5]
        task.result_data = {
            'slowest_query_model': usage.performance.slowest_query_model,
            'slowest_query_time_ms': usage.performance.slowest_query_time_ms,
            'busiest_models': {model: to_jsonable(counts) for model, counts in busiest}
        }

    async def _execute_comprehensive_audit(self, task: MaintenanceTask, cadence: Cadence):
        schema, integrity = await asyncio.gather(
            self.schema_validator.validate_schema(),
            self.integrity_checker.check_integrity()
        )
        self.last_integrity = integrity
        task.result_data = {'schema': to_jsonable(schema), 'integrity': to_jsonable(integrity)}
        if schema.error or integrity.status == IntegrityStatus.ERROR:
            raise TaskFailed(f"Audit failed: {schema.error or integrity.error}")
        if schema.status != SchemaStatus.VALID:
            self._add_issue(task, schema.message)
        if integrity.status == IntegrityStatus.ISSUES:
            self._add_issue(task, 'Data integrity issues found', integrity.issues)

    async def _execute_archival(self, task: MaintenanceTask, cadence: Cadence):
        loop = asyncio.get_running_loop()
        snapshot = await loop.run_in_executor(
            None,
            lambda: self.snapshot_manager.create_snapshot(
                None, label='archive', mode=SnapshotMode.EXPORT,
                directory=self.snapshot_manager.archive_dir
            )
        )
        rotation = await self.operation_logger.rotate_logs()
        task.result_data = {'snapshot': to_jsonable(snapshot), 'log_rotation': to_jsonable(rotation)}

    def _generate_recommendations(self) -> List[str]:
        recommendations: List[str] = []
        if self.last_health is not None:
            recommendations.extend(self.last_health.recommendations)

        report = self.current_report
        health_before = report.system_health_before if report else None
        if health_before is not None:
            if health_before.last_backup_age is not None and health_before.last_backup_age > 48:
                recommendations.append("Backup is older than 48 hours. Consider more frequent backups.")
            for mount, usage in health_before.disk_usage.items():
                if usage > 90.0:
                    recommendations.append(f"High disk usage on {mount}. Consider cleanup or disk expansion.")

        if (self.last_integrity is not None and self.last_integrity.status == IntegrityStatus.ISSUES
                and not self.repair_enabled):
            recommendations.append("Integrity issues found. Re-run with --confirm-repair to repair them.")
        return recommendations

    async def _save_maintenance_report(self, report: MaintenanceRunReport):
        """Write the run report as JSON into the report directory"""
        try:
            self.report_dir.mkdir(parents=True, exist_ok=True)
            report_path = self.report_dir / f"maintenance_{report.execution_id}.json"
            report.report_path = str(report_path)
            async with aiofiles.open(report_path, 'w') as f:
                await f.write(json.dumps(to_jsonable(report), indent=2, default=str))
            logger.info(f"Maintenance report saved: {report_path}")
        except OSError as e:
            logger.error(f"Failed to save maintenance report: {e}")

    def _alert_reasons(self, report: MaintenanceRunReport) -> List[str]:
        reasons = []
        if self.last_health is not None and self.last_health.status == HealthStatus.UNHEALTHY:
            reasons.append(f"Database unhealthy: {self.last_health.error or 'critical issues found'}")
        for task in report.tasks_executed:
            if task.task_type == 'integrity_repair' and task.status == TaskStatus.FAILED:
                reasons.append(f"Integrity repair failed: {task.error_message}")
            elif (task.task_type == 'integrity_repair' and isinstance(task.result_data, dict)
                  and task.result_data.get('status') == RepairStatus.PARTIAL.value):
                reasons.append(f"Integrity repair partial: {task.result_data.get('error')}")
        return reasons

    async def _alert_if_needed(self, report: MaintenanceRunReport):
        reasons = self._alert_reasons(report)
        if reasons:
            await self._send_webhook_alert(report, reasons)

    async def _send_webhook_alert(self, report: MaintenanceRunReport, reasons: List[str]):
        """Send webhook alert."""
        if not self.webhook_url:
            logger.warning(f"Maintenance alert (no webhook configured): {'; '.join(reasons)}")
            return

        payload = {
            "type": "maintenance_alert",
            "execution_id": report.execution_id,
            "cadence": report.cadence.value,
            "status": report.status,
            "reasons": reasons,
            "timestamp": format_timestamp(utc_now())
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.alert_timeout)
                ) as response:
                    if response.status == 200:
                        logger.info(f"Webhook alert sent for {report.execution_id}")
                    else:
                        logger.warning(f"Webhook alert failed: {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Error sending webhook alert: {e}")

    async def run_mode(self, mode: str, period: str = 'weekly') -> Any:
        """Run one CLI mode and return its report"""
        if mode == 'health':
            return await self.health_checker.check_health()
        if mode == 'schema':
            return await self.schema_validator.validate_schema()
        if mode == 'integrity':
            return await self.integrity_checker.check_integrity()
        if mode == 'repair':
            return await self.repairer.repair_integrity()
        if mode == 'usage':
            return await self.usage_collector.collect_usage(period)
        if mode == 'optimize':
            return await self.optimizer.optimize_database()
        if mode == 'rotate-logs':
            return await self.operation_logger.rotate_logs()
        if mode == 'backup':
            return await self.optimizer.create_backup()
        if mode == 'schedule':
            return {
                'schedule': self.scheduler.as_dict(),
                'crontab': self.scheduler.crontab_entries()
            }
        return await self.execute_maintenance(mode)


def configure_logging(config: Dict[str, Any]):
    """Configure the diagnostic log: file plus stdout."""
    logging_config = config.get('logging', {})
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    log_file = logging_config.get('file')
    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.insert(0, logging.FileHandler(log_file))
        except OSError as e:
            print(f"Cannot open log file {log_file}: {e}", file=sys.stderr)

    logging.basicConfig(
        level=getattr(logging, str(logging_config.get('level', 'INFO')).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def _exit_code(result: Any) -> int:
    status = getattr(result, 'status', None)
    if isinstance(status, Enum):
        status = status.value
    return 1 if status in ('unhealthy', 'error', 'failed') else 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='EdPsych Database Maintenance')
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH, help='Configuration file path')
    parser.add_argument('--mode', choices=MODES, default='health', help='Operation mode')
    parser.add_argument('--period', choices=[period.value for period in UsagePeriod], default='weekly',
                        help='Usage statistics period')
    parser.add_argument('--confirm-repair', action='store_true',
                        help='Allow integrity repair to modify the database')

    args = parser.parse_args(argv)

    config = load_config(args.config)
    configure_logging(config)

    orchestrator = MaintenanceOrchestrator(config, confirm_repair=args.confirm_repair)

    if args.mode == 'repair' and not orchestrator.repair_enabled:
        logger.error("Integrity repair modifies data; pass --confirm-repair or set repair.auto_repair")
        return 1

    try:
        result = asyncio.run(orchestrator.run_mode(args.mode, args.period))
    except KeyboardInterrupt:
        logger.info("Database maintenance stopped by user")
        return 0
    except Exception as e:
        logger.error(f"Database maintenance failed: {e}")
        return 1

    print(json.dumps(to_jsonable(result), indent=2, default=str))
    return _exit_code(result)


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
