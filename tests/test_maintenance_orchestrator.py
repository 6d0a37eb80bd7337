"""
Tests for maintenance runs, escalation, alerting and the command line entry point.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from unittest.mock import AsyncMock

import pytest
import yaml

from edpsych_maintenance.health_checker import HealthStatus
from edpsych_maintenance.integrity_checker import IntegrityChecker, IntegrityStatus
from edpsych_maintenance.maintenance_orchestrator import (
    INTEGRITY_TASK,
    REPAIR_TASK,
    MaintenanceOrchestrator,
    TaskStatus,
    main,
    to_jsonable,
)


def task_named(report, name):
    return next(task for task in report.tasks_executed if task.name == name)


class TestExecuteMaintenance:

    @pytest.mark.asyncio
    async def test_daily_run_on_clean_store(self, clean_repository, config):
        orchestrator = MaintenanceOrchestrator(config, clean_repository)

        report = await orchestrator.execute_maintenance('daily')

        assert [task.name for task in report.tasks_executed] == [
            'Check database health', 'Backup database', 'Log rotation'
        ]
        assert all(task.status == TaskStatus.COMPLETED for task in report.tasks_executed)
        assert report.status == 'success'
        assert report.success_rate == 100
        assert report.system_health_before is not None

        saved = json.loads(open(report.report_path).read())
        assert saved['execution_id'] == report.execution_id
        assert saved['cadence'] == 'daily'
        assert saved['tasks_executed'][0]['status'] == 'completed'

    @pytest.mark.asyncio
    async def test_store_down_skips_store_tasks_and_alerts(self, clean_repository, config):
        clean_repository.available = False
        orchestrator = MaintenanceOrchestrator(config, clean_repository)
        orchestrator._send_webhook_alert = AsyncMock()

        report = await orchestrator.execute_maintenance('daily')

        health = task_named(report, 'Check database health')
        backup = task_named(report, 'Backup database')
        rotation = task_named(report, 'Log rotation')
        assert health.status == TaskStatus.FAILED
        assert backup.status == TaskStatus.SKIPPED
        assert backup.error_message == 'Database unavailable'
        assert rotation.status == TaskStatus.COMPLETED
        assert report.status == 'error'
        assert orchestrator.last_health.status == HealthStatus.UNHEALTHY

        orchestrator._send_webhook_alert.assert_awaited_once()
        reasons = orchestrator._send_webhook_alert.await_args.args[1]
        assert reasons[0].startswith('Database unhealthy')

    @pytest.mark.asyncio
    async def test_weekly_run_with_confirmed_repair(self, dirty_repository, config):
        orchestrator = MaintenanceOrchestrator(config, dirty_repository, confirm_repair=True)
        orchestrator._send_webhook_alert = AsyncMock()

        report = await orchestrator.execute_maintenance('weekly')

        names = [task.name for task in report.tasks_executed]
        assert names.index(REPAIR_TASK) == names.index(INTEGRITY_TASK) + 1
        repair = task_named(report, REPAIR_TASK)
        assert repair.status == TaskStatus.COMPLETED
        assert repair.result_data['status'] == 'success'
        assert task_named(report, 'VACUUM Analyse').status == TaskStatus.COMPLETED
        assert report.status == 'warning'
        orchestrator._send_webhook_alert.assert_not_awaited()

        after = await IntegrityChecker(dirty_repository, config).check_integrity()
        assert after.status == IntegrityStatus.VALID

    @pytest.mark.asyncio
    async def test_weekly_run_without_repair_recommends_it(self, dirty_repository, config):
        orchestrator = MaintenanceOrchestrator(config, dirty_repository)

        report = await orchestrator.execute_maintenance('weekly')

        assert REPAIR_TASK not in [task.name for task in report.tasks_executed]
        assert report.status == 'warning'
        assert any('--confirm-repair' in rec for rec in report.recommendations)
        assert any(issue['task'] == INTEGRITY_TASK for issue in report.issues_found)
        assert len(dirty_repository.query('User')) == 6

    @pytest.mark.asyncio
    async def test_health_issues_escalate_to_integrity_check(self, dirty_repository, config):
        orchestrator = MaintenanceOrchestrator(config, dirty_repository, confirm_repair=True)

        report = await orchestrator.execute_maintenance('daily')

        names = [task.name for task in report.tasks_executed]
        assert names[-2:] == [INTEGRITY_TASK, REPAIR_TASK]
        assert task_named(report, INTEGRITY_TASK).status == TaskStatus.COMPLETED
        assert task_named(report, REPAIR_TASK).status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_repair_is_a_no_op_on_clean_store(self, clean_repository, config):
        orchestrator = MaintenanceOrchestrator(config, clean_repository, confirm_repair=True)

        report = await orchestrator.execute_maintenance('weekly')

        repair = task_named(report, REPAIR_TASK)
        assert repair.status == TaskStatus.COMPLETED
        assert repair.result_data == {'skipped': 'no integrity issues to repair'}
        assert report.status == 'success'

    @pytest.mark.asyncio
    async def test_quarterly_archival_writes_outside_backup_retention(self, clean_repository, config, tmp_path):
        orchestrator = MaintenanceOrchestrator(config, clean_repository)

        report = await orchestrator.execute_maintenance('quarterly')

        archival = task_named(report, 'Long-term backup archiving')
        assert archival.status == TaskStatus.COMPLETED
        assert archival.result_data['snapshot']['location'].startswith(str(tmp_path / 'backups' / 'archive'))
        assert task_named(report, 'Query optimization review').status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_monthly_run_on_in_memory_store(self, clean_repository, config):
        orchestrator = MaintenanceOrchestrator(config, clean_repository)

        report = await orchestrator.execute_maintenance('monthly')

        assert task_named(report, 'Full database optimization').status == TaskStatus.COMPLETED
        schema = task_named(report, 'Schema validation')
        assert schema.status == TaskStatus.COMPLETED
        assert any(issue['task'] == 'Schema validation' for issue in report.issues_found)


class TestAlerts:

    @pytest.mark.asyncio
    async def test_alert_without_webhook_is_logged(self, clean_repository, config, caplog):
        orchestrator = MaintenanceOrchestrator(config, clean_repository)
        report = await orchestrator.execute_maintenance('daily')

        with caplog.at_level('WARNING', logger='edpsych.maintenance_orchestrator'):
            await orchestrator._send_webhook_alert(report, ['Database unhealthy: test'])

        assert 'no webhook configured' in caplog.text


class TestMain:

    @pytest.fixture(autouse=True)
    def quiet_logging(self, monkeypatch):
        monkeypatch.setattr('edpsych_maintenance.maintenance_orchestrator.configure_logging', lambda config: None)

    def write_config(self, tmp_path, extra=None):
        config = {
            'database': {'path': str(tmp_path / 'missing.db')},
            'logging': {
                'log_dir': str(tmp_path / 'logs'),
                'archive_dir': str(tmp_path / 'logs' / 'archive'),
                'file': str(tmp_path / 'logs' / 'maintenance.log')
            },
            'backup': {'backup_dir': str(tmp_path / 'backups')},
            'reports': {'report_dir': str(tmp_path / 'reports')},
        }
        config.update(extra or {})
        path = tmp_path / 'maintenance.yaml'
        path.write_text(yaml.safe_dump(config))
        return str(path)

    def test_schedule_mode_prints_crontab(self, tmp_path, capsys):
        assert main(['--mode', 'schedule', '--config', self.write_config(tmp_path)]) == 0

        output = json.loads(capsys.readouterr().out)
        assert output['crontab'][0] == '0 2 * * * edpsych-maintenance --mode daily'

    def test_repair_requires_confirmation(self, tmp_path):
        assert main(['--mode', 'repair', '--config', self.write_config(tmp_path)]) == 1

    def test_unhealthy_store_exits_non_zero(self, tmp_path, capsys):
        assert main(['--mode', 'health', '--config', self.write_config(tmp_path)]) == 1

        output = json.loads(capsys.readouterr().out)
        assert output['status'] == 'unhealthy'
        assert output['connection_status'] is False

    def test_integrity_mode_on_sqlite(self, tmp_path, sqlite_db, capsys):
        config_path = self.write_config(tmp_path, {'database': {'path': sqlite_db}})

        assert main(['--mode', 'integrity', '--config', config_path]) == 0

        output = json.loads(capsys.readouterr().out)
        assert output['status'] == 'issues'
        assert output['issues']['duplicate_records'] == 1

    def test_confirmed_repair_on_sqlite(self, tmp_path, sqlite_db, capsys):
        config_path = self.write_config(tmp_path, {
            'database': {'path': sqlite_db},
            'repair': {'lock_file': str(tmp_path / 'repair.lock')}
        })

        assert main(['--mode', 'repair', '--confirm-repair', '--config', config_path]) == 0

        output = json.loads(capsys.readouterr().out)
        assert output['status'] == 'success'
        assert output['repairs']['de_duplicated_records'] == 1
        assert main(['--mode', 'integrity', '--config', config_path]) == 0
        assert json.loads(capsys.readouterr().out)['status'] == 'valid'

    def test_unknown_mode_is_rejected(self, tmp_path):
        with pytest.raises(SystemExit):
            main(['--mode', 'yearly', '--config', self.write_config(tmp_path)])


class Colour(Enum):
    RED = 'red'


@dataclass
class Sample:
    colour: Colour
    when: datetime
    tags: tuple


def test_to_jsonable():
    value = to_jsonable({'sample': Sample(Colour.RED, datetime(2024, 5, 17, 2, 0), ('a', 'b')), 3: ValueError('x')})

    assert value == {
        'sample': {'colour': 'red', 'when': '2024-05-17T02:00:00', 'tags': ['a', 'b']},
        '3': 'x',
    }
