"""
Tests for integrity repair: invariant restoration, idempotence, duplicate
collapse, partial failure and mutual exclusion.
"""

import asyncio
import gzip
import json
from pathlib import Path

import pytest

from edpsych_maintenance.integrity_checker import IntegrityChecker, IntegrityStatus
from edpsych_maintenance.integrity_repairer import IntegrityRepairer, RepairLock, RepairStatus, StepStatus
from edpsych_maintenance.operation_logger import LogStream, OperationLogger
from edpsych_maintenance.repository import InMemoryRepository, RepositoryError
from edpsych_maintenance.snapshot import SnapshotMode

from conftest import clean_tables, dirty_tables

ALL_REPAIR_KEYS = (
    'deleted_orphaned_profiles', 'deleted_orphaned_results', 'deleted_orphaned_links',
    'fixed_users', 'fixed_relationships', 'de_duplicated_records'
)


class FailingUpdateRepository(InMemoryRepository):

    def update(self, model, record_id, values):
        raise RepositoryError("database is locked")


def ids(repository, model):
    return sorted(row['id'] for row in repository.query(model) if row.get('id') is not None)


class TestRepairIntegrity:

    @pytest.mark.asyncio
    async def test_restores_every_invariant(self, dirty_repository, config):
        report = await IntegrityRepairer(dirty_repository, config).repair_integrity()

        assert report.status == RepairStatus.SUCCESS
        assert report.repairs == {
            'deleted_orphaned_profiles': 1,
            'deleted_orphaned_results': 1,
            'deleted_orphaned_links': 1,
            'fixed_users': 1,
            'fixed_relationships': 1,
            'de_duplicated_records': 1,
        }
        assert [step.status for step in report.steps] == [StepStatus.COMPLETED] * 4
        assert report.pre_repair_issues['duplicate_records'] == 1

        after = await IntegrityChecker(dirty_repository, config).check_integrity()
        assert after.status == IntegrityStatus.VALID

    @pytest.mark.asyncio
    async def test_second_run_reports_nothing_to_do(self, dirty_repository, config):
        await IntegrityRepairer(dirty_repository, config).repair_integrity()

        second = await IntegrityRepairer(dirty_repository, config).repair_integrity()

        assert second.status == RepairStatus.SUCCESS
        assert second.repairs == {key: 0 for key in ALL_REPAIR_KEYS}
        assert second.total_affected == 0

    @pytest.mark.asyncio
    async def test_duplicate_collapse_keeps_lowest_id(self, config):
        tables = clean_tables()
        tables['User'] = [
            {'id': 1, 'email': 'a@x.com', 'name': 'A'},
            {'id': 2, 'email': 'a@x.com', 'name': 'A again'},
            {'id': 3, 'email': 'b@x.com', 'name': 'B'},
        ]
        tables['Profile'] = []
        tables['AssessmentResult'] = []
        tables['UserParentLink'] = []
        tables['UserChildLink'] = []
        repository = InMemoryRepository(tables)

        report = await IntegrityRepairer(repository, config).repair_integrity()

        assert report.repairs['de_duplicated_records'] == 1
        assert ids(repository, 'User') == [1, 3]

    @pytest.mark.asyncio
    async def test_duplicate_dependents_follow_removal_policy(self, dirty_repository, config):
        await IntegrityRepairer(dirty_repository, config).repair_integrity()

        # User 4 is older than user 5, so 5 goes
        assert 5 not in ids(dirty_repository, 'User')
        assert 4 in ids(dirty_repository, 'User')
        assert dirty_repository.query('Profile', {'userId': 5}) == []
        moved = dirty_repository.query('AssessmentResult', {'id': 102})
        assert moved[0]['studentId'] == 4

    @pytest.mark.asyncio
    async def test_placeholders_are_stable(self, config):
        tables = clean_tables()
        tables['User'].append({'id': 42, 'email': '', 'name': None})
        repository = InMemoryRepository(tables)
        config['repair']['placeholder_domain'] = 'example.invalid'

        report = await IntegrityRepairer(repository, config).repair_integrity()

        fixed = repository.query('User', {'id': 42})[0]
        assert report.repairs['fixed_users'] == 1
        assert fixed['name'] == 'User 42'
        assert fixed['email'] == 'placeholder_42@example.invalid'

    @pytest.mark.asyncio
    async def test_only_blank_fields_are_replaced(self, config):
        tables = clean_tables()
        tables['User'].append({'id': 43, 'email': 'kept@x.com', 'name': ' '})
        repository = InMemoryRepository(tables)

        await IntegrityRepairer(repository, config).repair_integrity()

        fixed = repository.query('User', {'id': 43})[0]
        assert fixed['email'] == 'kept@x.com'
        assert fixed['name'] == 'User 43'

    @pytest.mark.asyncio
    async def test_restores_missing_reciprocal_link(self, config):
        tables = clean_tables()
        tables['UserChildLink'] = []
        repository = InMemoryRepository(tables)

        report = await IntegrityRepairer(repository, config).repair_integrity()

        assert report.repairs['fixed_relationships'] == 1
        links = repository.query('UserChildLink')
        assert [(link['parentId'], link['childId']) for link in links] == [(2, 1)]
        assert repository.query('UserParentLink') == clean_tables()['UserParentLink']

    @pytest.mark.asyncio
    async def test_connectivity_loss_mutates_nothing(self, dirty_repository, config):
        dirty_repository.available = False

        report = await IntegrityRepairer(dirty_repository, config).repair_integrity()

        assert report.status == RepairStatus.ERROR
        assert report.steps == []
        dirty_repository.available = True
        assert ids(dirty_repository, 'User') == [1, 2, 3, 4, 5, 6]

    @pytest.mark.asyncio
    async def test_failing_step_keeps_earlier_work_and_skips_the_rest(self, config):
        repository = FailingUpdateRepository(dirty_tables())

        report = await IntegrityRepairer(repository, config).repair_integrity()

        assert report.status == RepairStatus.PARTIAL
        assert [step.status for step in report.steps] == [
            StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.SKIPPED
        ]
        assert 'backfill_invalid_accounts' in report.error
        assert 'database is locked' in report.steps[1].error
        assert report.repairs['deleted_orphaned_profiles'] == 1
        assert report.repairs['fixed_users'] == 0
        assert ids(repository, 'Profile') == [1, 3]
        assert 5 in ids(repository, 'User')

    @pytest.mark.asyncio
    async def test_step_past_deadline_is_rolled_back(self, dirty_repository, config):
        config['timeouts']['repair_step_seconds'] = -1

        report = await IntegrityRepairer(dirty_repository, config).repair_integrity()

        assert report.status == RepairStatus.ERROR
        assert report.steps[0].status == StepStatus.TIMEOUT
        assert report.issues[0]['type'] == 'performance'
        assert ids(dirty_repository, 'Profile') == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_concurrent_repair_is_rejected(self, dirty_repository, config):
        first = IntegrityRepairer(dirty_repository, config)
        second = IntegrityRepairer(dirty_repository, config)

        reports = await asyncio.gather(first.repair_integrity(), second.repair_integrity())

        statuses = sorted(report.status.value for report in reports)
        assert statuses == ['error', 'success']
        rejected = next(report for report in reports if report.status == RepairStatus.ERROR)
        assert rejected.error == 'repair already in progress'

    @pytest.mark.asyncio
    async def test_held_lock_blocks_repair(self, dirty_repository, config, tmp_path):
        lock = tmp_path / 'locks' / 'repair.lock'
        lock.parent.mkdir(parents=True)
        lock.write_text('12345')

        report = await IntegrityRepairer(dirty_repository, config).repair_integrity()

        assert report.error == 'repair already in progress'
        assert ids(dirty_repository, 'Profile') == [1, 2, 3]
        assert lock.exists()

    @pytest.mark.asyncio
    async def test_stale_lock_is_replaced(self, dirty_repository, config, tmp_path):
        config['repair']['lock_stale_seconds'] = -1
        lock = tmp_path / 'locks' / 'repair.lock'
        lock.parent.mkdir(parents=True)
        lock.write_text('12345')

        report = await IntegrityRepairer(dirty_repository, config).repair_integrity()

        assert report.status == RepairStatus.SUCCESS
        assert not lock.exists()

    def test_lock_refreshed_after_staleness_check_survives(self, tmp_path):
        class RacingLock(RepairLock):
            def _is_stale(self, path=None):
                # the lock looked stale, then another process replaced it
                if path is None:
                    return True
                return super()._is_stale(path)

        lock = tmp_path / 'locks' / 'repair.lock'
        lock.parent.mkdir(parents=True)
        lock.write_text('12345')

        racing = RacingLock(lock, stale_seconds=3600)

        assert racing.acquire() is False
        assert racing.held is False
        assert lock.read_text() == '12345'
        assert sorted(p.name for p in lock.parent.iterdir()) == ['repair.lock']


class TestRepairSnapshot:

    @pytest.mark.asyncio
    async def test_export_snapshot_holds_pre_repair_rows(self, dirty_repository, config):
        report = await IntegrityRepairer(dirty_repository, config).repair_integrity()

        assert report.snapshot.mode == SnapshotMode.EXPORT
        assert report.snapshot.verified is True
        with gzip.open(report.snapshot.location, 'rt') as f:
            exported = json.load(f)
        assert len(exported['models']['User']) == 6
        assert len(exported['models']['Profile']) == 3

    @pytest.mark.asyncio
    async def test_reference_snapshot_writes_nothing(self, dirty_repository, config, tmp_path):
        config['repair']['snapshot_mode'] = 'reference'

        report = await IntegrityRepairer(dirty_repository, config).repair_integrity()

        assert report.status == RepairStatus.SUCCESS
        assert report.snapshot.mode == SnapshotMode.REFERENCE
        assert not (tmp_path / 'backups').exists()

    @pytest.mark.asyncio
    async def test_snapshot_failure_aborts_under_strict_safety(self, dirty_repository, config, tmp_path):
        blocked = tmp_path / 'backups'
        blocked.write_text('not a directory')

        report = await IntegrityRepairer(dirty_repository, config).repair_integrity()

        assert report.status == RepairStatus.ERROR
        assert 'Snapshot failed' in report.error
        assert ids(dirty_repository, 'User') == [1, 2, 3, 4, 5, 6]

    @pytest.mark.asyncio
    async def test_snapshot_failure_tolerated_without_strict_safety(self, dirty_repository, config, tmp_path):
        (tmp_path / 'backups').write_text('not a directory')
        config['repair']['strict_safety'] = False

        report = await IntegrityRepairer(dirty_repository, config).repair_integrity()

        assert report.status == RepairStatus.SUCCESS
        assert report.snapshot is None


    @pytest.mark.asyncio
    async def test_back_to_back_repairs_keep_both_snapshots(self, dirty_repository, config):
        first = await IntegrityRepairer(dirty_repository, config).repair_integrity()
        second = await IntegrityRepairer(dirty_repository, config).repair_integrity()

        assert first.snapshot.location != second.snapshot.location
        assert len(list(Path(config['backup']['backup_dir']).glob('pre_repair_backup_*'))) == 2
        with gzip.open(first.snapshot.location, 'rt') as f:
            assert len(json.load(f)['models']['User']) == 6
        with gzip.open(second.snapshot.location, 'rt') as f:
            assert len(json.load(f)['models']['User']) == 5


class TestRepairLogging:

    @pytest.mark.asyncio
    async def test_mutations_are_logged_per_model(self, dirty_repository, config):
        op_logger = OperationLogger(config)

        await IntegrityRepairer(dirty_repository, config, operation_logger=op_logger).repair_integrity()

        records = [
            json.loads(line)
            for line in op_logger.stream_path(LogStream.OPERATIONS).read_text().splitlines()
        ]
        logged = {(record['operation'], record['model']) for record in records}
        assert ('deleteMany', 'Profile') in logged
        assert ('update', 'User') in logged
        assert ('create', 'UserChildLink') in logged
        assert ('delete', 'User') in logged
        assert ('updateMany', 'AssessmentResult') in logged
        assert records[-1]['operation'] == 'integrityRepair'
        assert all('queryTimeMs' in record['details']
                   for record in records if record['operation'] in ('deleteMany', 'update', 'create'))

        audit = op_logger.stream_path(LogStream.AUDIT).read_text().splitlines()
        assert any(json.loads(line)['operation'] == 'delete' for line in audit)
