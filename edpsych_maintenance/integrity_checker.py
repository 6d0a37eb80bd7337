"""
EdPsych Data Integrity Checker
Detects orphaned references, invalid accounts, one-sided parent/child links
and duplicate account emails.
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from edpsych_maintenance.config import resolve_config
from edpsych_maintenance.operation_logger import OperationLogger, format_timestamp, utc_now
from edpsych_maintenance.probes import run_probes
from edpsych_maintenance.repository import Repository

logger = logging.getLogger('edpsych.integrity_checker')

INVALID_ACCOUNTS = 'invalid_users'
INCONSISTENT_RELATIONSHIPS = 'inconsistent_relationships'
DUPLICATE_RECORDS = 'duplicate_records'


class IntegrityStatus(Enum):
    VALID = "valid"
    ISSUES = "issues"
    ERROR = "error"


@dataclass
class Reference:
    field: str
    target: str


@dataclass
class OwnedModel:
    model: str
    references: List[Reference]
    check_key: str
    repair_key: str
    on_account_removal: str = 'delete'

    @classmethod
    def from_config(cls, entry: Dict[str, Any]) -> 'OwnedModel':
        model = entry['model']
        return cls(
            model=model,
            references=[Reference(ref['field'], ref['target']) for ref in entry.get('references', [])],
            check_key=entry.get('check_key', f"orphaned_{model.lower()}"),
            repair_key=entry.get('repair_key', f"deleted_orphaned_{model.lower()}"),
            on_account_removal=entry.get('on_account_removal', 'delete')
        )


@dataclass
class LinkSide:
    """One side of the parent/child relationship.

    A row ``{owner_field: A, target_field: B}`` means A lists B.
    """
    model: str
    owner_field: str
    target_field: str


@dataclass
class MissingLink:
    side: LinkSide
    owner_id: Any
    target_id: Any


@dataclass
class IntegrityRules:
    account_model: str
    id_field: str
    email_field: str
    name_field: str
    created_field: str
    owned_models: List[OwnedModel]
    parent_links: Optional[LinkSide]
    child_links: Optional[LinkSide]
    sample_size: int = 10

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'IntegrityRules':
        integrity = config.get('integrity', {})
        relationship = integrity.get('relationship') or {}
        parent_links = relationship.get('parent_links')
        child_links = relationship.get('child_links')
        return cls(
            account_model=integrity.get('account_model', 'User'),
            id_field=integrity.get('id_field', 'id'),
            email_field=integrity.get('email_field', 'email'),
            name_field=integrity.get('name_field', 'name'),
            created_field=integrity.get('created_field', 'createdAt'),
            owned_models=[OwnedModel.from_config(entry) for entry in integrity.get('owned_models', [])],
            parent_links=LinkSide(**parent_links) if parent_links else None,
            child_links=LinkSide(**child_links) if child_links else None,
            sample_size=integrity.get('sample_size', 10)
        )

    def check_keys(self) -> List[str]:
        keys = []
        for owned in self.owned_models:
            if owned.check_key not in keys:
                keys.append(owned.check_key)
        return keys + [INVALID_ACCOUNTS, INCONSISTENT_RELATIONSHIPS, DUPLICATE_RECORDS]


@dataclass
class CheckResult:
    count: int = 0
    sample_ids: List[Any] = field(default_factory=list)


@dataclass
class IntegrityReport:
    status: IntegrityStatus
    timestamp: str
    issues: Optional[Dict[str, int]] = None
    details: Optional[Dict[str, CheckResult]] = None
    performance_issues: List[Dict[str, Any]] = field(default_factory=list)
    duration_seconds: float = 0.0
    error: Optional[str] = None

    def issue_count(self, key: str) -> int:
        return (self.issues or {}).get(key, 0)


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _id_sort_key(value: Any):
    try:
        return (0, int(value), '')
    except (TypeError, ValueError):
        return (1, 0, str(value))


class IntegrityChecker:
    """Read-only integrity sub-checks over the injected repository."""

    def __init__(self, repository: Repository, config: Optional[Dict[str, Any]] = None,
                 operation_logger: Optional[OperationLogger] = None):
        self.repository = repository
        self.config = resolve_config(config)
        self.rules = IntegrityRules.from_config(self.config)
        self.operation_logger = operation_logger

        self.check_timeout = self.config.get('timeouts', {}).get('check_seconds', 30)
        self.actor_id = self.config.get('repair', {}).get('actor_id', 'system:maintenance')

    # Sub-probes. Each takes the repository explicitly so a repair step can
    # run them inside its own unit of work.

    def find_orphans(self, repository: Repository, owned: OwnedModel) -> List[Dict[str, Any]]:
        """Rows of ``owned.model`` whose required references do not resolve."""
        rows = repository.query(owned.model)
        if not rows:
            return []

        live_ids: Dict[str, set] = {}
        for ref in owned.references:
            if ref.target not in live_ids:
                live_ids[ref.target] = {
                    row.get(self.rules.id_field) for row in repository.query(ref.target)
                }

        return [
            row for row in rows
            if any(
                row.get(ref.field) is None or row.get(ref.field) not in live_ids[ref.target]
                for ref in owned.references
            )
        ]

    def find_invalid_accounts(self, repository: Repository) -> List[Dict[str, Any]]:
        """Accounts with a blank email or a blank name."""
        return [
            row for row in repository.query(self.rules.account_model)
            if is_blank(row.get(self.rules.email_field)) or is_blank(row.get(self.rules.name_field))
        ]

    def find_asymmetric_links(self, repository: Repository) -> List[MissingLink]:
        """Edges declared on one side only, between two existing accounts."""
        parent_side = self.rules.parent_links
        child_side = self.rules.child_links
        if parent_side is None or child_side is None:
            return []
        if not (repository.has_model(parent_side.model) and repository.has_model(child_side.model)):
            logger.warning(f"Relationship models {parent_side.model}/{child_side.model} not found, "
                           f"skipping symmetry check")
            return []

        account_ids = {row.get(self.rules.id_field) for row in repository.query(self.rules.account_model)}
        parent_edges = {
            (row.get(parent_side.owner_field), row.get(parent_side.target_field))
            for row in repository.query(parent_side.model)
        }
        child_edges = {
            (row.get(child_side.owner_field), row.get(child_side.target_field))
            for row in repository.query(child_side.model)
        }

        def ordered(edges):
            return sorted(edges, key=lambda edge: (_id_sort_key(edge[0]), _id_sort_key(edge[1])))

        missing = []
        for student_id, parent_id in ordered(parent_edges):
            if student_id not in account_ids or parent_id not in account_ids:
                continue
            if (parent_id, student_id) not in child_edges:
                missing.append(MissingLink(child_side, parent_id, student_id))

        for parent_id, child_id in ordered(child_edges):
            if parent_id not in account_ids or child_id not in account_ids:
                continue
            if (child_id, parent_id) not in parent_edges:
                missing.append(MissingLink(parent_side, child_id, parent_id))

        return missing

    def account_sort_key(self, row: Dict[str, Any]):
        """Keep order inside a duplicate group: oldest createdAt, then lowest id."""
        created = row.get(self.rules.created_field)
        created_key = created.isoformat() if hasattr(created, 'isoformat') else str(created or '')
        return (created is None, created_key, _id_sort_key(row.get(self.rules.id_field)))

    def find_duplicate_groups(self, repository: Repository) -> List[List[Dict[str, Any]]]:
        """Accounts grouped by email, groups of two or more, first row is the keeper."""
        groups = defaultdict(list)
        for row in repository.query(self.rules.account_model):
            email = row.get(self.rules.email_field)
            if is_blank(email):
                continue
            groups[email].append(row)

        return [
            sorted(rows, key=self.account_sort_key)
            for email, rows in sorted(groups.items(), key=lambda item: str(item[0]))
            if len(rows) > 1
        ]

    def _sample(self, values: List[Any]) -> List[Any]:
        return values[:self.rules.sample_size]

    def _ids(self, rows: List[Dict[str, Any]]) -> List[Any]:
        return [row.get(self.rules.id_field) for row in rows]

    def orphan_probes(self, repository: Optional[Repository] = None) -> Dict[str, Callable[[], Any]]:
        repository = repository or self.repository
        return {
            f"orphans:{owned.model}": partial(self.find_orphans, repository, owned)
            for owned in self.rules.owned_models
        }

    def validity_probes(self, repository: Optional[Repository] = None) -> Dict[str, Callable[[], Any]]:
        repository = repository or self.repository
        return {INVALID_ACCOUNTS: partial(self.find_invalid_accounts, repository)}

    async def check_integrity(self) -> IntegrityReport:
        """Run every sub-check concurrently and aggregate the counts."""
        logger.info("Starting data integrity check")
        started = time.monotonic()

        probes = self.orphan_probes()
        probes.update(self.validity_probes())
        probes[INCONSISTENT_RELATIONSHIPS] = partial(self.find_asymmetric_links, self.repository)
        probes[DUPLICATE_RECORDS] = partial(self.find_duplicate_groups, self.repository)

        outcomes = await run_probes(probes, timeout=self.check_timeout)
        duration = time.monotonic() - started

        timed_out = [outcome for outcome in outcomes.values() if outcome.timed_out]
        failed = [outcome for outcome in outcomes.values() if outcome.error is not None]

        if timed_out or failed:
            performance_issues = [
                {
                    'type': 'performance',
                    'severity': 'high',
                    'message': f"Integrity sub-check {outcome.name} exceeded {self.check_timeout}s and was abandoned",
                    'details': {'probe': outcome.name, 'timeout_seconds': self.check_timeout}
                }
                for outcome in timed_out
            ]
            if failed:
                error = f"{failed[0].name}: {failed[0].error}"
            else:
                error = f"{timed_out[0].name}: timed out after {self.check_timeout}s"
            logger.error(f"Data integrity check failed: {error}")
            report = IntegrityReport(
                status=IntegrityStatus.ERROR,
                timestamp=format_timestamp(utc_now()),
                performance_issues=performance_issues,
                duration_seconds=duration,
                error=error
            )
            await self._log_check(report)
            return report

        details = {key: CheckResult() for key in self.rules.check_keys()}

        for owned in self.rules.owned_models:
            rows = outcomes[f"orphans:{owned.model}"].value
            result = details[owned.check_key]
            result.count += len(rows)
            result.sample_ids = self._sample(result.sample_ids + self._ids(rows))

        invalid = outcomes[INVALID_ACCOUNTS].value
        details[INVALID_ACCOUNTS] = CheckResult(len(invalid), self._sample(self._ids(invalid)))

        missing_links = outcomes[INCONSISTENT_RELATIONSHIPS].value
        details[INCONSISTENT_RELATIONSHIPS] = CheckResult(
            len(missing_links),
            self._sample([[link.owner_id, link.target_id] for link in missing_links])
        )

        groups = outcomes[DUPLICATE_RECORDS].value
        details[DUPLICATE_RECORDS] = CheckResult(
            len(groups), self._sample([self._ids(group) for group in groups])
        )

        issues = {key: result.count for key, result in details.items()}
        has_issues = any(count > 0 for count in issues.values())

        report = IntegrityReport(
            status=IntegrityStatus.ISSUES if has_issues else IntegrityStatus.VALID,
            timestamp=format_timestamp(utc_now()),
            issues=issues,
            details=details,
            duration_seconds=duration
        )

        if has_issues:
            found = ', '.join(f"{key}={count}" for key, count in issues.items() if count)
            logger.warning(f"Data integrity issues found: {found}")
        else:
            logger.info("Data integrity check passed")

        await self._log_check(report)
        return report

    async def _log_check(self, report: IntegrityReport):
        if self.operation_logger is None:
            return
        await self.operation_logger.log_operation(
            'integrityCheck', self.rules.account_model, self.actor_id,
            {
                'status': report.status.value,
                'issues': report.issues,
                'error': report.error,
                'queryTimeMs': round(report.duration_seconds * 1000, 3)
            }
        )
