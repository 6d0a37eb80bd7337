"""
EdPsych Database Health Checker
Connectivity probe, entity statistics, integrity sub-probes and latency,
aggregated into a single health verdict.
"""

import asyncio
import logging
import statistics
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from edpsych_maintenance.config import resolve_config
from edpsych_maintenance.integrity_checker import INVALID_ACCOUNTS, IntegrityChecker
from edpsych_maintenance.operation_logger import OperationLogger, format_timestamp, utc_now
from edpsych_maintenance.probes import run_probes
from edpsych_maintenance.repository import Repository, RepositoryUnavailable

logger = logging.getLogger('edpsych.health_checker')


class HealthStatus(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    UNHEALTHY = "unhealthy"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class HealthIssue:
    type: str
    severity: Severity
    message: str
    details: Optional[Dict[str, Any]] = None


@dataclass
class PerformanceMetrics:
    query_time_ms: float
    average_response_time_ms: float
    slow_queries: int


@dataclass
class HealthReport:
    status: HealthStatus
    timestamp: str
    connection_status: bool
    statistics: Optional[Dict[str, Optional[int]]] = None
    performance: Optional[PerformanceMetrics] = None
    issues: List[HealthIssue] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    error: Optional[str] = None


def aggregate_status(issues: List[HealthIssue]) -> HealthStatus:
    """Critical anywhere means unhealthy; high or medium means warning."""
    if any(issue.severity == Severity.CRITICAL for issue in issues):
        return HealthStatus.UNHEALTHY
    if any(issue.severity in (Severity.HIGH, Severity.MEDIUM) for issue in issues):
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


class HealthChecker:
    """Read-only health pass over the injected repository."""

    def __init__(self, repository: Repository, config: Optional[Dict[str, Any]] = None,
                 integrity_checker: Optional[IntegrityChecker] = None,
                 operation_logger: Optional[OperationLogger] = None):
        self.repository = repository
        self.config = resolve_config(config)
        self.integrity_checker = integrity_checker or IntegrityChecker(repository, self.config)
        self.operation_logger = operation_logger

        health_config = self.config.get('health', {})
        self.statistics_models: Dict[str, str] = health_config.get('statistics_models', {})
        self.slow_pass_threshold_ms = health_config.get('slow_pass_threshold_ms', 1000)
        self.slow_query_threshold_ms = health_config.get('slow_query_threshold_ms', 250)
        self.check_timeout = self.config.get('timeouts', {}).get('check_seconds', 30)
        self.actor_id = self.config.get('repair', {}).get('actor_id', 'system:maintenance')

    def _unhealthy(self, error: str, connection_status: bool = False) -> HealthReport:
        return HealthReport(
            status=HealthStatus.UNHEALTHY,
            timestamp=format_timestamp(utc_now()),
            connection_status=connection_status,
            error=error
        )

    async def check_health(self) -> HealthReport:
        """Probe connectivity, then gather statistics and integrity findings."""
        logger.info("Starting database health check")
        started = time.monotonic()
        loop = asyncio.get_running_loop()

        try:
            await asyncio.wait_for(
                loop.run_in_executor(None, self.repository.probe), timeout=self.check_timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Database connectivity probe timed out after {self.check_timeout}s")
            return self._unhealthy(f"Connectivity probe timed out after {self.check_timeout}s")
        except Exception as e:
            logger.error(f"Database connectivity probe failed: {e}")
            return self._unhealthy(str(e))

        rules = self.integrity_checker.rules
        probes = {
            f"count:{key}": (lambda model=model: self.repository.count(model))
            for key, model in self.statistics_models.items()
        }
        probes['account_model'] = lambda: self.repository.has_model(rules.account_model)
        probes.update(self.integrity_checker.orphan_probes(self.repository))
        probes.update(self.integrity_checker.validity_probes(self.repository))

        outcomes = await run_probes(probes, timeout=self.check_timeout)

        failed = [outcome for outcome in outcomes.values() if outcome.error is not None]
        if failed:
            outcome = failed[0]
            logger.error(f"Database health check failed during {outcome.name}: {outcome.error}")
            return self._unhealthy(
                f"{outcome.name}: {outcome.error}",
                connection_status=not isinstance(outcome.error, RepositoryUnavailable)
            )

        issues: List[HealthIssue] = []
        recommendations: List[str] = []

        for outcome in outcomes.values():
            if outcome.timed_out:
                issues.append(HealthIssue(
                    type='performance',
                    severity=Severity.HIGH,
                    message=f"Probe {outcome.name} exceeded {self.check_timeout}s and was abandoned",
                    details={'probe': outcome.name, 'timeout_seconds': self.check_timeout}
                ))

        statistics_block = {
            key: outcomes[f"count:{key}"].value for key in self.statistics_models
        }

        account_probe = outcomes['account_model']
        if account_probe.succeeded and not account_probe.value:
            issues.append(HealthIssue(
                type='schema',
                severity=Severity.CRITICAL,
                message=f"Account model {rules.account_model} is missing from the store",
                details={'model': rules.account_model}
            ))
            recommendations.append('Run schema validation and restore the missing account model')

        for owned in rules.owned_models:
            outcome = outcomes[f"orphans:{owned.model}"]
            if not outcome.succeeded or not outcome.value:
                continue
            count = len(outcome.value)
            issues.append(HealthIssue(
                type='data_integrity',
                severity=Severity.MEDIUM,
                message=f"Found {count} orphaned {owned.model} records",
                details={'model': owned.model, 'count': count}
            ))
            recommendations.append(f"Run data integrity repair to clean up orphaned {owned.model} records")

        invalid = outcomes[INVALID_ACCOUNTS]
        if invalid.succeeded and invalid.value:
            count = len(invalid.value)
            issues.append(HealthIssue(
                type='data_quality',
                severity=Severity.HIGH,
                message=f"Found {count} users with invalid data",
                details={'count': count}
            ))
            recommendations.append('Run data integrity repair to fix invalid user records')

        query_time_ms = (time.monotonic() - started) * 1000
        durations = [outcome.duration_ms for outcome in outcomes.values()]
        slow_queries = sum(1 for duration in durations if duration > self.slow_query_threshold_ms)
        average_response_time_ms = statistics.fmean(durations) if durations else 0.0

        if query_time_ms > self.slow_pass_threshold_ms:
            issues.append(HealthIssue(
                type='performance',
                severity=Severity.MEDIUM,
                message='Database queries are taking longer than expected',
                details={'queryTimeMs': round(query_time_ms, 3)}
            ))
            recommendations.append('Run database optimization to improve query performance')

        status = aggregate_status(issues)
        report = HealthReport(
            status=status,
            timestamp=format_timestamp(utc_now()),
            connection_status=True,
            statistics=statistics_block,
            performance=PerformanceMetrics(
                query_time_ms=round(query_time_ms, 3),
                average_response_time_ms=round(average_response_time_ms, 3),
                slow_queries=slow_queries
            ),
            issues=issues,
            recommendations=recommendations
        )

        if status == HealthStatus.HEALTHY:
            logger.info(f"Database health check passed in {query_time_ms:.1f}ms")
        else:
            logger.warning(f"Database health check finished with status {status.value}: {len(issues)} issue(s)")

        if self.operation_logger is not None:
            await self.operation_logger.log_operation(
                'healthCheck', 'Database', self.actor_id,
                {'status': status.value, 'issues': len(issues), 'queryTimeMs': round(query_time_ms, 3)}
            )

        return report
