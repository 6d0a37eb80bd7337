"""
EdPsych Maintenance Scheduler
Declarative table of recurring maintenance work per cadence.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class Cadence(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


@dataclass
class ScheduledTask:
    name: str
    task_type: str


@dataclass
class CadencePolicy:
    cadence: Cadence
    time: str
    tasks: List[ScheduledTask]
    cron: str
    day: Optional[str] = None
    day_of_month: Optional[int] = None
    months: List[int] = field(default_factory=list)


@dataclass
class MaintenanceSchedule:
    daily: CadencePolicy
    weekly: CadencePolicy
    monthly: CadencePolicy
    quarterly: CadencePolicy

    def policy(self, cadence: Cadence) -> CadencePolicy:
        return getattr(self, cadence.value)


def _cron(time: str, day_of_month: str = '*', months: str = '*', weekday: str = '*') -> str:
    hour, minute = time.split(':')
    return f"{int(minute)} {int(hour)} {day_of_month} {months} {weekday}"


class MaintenanceScheduler:
    """Returns the maintenance schedule; an external cron does the triggering."""

    def get_schedule(self) -> MaintenanceSchedule:
        return MaintenanceSchedule(
            daily=CadencePolicy(
                cadence=Cadence.DAILY,
                time='02:00',
                cron=_cron('02:00'),
                tasks=[
                    ScheduledTask('Backup database', 'backup'),
                    ScheduledTask('Check database health', 'health_check'),
                    ScheduledTask('Log rotation', 'log_rotation'),
                ]
            ),
            weekly=CadencePolicy(
                cadence=Cadence.WEEKLY,
                time='03:00',
                day='Sunday',
                cron=_cron('03:00', weekday='0'),
                tasks=[
                    ScheduledTask('VACUUM Analyse', 'vacuum_analyze'),
                    ScheduledTask('Check data integrity', 'integrity_check'),
                    ScheduledTask('Collect usage statistics', 'usage_statistics'),
                ]
            ),
            monthly=CadencePolicy(
                cadence=Cadence.MONTHLY,
                time='04:00',
                day_of_month=1,
                cron=_cron('04:00', day_of_month='1'),
                tasks=[
                    ScheduledTask('Full database optimization', 'full_optimization'),
                    ScheduledTask('Schema validation', 'schema_validation'),
                    ScheduledTask('Performance analysis', 'performance_analysis'),
                    ScheduledTask('Storage cleanup', 'storage_cleanup'),
                ]
            ),
            quarterly=CadencePolicy(
                cadence=Cadence.QUARTERLY,
                time='05:00',
                day_of_month=15,
                months=[1, 4, 7, 10],
                cron=_cron('05:00', day_of_month='15', months='1,4,7,10'),
                tasks=[
                    ScheduledTask('Comprehensive database audit', 'comprehensive_audit'),
                    ScheduledTask('Long-term backup archiving', 'archival'),
                    ScheduledTask('Index optimization', 'index_optimization'),
                    ScheduledTask('Query optimization review', 'query_review'),
                ]
            )
        )

    def tasks_for(self, cadence) -> List[ScheduledTask]:
        return self.get_schedule().policy(Cadence(cadence)).tasks

    def crontab_entries(self, command: str = 'edpsych-maintenance') -> List[str]:
        """One crontab line per cadence, invoking ``command --mode <cadence>``."""
        schedule = self.get_schedule()
        return [
            f"{schedule.policy(cadence).cron} {command} --mode {cadence.value}"
            for cadence in Cadence
        ]

    def as_dict(self) -> Dict[str, Dict]:
        schedule = self.get_schedule()
        result = {}
        for cadence in Cadence:
            policy = schedule.policy(cadence)
            entry = {'time': policy.time, 'cron': policy.cron, 'tasks': [task.name for task in policy.tasks]}
            if policy.day:
                entry['day'] = policy.day
            if policy.day_of_month:
                entry['day_of_month'] = policy.day_of_month
            if policy.months:
                entry['months'] = policy.months
            result[cadence.value] = entry
        return result
