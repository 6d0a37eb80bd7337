"""
EdPsych Schema Validator
Diffs the live model inventory against an expected manifest.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from edpsych_maintenance.config import resolve_config
from edpsych_maintenance.operation_logger import format_timestamp, utc_now
from edpsych_maintenance.repository import Repository

logger = logging.getLogger('edpsych.schema_validator')


class SchemaStatus(Enum):
    VALID = "valid"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class ModelExpectation:
    name: str
    required_fields: List[str] = field(default_factory=list)

    @classmethod
    def from_config(cls, entry: Union[str, Dict[str, Any]]) -> 'ModelExpectation':
        if isinstance(entry, str):
            return cls(entry)
        return cls(entry['name'], list(entry.get('required_fields', [])))


@dataclass
class ModelIssue:
    model: str
    issues: List[str]


@dataclass
class SchemaReport:
    status: SchemaStatus
    message: str
    timestamp: str
    missing_models: List[str] = field(default_factory=list)
    extra_models: List[str] = field(default_factory=list)
    model_issues: List[ModelIssue] = field(default_factory=list)
    error: Optional[str] = None


class SchemaValidator:
    """Diagnostic only; never changes the store."""

    def __init__(self, repository: Repository, config: Optional[Dict[str, Any]] = None):
        self.repository = repository
        self.config = resolve_config(config)
        schema_config = self.config.get('schema', {})
        self.expected_models = schema_config.get('expected_models', [])
        self.ignore_models = set(schema_config.get('ignore_models', []))
        self.check_timeout = self.config.get('timeouts', {}).get('check_seconds', 30)

    def default_manifest(self) -> List[ModelExpectation]:
        return [ModelExpectation.from_config(entry) for entry in self.expected_models]

    async def validate_schema(self, manifest: Optional[List[ModelExpectation]] = None) -> SchemaReport:
        logger.info("Starting schema validation")
        manifest = manifest if manifest is not None else self.default_manifest()
        loop = asyncio.get_running_loop()

        try:
            inventory = await asyncio.wait_for(
                loop.run_in_executor(None, self.repository.introspect), timeout=self.check_timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Schema introspection timed out after {self.check_timeout}s")
            return SchemaReport(
                status=SchemaStatus.ERROR,
                message='Database schema validation failed',
                timestamp=format_timestamp(utc_now()),
                error=f"Introspection timed out after {self.check_timeout}s"
            )
        except Exception as e:
            logger.error(f"Database schema validation failed: {e}")
            return SchemaReport(
                status=SchemaStatus.ERROR,
                message='Database schema validation failed',
                timestamp=format_timestamp(utc_now()),
                error=str(e)
            )

        expected_names = [expectation.name for expectation in manifest]
        missing_models = [name for name in expected_names if name not in inventory]
        extra_models = [
            name for name in inventory
            if name not in expected_names and name not in self.ignore_models
        ]

        model_issues = []
        for expectation in manifest:
            fields = inventory.get(expectation.name)
            if fields is None:
                continue
            issues = [
                f"Missing required field: {required}"
                for required in expectation.required_fields
                if required not in fields
            ]
            if issues:
                model_issues.append(ModelIssue(expectation.name, issues))

        if missing_models:
            status = SchemaStatus.ERROR
            message = 'Database schema is missing expected models'
            logger.error(f"Missing models: {', '.join(missing_models)}")
        elif extra_models or model_issues:
            status = SchemaStatus.WARNING
            message = 'Database schema has warnings'
            logger.warning(f"Schema warnings: {len(extra_models)} extra model(s), "
                           f"{len(model_issues)} model(s) with missing fields")
        else:
            status = SchemaStatus.VALID
            message = 'Database schema is valid'
            logger.info("Database schema is valid")

        return SchemaReport(
            status=status,
            message=message,
            timestamp=format_timestamp(utc_now()),
            missing_models=missing_models,
            extra_models=extra_models,
            model_issues=model_issues
        )
