"""
EdPsych Maintenance Configuration
YAML configuration loading with maintenance defaults.
"""

import copy
import logging
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger('edpsych.config')

DEFAULT_CONFIG_PATH = "./config/maintenance.yaml"


def get_default_config() -> Dict[str, Any]:
    """Return the default maintenance configuration."""
    return {
        'database': {'path': './data/edpsych.db'},
        'logging': {
            'log_dir': './logs',
            'archive_dir': './logs/archive',
            'file': './logs/maintenance.log',
            'level': 'INFO',
            'retention_days': 365,
            'compression_age_days': 7
        },
        'health': {
            'statistics_models': {
                'user_count': 'User',
                'assessment_count': 'Assessment',
                'resource_count': 'Resource',
                'curriculum_plan_count': 'CurriculumPlan',
                'semh_assessment_count': 'SemhAssessment',
                'biofeedback_session_count': 'BiofeedbackSession',
                'emotional_pattern_record_count': 'EmotionalPatternRecord',
                'communication_count': 'ParentTeacherCommunication'
            },
            'slow_pass_threshold_ms': 1000,
            'slow_query_threshold_ms': 250
        },
        'schema': {
            'expected_models': [
                {'name': 'User', 'required_fields': ['email', 'role']},
                {'name': 'Profile', 'required_fields': ['firstName']},
                {'name': 'Assessment'},
                {'name': 'Question'},
                {'name': 'AssessmentResult'},
                {'name': 'Answer'},
                {'name': 'Resource'},
                {'name': 'CurriculumPlan'},
                {'name': 'Unit'},
                {'name': 'Lesson'},
                {'name': 'SemhAssessment'},
                {'name': 'SemhArea'},
                {'name': 'BiofeedbackSession'},
                {'name': 'EmotionalPatternRecord'},
                {'name': 'EmotionalPattern'},
                {'name': 'LearningPreferences'},
                {'name': 'EmotionalProfile'},
                {'name': 'ParentTeacherCommunication'}
            ],
            'ignore_models': ['sqlite_sequence', '_prisma_migrations']
        },
        'integrity': {
            'account_model': 'User',
            'id_field': 'id',
            'email_field': 'email',
            'name_field': 'name',
            'created_field': 'createdAt',
            'sample_size': 10,
            'owned_models': [
                {
                    'model': 'Profile',
                    'references': [{'field': 'userId', 'target': 'User'}],
                    'check_key': 'orphaned_profiles',
                    'repair_key': 'deleted_orphaned_profiles',
                    'on_account_removal': 'delete'
                },
                {
                    'model': 'AssessmentResult',
                    'references': [
                        {'field': 'assessmentId', 'target': 'Assessment'},
                        {'field': 'studentId', 'target': 'User'}
                    ],
                    'check_key': 'orphaned_assessment_results',
                    'repair_key': 'deleted_orphaned_results',
                    'on_account_removal': 'reassign'
                },
                {
                    'model': 'UserParentLink',
                    'references': [
                        {'field': 'studentId', 'target': 'User'},
                        {'field': 'parentId', 'target': 'User'}
                    ],
                    'check_key': 'orphaned_relationship_links',
                    'repair_key': 'deleted_orphaned_links',
                    'on_account_removal': 'delete'
                },
                {
                    'model': 'UserChildLink',
                    'references': [
                        {'field': 'parentId', 'target': 'User'},
                        {'field': 'childId', 'target': 'User'}
                    ],
                    'check_key': 'orphaned_relationship_links',
                    'repair_key': 'deleted_orphaned_links',
                    'on_account_removal': 'delete'
                }
            ],
            'relationship': {
                'parent_links': {'model': 'UserParentLink', 'owner_field': 'studentId', 'target_field': 'parentId'},
                'child_links': {'model': 'UserChildLink', 'owner_field': 'parentId', 'target_field': 'childId'}
            }
        },
        'repair': {
            'auto_repair': False,
            'strict_safety': True,
            'snapshot_mode': 'export',
            'placeholder_domain': 'placeholder.invalid',
            'lock_file': './backups/.repair.lock',
            'lock_stale_seconds': 3600,
            'actor_id': 'system:maintenance'
        },
        'backup': {
            'backup_dir': './backups',
            'enable_compression': True,
            'enable_verification': True,
            'retention_days': 30,
            'archive_dir': './backups/archive'
        },
        'timeouts': {
            'check_seconds': 30,
            'repair_step_seconds': 300
        },
        'alerts': {
            'webhook_url': None,
            'timeout_seconds': 10
        },
        'reports': {'report_dir': './reports'}
    }


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str] = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load configuration from YAML, falling back to defaults."""
    defaults = get_default_config()
    if not config_path:
        return defaults

    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}
            logger.info(f"Configuration loaded from {config_path}")
    except FileNotFoundError:
        logger.warning(f"Config file {config_path} not found, using defaults")
        return defaults
    except Exception as e:
        logger.error(f"Error loading config: {e}")
        return defaults

    if not isinstance(config, dict):
        logger.error(f"Config file {config_path} does not contain a mapping, using defaults")
        return defaults

    return _merge(defaults, config)


def resolve_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Merge a partial in-memory configuration over the defaults."""
    if config is None:
        return get_default_config()
    return _merge(get_default_config(), config)
