import sqlite3
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from edpsych_maintenance.config import resolve_config
from edpsych_maintenance.repository import InMemoryRepository

STORE_MODELS = (
    'User', 'Profile', 'Assessment', 'AssessmentResult', 'UserParentLink', 'UserChildLink'
)


def clean_tables():
    """A consistent store: student 1 and parent 2 linked both ways."""
    return {
        'User': [
            {'id': 1, 'email': 'student@school.test', 'name': 'Sam Student', 'role': 'STUDENT',
             'createdAt': '2024-01-01T09:00:00Z'},
            {'id': 2, 'email': 'parent@home.test', 'name': 'Pat Parent', 'role': 'PARENT',
             'createdAt': '2024-01-02T09:00:00Z'},
        ],
        'Profile': [{'id': 1, 'userId': 1, 'firstName': 'Sam'}],
        'Assessment': [{'id': 10, 'title': 'Reading baseline'}],
        'AssessmentResult': [{'id': 100, 'assessmentId': 10, 'studentId': 1, 'score': 72}],
        'UserParentLink': [{'id': 1, 'studentId': 1, 'parentId': 2}],
        'UserChildLink': [{'id': 1, 'parentId': 2, 'childId': 1}],
    }


def dirty_tables():
    """Every kind of integrity issue at least once."""
    tables = clean_tables()
    tables['User'].extend([
        {'id': 3, 'email': '', 'name': 'No Email', 'role': 'STUDENT', 'createdAt': '2024-02-01T09:00:00Z'},
        {'id': 4, 'email': 'dup@school.test', 'name': 'First Dup', 'role': 'STUDENT',
         'createdAt': '2024-03-01T09:00:00Z'},
        {'id': 5, 'email': 'dup@school.test', 'name': 'Second Dup', 'role': 'STUDENT',
         'createdAt': '2024-03-05T09:00:00Z'},
        {'id': 6, 'email': 'lonely@home.test', 'name': 'Lonely Parent', 'role': 'PARENT',
         'createdAt': '2024-03-06T09:00:00Z'},
    ])
    tables['Profile'].extend([
        {'id': 2, 'userId': 99, 'firstName': 'Ghost'},
        {'id': 3, 'userId': 5, 'firstName': 'Second'},
    ])
    tables['AssessmentResult'].extend([
        {'id': 101, 'assessmentId': 999, 'studentId': 1, 'score': 10},
        {'id': 102, 'assessmentId': 10, 'studentId': 5, 'score': 55},
    ])
    tables['UserParentLink'].append({'id': 2, 'studentId': 4, 'parentId': 6})
    tables['UserChildLink'].append({'id': 2, 'parentId': 2, 'childId': 98})
    return tables


@pytest.fixture
def config(tmp_path):
    return resolve_config({
        'logging': {
            'log_dir': str(tmp_path / 'logs'),
            'archive_dir': str(tmp_path / 'logs' / 'archive'),
            'file': str(tmp_path / 'logs' / 'maintenance.log')
        },
        'backup': {
            'backup_dir': str(tmp_path / 'backups'),
            'archive_dir': str(tmp_path / 'backups' / 'archive')
        },
        'repair': {'lock_file': str(tmp_path / 'locks' / 'repair.lock')},
        'reports': {'report_dir': str(tmp_path / 'reports')},
        'timeouts': {'check_seconds': 5, 'repair_step_seconds': 30}
    })


@pytest.fixture
def clean_repository():
    return InMemoryRepository(clean_tables())


@pytest.fixture
def dirty_repository():
    return InMemoryRepository(dirty_tables())


@pytest.fixture
def sqlite_db(tmp_path):
    """A SQLite file holding the dirty store, without foreign key constraints."""
    db_path = tmp_path / 'edpsych.db'
    conn = sqlite3.connect(str(db_path))
    conn.executescript("""
        CREATE TABLE "User" (id INTEGER PRIMARY KEY, email TEXT, name TEXT, role TEXT, createdAt TEXT);
        CREATE TABLE "Profile" (id INTEGER PRIMARY KEY, userId INTEGER, firstName TEXT);
        CREATE TABLE "Assessment" (id INTEGER PRIMARY KEY, title TEXT);
        CREATE TABLE "AssessmentResult" (id INTEGER PRIMARY KEY, assessmentId INTEGER,
                                         studentId INTEGER, score INTEGER);
        CREATE TABLE "UserParentLink" (id INTEGER PRIMARY KEY AUTOINCREMENT, studentId INTEGER, parentId INTEGER);
        CREATE TABLE "UserChildLink" (id INTEGER PRIMARY KEY AUTOINCREMENT, parentId INTEGER, childId INTEGER);
        CREATE INDEX idx_profile_user ON "Profile" (userId);
    """)
    for model, rows in dirty_tables().items():
        for row in rows:
            columns = ', '.join(f'"{name}"' for name in row)
            placeholders = ', '.join('?' for _ in row)
            conn.execute(f'INSERT INTO "{model}" ({columns}) VALUES ({placeholders})', list(row.values()))
    conn.commit()
    conn.close()
    return str(db_path)
