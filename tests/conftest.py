"""Shared fixtures: a fake Redmine client and a small user directory.

The project root is added to sys.path so the top-level modules import even
when the project has not been installed.
"""

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from models import RedmineIssue, RedmineIssuesCollection, RedmineUser, RedmineUsersCollection  # noqa: E402
from redmine_api import RedmineClient  # noqa: E402

BASE_URL = "https://redmine.example.com"


def make_user(user_id, firstname, lastname):
    return RedmineUser(
        id=user_id,
        login=f"{firstname}.{lastname}".lower(),
        firstname=firstname,
        lastname=lastname,
        mail=f"{firstname.lower()}@example.com",
        created_on="2019-01-01T00:00:00Z",
        last_login_on="2024-01-01T00:00:00Z",
    )


def make_issue(issue_id, assignee_id, subject="Something broke", project="Payroll", status_id=2):
    return RedmineIssue.model_validate({
        "id": issue_id,
        "project": {"id": 1, "name": project},
        "tracker": {"id": 1, "name": "Bug"},
        "status": {"id": status_id, "name": "Assigned"},
        "priority": {"id": 2, "name": "Normal"},
        "author": {"id": 3, "name": "Alice Jones"},
        "assigned_to": {"id": assignee_id, "name": "someone"} if assignee_id else None,
        "subject": subject,
        "done_ratio": 0,
        "custom_fields": [{"id": 7, "name": "Customer", "value": "ACME"}],
    })


class FakeClient(RedmineClient):
    """RedmineClient that answers from memory and records every call."""

    def __init__(self, users=None, issues=None, fail_users=False, fail_updates=False, api_key="secret-key-123"):
        super().__init__(BASE_URL, api_key)
        self.users = list(users or [])
        self.issues = list(issues or [])
        self.fail_users = fail_users
        self.fail_updates = fail_updates
        self.user_fetches = 0
        self.issue_queries = []
        self.updates = []
        self.stored = {}

    def get_users(self):
        self.user_fetches += 1
        if self.fail_users:
            return {'status': 'failed', 'error': 'connection refused', 'error_type': 'ConnectionError'}
        collection = RedmineUsersCollection(users=tuple(self.users), total_count=len(self.users), limit=100)
        return {'status': 'OK', 'users': collection}

    def get_issues(self, assigned_to_id, created_since):
        self.issue_queries.append((assigned_to_id, created_since))
        collection = RedmineIssuesCollection(issues=tuple(self.issues), total_count=len(self.issues))
        return {'status': 'OK', 'issues': collection}

    def get_issue(self, issue_id):
        return {'status': 'OK', 'issue': self.stored[issue_id]}

    def update_issue(self, issue_id, status_id, notes, assigned_to_id=None):
        if self.fail_updates:
            return {'status': 'failed', 'error': 'timed out', 'error_type': 'Timeout'}
        self.updates.append({
            'issue_id': issue_id,
            'status_id': int(status_id),
            'notes': notes,
            'assigned_to_id': assigned_to_id,
        })
        return {'status': 'OK'}


@pytest.fixture
def users():
    return [
        make_user(1, "Jane", "Doe"),
        make_user(2, "Bob", "Smith"),
        make_user(3, "Alice", "Jones"),
        make_user(4, "Jane", "Roe"),
    ]


@pytest.fixture
def fake_client(users):
    return FakeClient(users=users)
