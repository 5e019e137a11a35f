from conftest import make_issue
from models import CustomFieldName, IssueStatus, RedmineIssue, RedmineUser


def test_issue_decodes_full_payload():
    issue = RedmineIssue.model_validate({
        "id": 1234,
        "project": {"id": 1, "name": "Payroll"},
        "tracker": {"id": 1, "name": "Bug"},
        "status": {"id": 3, "name": "Ready to Test"},
        "priority": {"id": 2, "name": "Normal"},
        "author": {"id": 5, "name": "Alice Jones"},
        "assigned_to": {"id": 2, "name": "Bob Smith"},
        "subject": "Totals are off",
        "description": "See attached",
        "start_date": "2024-03-01",
        "done_ratio": 40,
        "created_on": "2024-03-01T10:00:00Z",
        "updated_on": "2024-03-02T10:00:00Z",
        "category": {"id": 4, "name": "Reports"},
        "custom_fields": [
            {"id": 1, "name": "Customer", "value": "ACME"},
            {"id": 2, "name": "Emp No", "value": "0042"},
        ],
        "fixed_version": {"id": 8, "name": "11.2"},
        "due_date": None,
        "is_private": False,
    })
    assert issue.assignee_id == 2
    assert issue.status.id == IssueStatus.READY_TO_TEST
    assert issue.custom_field(CustomFieldName.EMP_NO).value == "0042"
    assert issue.custom_field(CustomFieldName.CUSTOMER).name is CustomFieldName.CUSTOMER
    assert issue.fixed_version.name == "11.2"


def test_issue_tolerates_missing_optional_entities():
    issue = RedmineIssue.model_validate({"id": 7, "subject": "Unassigned"})
    assert issue.assignee_id is None
    assert issue.category is None
    assert issue.custom_fields == ()


def test_unknown_custom_field_name_is_kept_as_text():
    issue = RedmineIssue.model_validate({
        "id": 7,
        "custom_fields": [{"id": 99, "name": "Severity", "value": "High"}],
    })
    assert issue.custom_field("Severity").value == "High"


def test_custom_field_lookup_missing():
    assert make_issue(1, 2).custom_field(CustomFieldName.RECEIVED) is None


def test_user_matches_name_either_way_round():
    user = RedmineUser(id=1, firstname="Jane", lastname="Doe")
    assert user.matches_name("jane")
    assert user.matches_name("DOE")
    assert not user.matches_name("Jan")
