"""
Wire models for the Redmine REST API.

These pydantic models mirror the JSON payloads returned by /users.json and
/issues.json. Unknown keys are ignored so a Redmine upgrade that adds fields
does not break decoding.
"""

from enum import Enum, IntEnum
from typing import List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


# mysql> select * from issue_statuses;
# +----+---------------+-----------+----------+
# | id | name          | is_closed | position |
# +----+---------------+-----------+----------+
# |  1 | New           |         0 |        1 |
# |  2 | Assigned      |         0 |        2 |
# |  3 | Ready to Test |         0 |        4 |
# |  5 | Closed        |         1 |        5 |
# |  6 | Rejected      |         1 |        6 |
# |  7 | Feedback      |         0 |        3 |
# +----+---------------+-----------+----------+
class IssueStatus(IntEnum):
    NEW = 1
    ASSIGNED = 2
    READY_TO_TEST = 3
    CLOSED = 5
    REJECTED = 6
    FEEDBACK = 7


class CustomFieldName(str, Enum):
    """Custom fields configured on the tracker."""

    CALLER_OR_CONTACT_NAME = "Caller or Contact Name"  # The caller's or contact's name
    CUSTOM_WORK = "Custom Work"  # Whether this is custom work for the client
    CUSTOMER = "Customer"
    DB_NAME = "DB Name"  # Usually internal
    EC_LOCATION = "EC Location"  # Extra-curricular location
    EMP_NO = "Emp No"
    FILENAME = "Filename"  # Attachment filename
    PROGRAM_NAME = "Program Name"  # Progress procedure
    RECEIVED = "Received"  # How the issue was reported


class RedmineModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class RedmineUser(RedmineModel):
    id: int
    login: str = ""
    firstname: str = ""
    lastname: str = ""
    mail: str = ""
    created_on: Optional[str] = None
    last_login_on: Optional[str] = None

    def matches_name(self, name: str) -> bool:
        """True when ``name`` equals the first or last name, ignoring case."""
        wanted = name.casefold()
        return self.firstname.casefold() == wanted or self.lastname.casefold() == wanted


class RedmineUsersCollection(RedmineModel):
    users: Tuple[RedmineUser, ...] = ()
    total_count: int = 0
    offset: int = 0
    limit: int = 0


class RedmineProperty(RedmineModel):
    id: int
    name: str = ""


class RedmineCustomField(RedmineModel):
    id: int
    # Names outside the known set are kept as plain strings
    name: Union[CustomFieldName, str] = Field(union_mode="left_to_right")
    value: Optional[Union[str, List[str]]] = None


class RedmineIssue(RedmineModel):
    id: int
    project: Optional[RedmineProperty] = None
    tracker: Optional[RedmineProperty] = None
    status: Optional[RedmineProperty] = None
    priority: Optional[RedmineProperty] = None
    author: Optional[RedmineProperty] = None
    assigned_to: Optional[RedmineProperty] = None
    subject: str = ""
    description: Optional[str] = None
    start_date: Optional[str] = None
    done_ratio: int = 0
    created_on: Optional[str] = None
    updated_on: Optional[str] = None
    category: Optional[RedmineProperty] = None
    custom_fields: Tuple[RedmineCustomField, ...] = ()
    fixed_version: Optional[RedmineProperty] = None
    due_date: Optional[str] = None

    @property
    def assignee_id(self) -> Optional[int]:
        return self.assigned_to.id if self.assigned_to else None

    def custom_field(self, name: Union[CustomFieldName, str]) -> Optional[RedmineCustomField]:
        for field in self.custom_fields:
            if field.name == name:
                return field
        return None


class RedmineIssuesCollection(RedmineModel):
    issues: Tuple[RedmineIssue, ...] = ()
    total_count: int = 0
    offset: int = 0
    limit: int = 0
