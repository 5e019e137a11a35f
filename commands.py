"""
Chat command interpreter.

Turns a free-text chat message into one of a small set of Redmine
operations, runs it, and answers with a reply meant for a human.

Recognised messages (keywords are matched anywhere in the text, in this
order, first match wins):

    "get" / "show"        -> list the requester's issues
    "close" / "reject"    -> close the issue named by the first number
    "ready to test"       -> mark the issue named by the last number as
                             Ready to Test and assign it to the last name
                             following the word "assign"
"""

import logging
import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence, Tuple

from directory import DirectoryCache
from models import IssueStatus
from redmine_api import RedmineClient

logger = logging.getLogger(__name__)

LOOKBACK_YEARS = 2

NOT_INITIALIZED_REPLY = "RedmineApiClient has not been initialized."
DIRECTORY_UNAVAILABLE_REPLY = "Unable to get users from Redmine."
ISSUE_ID_NOT_PARSED_REPLY = "I couldn't figure out what the issue ID was, so I had to give up."
ASSIGNEE_NOT_FOUND_REPLY = "I couldn't figure out who to assign the issue to, so I had to give up."
UNRECOGNIZED_REPLY = "Hi {user}, I didn't understand your instructions"
SNAG_REPLY = "Well crud, we hit a snag: {error}"

_INTEGER_TOKEN = re.compile(r"[+-]?\d+")


class Intent(str, Enum):
    LIST_ISSUES = "list_issues"
    CLOSE_ISSUE = "close_issue"
    READY_TO_TEST = "ready_to_test"


@dataclass(frozen=True)
class IntentMatcher:
    intent: Intent
    keywords: Tuple[str, ...]

    def matches(self, message: str) -> bool:
        # Case-sensitive: "Close 42" is not a close command
        return any(keyword in message for keyword in self.keywords)


# Order is the tie-break for messages containing several keywords
INTENT_MATCHERS: Tuple[IntentMatcher, ...] = (
    IntentMatcher(Intent.LIST_ISSUES, ("get", "show")),
    IntentMatcher(Intent.CLOSE_ISSUE, ("close", "reject")),
    IntentMatcher(Intent.READY_TO_TEST, ("ready to test",)),
)


@dataclass
class ParsedCommand:
    intent: Intent
    user_name: str
    issue_id: Optional[int] = None
    assignee_id: Optional[int] = None


def classify_intent(message: str, matchers: Sequence[IntentMatcher] = INTENT_MATCHERS) -> Optional[Intent]:
    for matcher in matchers:
        if matcher.matches(message):
            return matcher.intent
    return None


def tokenize(message: str) -> list:
    return message.split()


def parse_issue_id(token: str) -> Optional[int]:
    if _INTEGER_TOKEN.fullmatch(token):
        return int(token)
    return None


def first_issue_id(tokens: Iterable[str]) -> Optional[int]:
    """The first token that parses as an integer."""
    for token in tokens:
        issue_id = parse_issue_id(token)
        if issue_id is not None:
            return issue_id
    return None


def last_issue_id(tokens: Iterable[str]) -> Optional[int]:
    """The last token that parses as an integer."""
    found = None
    for token in tokens:
        issue_id = parse_issue_id(token)
        if issue_id is not None:
            found = issue_id
    return found


def find_assignee(tokens: Iterable[str], directory: DirectoryCache) -> Optional[int]:
    """
    Resolve the assignee named after the literal token "assign".

    Every token after "assign" is looked up in the directory and later
    matches overwrite earlier ones, so "assign Jane or Bob" picks Bob.
    """
    assignee_id = None
    found_assign = False
    for token in tokens:
        if token == "assign":
            found_assign = True
            continue
        if found_assign:
            user_id = directory.resolve(token)
            if user_id is not None:
                assignee_id = user_id
    return assignee_id


def parse_command(message: str, user_name: str, directory: DirectoryCache) -> Optional[ParsedCommand]:
    """
    Classify ``message`` and pull out the operands its intent needs.

    Returns None for a message that matches no intent. Operands that could
    not be found are left as None for the caller to report.
    """
    intent = classify_intent(message)
    if intent is None:
        return None

    command = ParsedCommand(intent=intent, user_name=user_name)
    tokens = tokenize(message)
    if intent is Intent.CLOSE_ISSUE:
        command.issue_id = first_issue_id(tokens)
    elif intent is Intent.READY_TO_TEST:
        command.issue_id = last_issue_id(tokens)
        command.assignee_id = find_assignee(tokens, directory)
    return command


def lookback_start(today: date, years: int = LOOKBACK_YEARS) -> date:
    try:
        return today.replace(year=today.year - years)
    except ValueError:
        # Feb 29 rolls forward to Mar 1
        return date(today.year - years, 3, 1)


class CommandInterpreter:
    """
    Entry point for the chat layer.

    ``handle`` always returns a reply string. Every failure, including an
    unexpected exception, is logged and turned into text for the user.
    """

    def __init__(
        self,
        client: RedmineClient,
        directory: Optional[DirectoryCache] = None,
        bot_name: str = "SSIbot",
        verify_updates: bool = False,
        today: Callable[[], date] = date.today,
    ):
        self.client = client
        self.directory = directory if directory is not None else DirectoryCache(client)
        self.bot_name = bot_name
        self.verify_updates = verify_updates
        self.today = today

    def handle(self, message: str, user_name: str) -> str:
        try:
            return self._handle(message, user_name)
        except Exception as e:
            logger.critical(f"handle: Unexpected error for {message!r}: {type(e).__name__}: {str(e)}", exc_info=True)
            return SNAG_REPLY.format(error=str(e))

    def _handle(self, message: str, user_name: str) -> str:
        if not self.client.is_configured():
            return NOT_INITIALIZED_REPLY

        loaded = self.directory.ensure_loaded()
        if loaded.get('status') != 'OK':
            return DIRECTORY_UNAVAILABLE_REPLY

        command = parse_command(message, user_name, self.directory)
        if command is None:
            logger.info(f"handle: No intent recognised in {message!r}")
            return UNRECOGNIZED_REPLY.format(user=user_name)

        logger.info(f"handle: {command.intent.value} requested by {user_name}")
        if command.intent is Intent.LIST_ISSUES:
            return self.list_issues(command)
        if command.intent is Intent.CLOSE_ISSUE:
            return self.close_issue(command, message)
        return self.mark_ready_to_test(command, message)

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    def list_issues(self, command: ParsedCommand) -> str:
        user_id = self.directory.resolve(command.user_name)
        if user_id is None:
            logger.warning(f"list_issues: Couldn't find a user record for {command.user_name!r}")
            return SNAG_REPLY.format(error=f'Couldn\'t find a user record for "{command.user_name}".')

        since = lookback_start(self.today()).isoformat()
        response = self.client.get_issues(user_id, since)
        if response.get('status') != 'OK':
            return SNAG_REPLY.format(error=response.get('error', 'unknown error'))

        # assigned_to_id on the query is not reliable; check every issue
        issues = [issue for issue in response['issues'].issues if issue.assignee_id == user_id]
        dropped = len(response['issues'].issues) - len(issues)
        if dropped:
            logger.warning(f"list_issues: Dropped {dropped} issues not assigned to user_id={user_id}")

        lines = [f"I found {len(issues)} open issues assigned to you, {command.user_name}:"]
        for issue in issues:
            project_name = issue.project.name if issue.project else ""
            lines.append(
                f"{project_name} <{self.client.issue_url(issue.id)}|Issue #{issue.id}> - {issue.subject}"
            )
        return "\n".join(lines) + "\n"

    def close_issue(self, command: ParsedCommand, message: str = "") -> str:
        if command.issue_id is None:
            logger.warning(f"close_issue: Unable to determine issue ID from {message!r}")
            return ISSUE_ID_NOT_PARSED_REPLY

        issue_id = command.issue_id
        logger.info(f"close_issue: Issue #{issue_id} is to be closed")
        response = self.client.update_issue(
            issue_id,
            IssueStatus.CLOSED,
            notes=f"Closed by {self.bot_name} on behalf of {command.user_name}.",
        )
        if response.get('status') != 'OK':
            return f"I didn't get a response from Redmine when closing issue #{issue_id}, {response.get('error')}"

        mismatch = self._verify(issue_id, IssueStatus.CLOSED)
        if mismatch:
            return mismatch

        logger.info(f"close_issue: Closed issue #{issue_id}")
        return f"Alrighty, I've closed <{self.client.issue_url(issue_id)}|Issue #{issue_id}>."

    def mark_ready_to_test(self, command: ParsedCommand, message: str = "") -> str:
        if command.issue_id is None:
            logger.warning(f"mark_ready_to_test: Unable to determine issue ID from {message!r}")
            return ISSUE_ID_NOT_PARSED_REPLY
        if command.assignee_id is None:
            logger.warning(f"mark_ready_to_test: Unable to determine new assignee from {message!r}")
            return ASSIGNEE_NOT_FOUND_REPLY

        issue_id = command.issue_id
        logger.info(
            f"mark_ready_to_test: Marking issue #{issue_id} ready to test, assigning user_id={command.assignee_id}"
        )
        response = self.client.update_issue(
            issue_id,
            IssueStatus.READY_TO_TEST,
            notes=f"Marked Ready to Test by {self.bot_name} on behalf of {command.user_name}.",
            assigned_to_id=command.assignee_id,
        )
        if response.get('status') != 'OK':
            return f"I failed while trying to get a response: {response.get('error')}"

        mismatch = self._verify(issue_id, IssueStatus.READY_TO_TEST, command.assignee_id)
        if mismatch:
            return mismatch

        return f"Alright, I've marked <{self.client.issue_url(issue_id)}|Issue #{issue_id}> as ready to test."

    def _verify(self, issue_id: int, status: IssueStatus, assignee_id: Optional[int] = None) -> Optional[str]:
        """
        Read the issue back and compare it with what was written.

        Only runs when ``verify_updates`` is on. Returns a reply describing
        the mismatch, or None when the issue looks right.
        """
        if not self.verify_updates:
            return None

        response = self.client.get_issue(issue_id)
        if response.get('status') != 'OK':
            return f"I updated Issue #{issue_id} but couldn't read it back: {response.get('error')}"

        issue = response['issue']
        status_ok = issue.status is not None and issue.status.id == int(status)
        assignee_ok = assignee_id is None or issue.assignee_id == assignee_id
        if status_ok and assignee_ok:
            return None

        logger.error(
            f"_verify: Issue #{issue_id} has status={issue.status} assignee={issue.assignee_id} "
            f"after update (wanted status={int(status)} assignee={assignee_id})"
        )
        return (
            f"Redmine accepted the update, but <{self.client.issue_url(issue_id)}|Issue #{issue_id}> "
            f"doesn't show the change."
        )
