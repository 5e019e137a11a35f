"""
Redmine REST API client.

Thin wrapper around ``requests`` that knows how to authenticate against a
Redmine instance, walk its offset/limit pagination, and decode the payloads
into the pydantic models from ``models``.

Error convention:
    No method raises for an expected failure. Every call returns a dict:
    successes carry ``"status": "OK"`` plus the decoded data, failures carry
    ``"status": "failed"`` with ``error`` and ``error_type`` fields so the
    caller can turn them into a chat reply.
"""

import logging
from typing import Any, Dict, Optional

import requests
from pydantic import ValidationError

from models import (
    IssueStatus,
    RedmineIssue,
    RedmineIssuesCollection,
    RedmineUsersCollection,
)

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "redmine-chatbot/0.1"

# Redmine caps the page size at 100 regardless of what is requested
PAGE_SIZE = 100


def _prepare_issue_payload(changes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build the minimal body for a partial issue update.

    Redmine reads ``status_id`` from the JSON body as a string code while
    ``assigned_to_id`` stays numeric. Fields that are None are dropped so
    only the fields being changed are sent.

    Args:
        changes: Issue fields to change (status_id, assigned_to_id, notes, ...)

    Returns:
        dict: ``{"issue": {...}}`` ready to be sent as JSON

    Example:
        _prepare_issue_payload({"status_id": IssueStatus.CLOSED, "notes": "Done"})
        # Returns: {"issue": {"status_id": "5", "notes": "Done"}}
    """
    issue = {}
    for key, value in changes.items():
        if value is None:
            continue
        elif key == 'status_id':
            issue[key] = str(int(value))
        elif key.endswith('_id'):
            issue[key] = int(value)
        else:
            issue[key] = value

    return {'issue': issue}


def _format_error(error: str, error_type: str, **details) -> dict:
    response = {
        'status': 'failed',
        'error': error,
        'error_type': error_type,
    }
    response.update(details)
    return response


class RedmineClient:
    """
    Authenticated access to one Redmine instance.

    Every request carries the ``User-Agent`` and ``X-Redmine-API-Key``
    headers. No timeout is configured; a slow tracker blocks the caller.
    """

    def __init__(self, base_url: str, api_key: str, user_agent: str = DEFAULT_USER_AGENT):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.user_agent = user_agent

    def is_configured(self) -> bool:
        return bool(self.api_key and self.base_url)

    def issue_url(self, issue_id: int) -> str:
        """Browser link for an issue."""
        return f"{self.base_url}/issues/{issue_id}"

    # ------------------------------------------------------------------
    # Core request helper
    # ------------------------------------------------------------------

    def make_api_request(self, method: str, endpoint: str, **kwargs) -> dict:
        """
        Make an authenticated HTTP request to the Redmine API.

        This is the central function for all API communication. It handles:
        - URL construction
        - Authentication via the X-Redmine-API-Key header
        - Error handling with enough detail to diagnose a failure
        - Response parsing (an empty body, as returned by PUT, is a success)

        Args:
            method: HTTP method (GET, PUT)
            endpoint: API endpoint path (e.g., '/issues.json')
            **kwargs: Additional arguments passed to requests.request()

        Returns:
            dict: Parsed JSON response on success, or an error dict on failure

        Error Response Formats:

            HTTP Error (4xx/5xx):
            {
                "error": "error message",
                "status": "failed",
                "error_type": "HTTPError",
                "status_code": 404,
                "method": "GET",
                "endpoint": "/issues.json",
                "response_text": "..."
            }

            Connection Error / Timeout / other RequestException:
            {
                "error": "error message",
                "status": "failed",
                "error_type": "ConnectionError",
                "message": "Failed to connect to Redmine..."
            }
        """
        url = f"{self.base_url}{endpoint}"

        # SECURITY: Never log the full API key, only a hint for debugging
        api_key_hint = f"{self.api_key[:4]}..." if len(self.api_key) > 8 else "***"
        logger.info(f"API Request: {method} {endpoint}")
        logger.debug(f"API Key hint: {api_key_hint}")

        headers = kwargs.pop('headers', {})
        headers['User-Agent'] = self.user_agent
        headers['X-Redmine-API-Key'] = self.api_key
        if 'json' in kwargs:
            headers['Content-Type'] = 'application/json'

        if kwargs.get('params'):
            logger.debug(f"Request params: {kwargs['params']}")

        try:
            response = requests.request(method, url, headers=headers, **kwargs)
            logger.info(f"API Response: {method} {endpoint} - Status {response.status_code}")

            # Raise exception for 4xx/5xx status codes
            response.raise_for_status()

            # PUT answers 204 No Content on success
            if not response.content:
                return {'status': 'OK'}

            json_response = response.json()
            if not isinstance(json_response, dict):
                logger.warning(f"API returned unexpected type: {type(json_response)} for {endpoint}")
                return _format_error(
                    'Unexpected API response format',
                    'ResponseFormatError',
                    response_preview=str(json_response)[:200],
                )

            return json_response

        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            logger.error(f"HTTP Error: {method} {endpoint} - Status {status_code}: {str(e)}")

            error_response = _format_error(
                str(e),
                'HTTPError',
                status_code=status_code,
                method=method,
                endpoint=endpoint,
            )
            if e.response is not None:
                error_response['response_text'] = e.response.text[:500]
            return error_response

        except requests.exceptions.Timeout as e:
            # Before ConnectionError: ConnectTimeout is both
            logger.error(f"Timeout Error: {method} {endpoint} - Request timed out: {str(e)}")
            return _format_error(
                str(e),
                'Timeout',
                message='Request to Redmine timed out.',
                endpoint=endpoint,
            )

        except requests.exceptions.ConnectionError as e:
            # Network connection error (DNS failure, refused connection, etc.)
            logger.error(f"Connection Error: {method} {endpoint} - Cannot reach {self.base_url}: {str(e)}")
            return _format_error(
                str(e),
                'ConnectionError',
                message='Failed to connect to Redmine. Check network connectivity and REDMINE_BASE_URL.',
                base_url=self.base_url,
            )

        except ValueError as e:
            # Body was not JSON; requests raises its JSONDecodeError, a ValueError
            logger.error(f"Invalid JSON: {method} {endpoint} - {str(e)}")
            return _format_error(str(e), 'ResponseFormatError', endpoint=endpoint)

        except requests.exceptions.RequestException as e:
            logger.error(f"Request Exception: {method} {endpoint} - {type(e).__name__}: {str(e)}")
            return _format_error(
                str(e),
                type(e).__name__,
                message='Unexpected error occurred while making API request.',
            )

    def _fetch_all(self, endpoint: str, collection_key: str, params: Optional[dict] = None) -> dict:
        """
        Walk offset/limit pagination until ``total_count`` records are read.

        Returns:
            dict: {'status': 'OK', collection_key: [...], 'total_count': int,
                   'offset': 0, 'limit': int} or an error dict
        """
        records = []
        offset = 0
        total_count = 0
        limit = PAGE_SIZE

        while True:
            page_params = dict(params or {})
            page_params.update({'offset': offset, 'limit': PAGE_SIZE})

            response = self.make_api_request('GET', endpoint, params=page_params)
            if response.get('status') == 'failed':
                return response

            page = response.get(collection_key) or []
            records.extend(page)
            total_count = int(response.get('total_count') or 0)
            limit = int(response.get('limit') or PAGE_SIZE)
            offset += len(page)

            if not page or offset >= total_count:
                break

        logger.debug(f"_fetch_all: {endpoint} returned {len(records)} of {total_count} records")
        return {
            'status': 'OK',
            collection_key: records,
            'total_count': total_count,
            'offset': 0,
            'limit': limit,
        }

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_users(self) -> dict:
        """
        Fetch every user known to the tracker.

        Returns:
            dict: {'status': 'OK', 'users': RedmineUsersCollection} or an error dict
        """
        logger.info("get_users: Fetching users")
        response = self._fetch_all('/users.json', 'users')
        if response.get('status') == 'failed':
            return response

        try:
            collection = RedmineUsersCollection.model_validate(response)
        except ValidationError as e:
            logger.error(f"get_users: Could not decode users payload: {e}")
            return _format_error(str(e), 'ResponseFormatError', endpoint='/users.json')

        logger.info(f"get_users: Got {len(collection.users)} user records")
        return {'status': 'OK', 'users': collection}

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def get_issues(self, assigned_to_id: int, created_since: str) -> dict:
        """
        Fetch issues assigned to a user and created on or after a date.

        Args:
            assigned_to_id: Redmine user id
            created_since: Date in YYYY-MM-DD format

        Returns:
            dict: {'status': 'OK', 'issues': RedmineIssuesCollection} or an error dict
        """
        params = {
            'assigned_to_id': assigned_to_id,
            'created_on': f'>={created_since}',
        }
        logger.info(f"get_issues: Fetching issues for user_id={assigned_to_id} since {created_since}")
        response = self._fetch_all('/issues.json', 'issues', params=params)
        if response.get('status') == 'failed':
            return response

        try:
            collection = RedmineIssuesCollection.model_validate(response)
        except ValidationError as e:
            logger.error(f"get_issues: Could not decode issues payload: {e}")
            return _format_error(str(e), 'ResponseFormatError', endpoint='/issues.json')

        logger.info(f"get_issues: Got {len(collection.issues)} issue records")
        return {'status': 'OK', 'issues': collection}

    def get_issue(self, issue_id: int) -> dict:
        """
        Fetch a single issue.

        Returns:
            dict: {'status': 'OK', 'issue': RedmineIssue} or an error dict
        """
        endpoint = f'/issues/{issue_id}.json'
        response = self.make_api_request('GET', endpoint)
        if response.get('status') == 'failed':
            return response

        try:
            issue = RedmineIssue.model_validate(response.get('issue') or {})
        except ValidationError as e:
            logger.error(f"get_issue: Could not decode issue #{issue_id}: {e}")
            return _format_error(str(e), 'ResponseFormatError', endpoint=endpoint)

        return {'status': 'OK', 'issue': issue}

    def update_issue(
        self,
        issue_id: int,
        status_id: IssueStatus,
        notes: str,
        assigned_to_id: Optional[int] = None,
    ) -> dict:
        """
        Partially update an issue's status (and optionally its assignee).

        Only the changed fields and the note are sent. The response body is
        not inspected: any non-error response counts as success.

        Returns:
            dict: {'status': 'OK'} or an error dict
        """
        endpoint = f'/issues/{issue_id}.json'
        payload = _prepare_issue_payload({
            'status_id': status_id,
            'assigned_to_id': assigned_to_id,
            'notes': notes,
        })
        logger.debug(f"update_issue: Writing {payload} to {endpoint}")

        response = self.make_api_request('PUT', endpoint, json=payload)
        if response.get('status') == 'failed':
            return response
        return {'status': 'OK'}
