"""
In-memory directory of Redmine users.

The directory is used to turn the names people type in chat into Redmine
user ids. It is loaded once, on first use, and kept for the life of the
process.

The cached collection is immutable and held in a single attribute. A refresh
builds the complete new collection first and then rebinds that attribute, so
a concurrent ``resolve`` sees either the old or the new users, never a mix.
No lock is taken: two callers that both find the cache empty may both
refresh, which only costs an extra request.
"""

import logging
from typing import Optional, Tuple

from models import RedmineUser, RedmineUsersCollection

logger = logging.getLogger(__name__)


class DirectoryCache:
    def __init__(self, client):
        self.client = client
        self._directory = RedmineUsersCollection()

    @property
    def users(self) -> Tuple[RedmineUser, ...]:
        return self._directory.users

    @property
    def is_loaded(self) -> bool:
        return len(self._directory.users) > 0

    def refresh(self) -> dict:
        """
        Fetch all users and replace the cached directory.

        The cached directory is left untouched when the fetch fails or when
        the tracker reports no users.

        Returns:
            dict: {'status': 'OK', 'count': int} or an error dict with
                  error_type 'DirectoryUnavailable'
        """
        logger.info("refresh: Loading user directory")
        response = self.client.get_users()
        if response.get('status') != 'OK':
            logger.error(f"refresh: Failed to fetch users: {response.get('error')}")
            return {
                'status': 'failed',
                'error': 'Unable to get users from Redmine',
                'error_type': 'DirectoryUnavailable',
                'details': response,
            }

        collection = response['users']
        if not collection.users or collection.total_count == 0:
            logger.error("refresh: Redmine returned zero users")
            return {
                'status': 'failed',
                'error': 'Redmine returned no users',
                'error_type': 'DirectoryUnavailable',
            }

        # Single rebind; readers holding the old collection keep it intact
        self._directory = collection
        logger.info(f"refresh: Directory now holds {len(collection.users)} users")
        return {'status': 'OK', 'count': len(collection.users)}

    def ensure_loaded(self) -> dict:
        """Load the directory if it is still empty."""
        if self.is_loaded:
            return {'status': 'OK', 'count': len(self._directory.users)}
        return self.refresh()

    def resolve(self, name: str) -> Optional[int]:
        """
        Return the id of the first user whose first or last name matches.

        Matching ignores case. When several users match, the first one in
        directory order wins; ambiguity is not reported.
        """
        if not name:
            return None

        directory = self._directory
        for user in directory.users:
            if user.matches_name(name):
                return user.id
        return None
