"""
Directory client interface and error types.

This module defines the abstract capability set that the reconciliation core
consumes from the remote directory service, along with the structured error
raised for every failed remote call.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, List, Optional, Tuple

logger = logging.getLogger(__name__)


class EntityKind(Enum):
    """Remote entity kinds exposed by the directory service."""

    GROUP = 'group'
    MEMBER = 'member'
    GROUP_ALIAS = 'group_alias'
    USER = 'user'
    USER_ALIAS = 'user_alias'
    DOMAIN = 'domain'
    ORG_UNIT = 'org_unit'
    SCHEMA = 'schema'
    GROUP_SETTINGS = 'group_settings'


class DirectoryAPIError(Exception):
    """
    Error returned by the remote directory service.

    Attributes:
        status_code: HTTP status code, when the service reported one
        reason: Machine-readable reason of the first error detail (e.g. "quotaExceeded")
        body: Raw response body, kept for pattern matching of malformed errors
    """

    def __init__(self, message: str, status_code: Optional[int] = None,
                 reason: Optional[str] = None, body: str = ''):
        self.status_code = status_code
        self.reason = reason
        self.body = body
        super().__init__(message)


class NotFoundError(DirectoryAPIError):
    """Raised when the requested entity does not exist (404)."""
    pass


class ConflictError(DirectoryAPIError):
    """Raised when a create collides with an existing entity (409)."""
    pass


def make_api_error(message: str, status_code: Optional[int] = None,
                   reason: Optional[str] = None, body: str = '') -> DirectoryAPIError:
    """Build the most specific DirectoryAPIError subclass for a status code."""
    if status_code == 404:
        return NotFoundError(message, status_code, reason, body)
    if status_code == 409:
        return ConflictError(message, status_code, reason, body)
    return DirectoryAPIError(message, status_code, reason, body)


class DirectoryClient(ABC):
    """
    Abstract capability set of the remote directory service.

    Implementations decode every payload into the entity dataclasses of
    directory_sync.directory.entities and raise DirectoryAPIError (or a subclass)
    for every failed call. No retrying happens at this layer.
    """

    @abstractmethod
    def get_entity(self, kind: EntityKind, key: str, parent: Optional[str] = None) -> Any:
        """
        Fetch a single entity.

        Args:
            kind: Entity kind
            key: Entity key (email, id, path or name depending on the kind)
            parent: Owning entity for nested kinds (group for members and aliases)

        Returns:
            Decoded entity

        Raises:
            NotFoundError: If the entity does not exist
        """
        pass

    @abstractmethod
    def list_page(self, kind: EntityKind, parent: Optional[str] = None,
                  page_token: Optional[str] = None,
                  query: Optional[str] = None) -> Tuple[List[Any], Optional[str]]:
        """
        Fetch one page of entities.

        Args:
            kind: Entity kind
            parent: Owning entity or scope (group for members, domain for groups)
            page_token: Token returned by the previous page, None for the first page
            query: Optional search query understood by the service

        Returns:
            Tuple of (decoded entities, next page token or None when exhausted)
        """
        pass

    @abstractmethod
    def insert(self, kind: EntityKind, parent: Optional[str], entity: Any) -> Any:
        """Create an entity, raising ConflictError if it already exists."""
        pass

    @abstractmethod
    def patch(self, kind: EntityKind, parent: Optional[str], key: str, partial: Any) -> Any:
        """Apply the set fields of a partial entity to an existing entity."""
        pass

    @abstractmethod
    def update(self, kind: EntityKind, parent: Optional[str], key: str, entity: Any) -> Any:
        """Replace an existing entity."""
        pass

    @abstractmethod
    def delete(self, kind: EntityKind, parent: Optional[str], key: str) -> None:
        """Delete an entity."""
        pass

    @abstractmethod
    def has_member(self, group_key: str, member_key: str) -> bool:
        """
        Check whether a user is a member of a group.

        This is the user-specific existence check; nested groups are checked
        with get_entity(EntityKind.MEMBER, ...) instead.
        """
        pass
