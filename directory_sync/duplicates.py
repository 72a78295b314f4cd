"""
Resolution of duplicate entities.

The directory treats some creates as upserts and rejects others with a 409,
depending on the entity kind. DuplicateResolver makes create idempotent for
groups by matching the rejected candidate against the existing groups of its
domain, and answers the "is this identity a group or a user" question that
membership upserts depend on.
"""

import logging
from typing import List, Optional

from directory_sync.directory.base import DirectoryClient, EntityKind
from directory_sync.directory.entities import Group
from directory_sync.directory.paging import list_all
from directory_sync.retry import ErrorClass, NonRetryableError, Operation, RetryPolicy

logger = logging.getLogger(__name__)


class DuplicateMismatchError(NonRetryableError):
    """Raised when an existing entity shares the candidate's name but disagrees on other fields."""

    error_class = ErrorClass.DUPLICATE_MISMATCH


class NoDuplicateMatchError(NonRetryableError):
    """Raised when a create conflicted but no existing entity matches the candidate."""
    pass


def _normalized(values: Optional[List[str]]) -> List[str]:
    return sorted(value.strip().lower() for value in values or [])


def group_matches_actual(candidate: Group, actual: Group) -> bool:
    """
    Check whether a group built for creation matches an existing group.

    A different name is simply not a match. The same name with a different
    email, or with a different set of aliases, is an ambiguous duplicate that
    a human has to resolve. Aliases are compared only when the candidate
    declares them (None means "not declared"); the description is ignored.

    Args:
        candidate: Group that was rejected on create
        actual: Existing group from the directory

    Returns:
        True if the groups match

    Raises:
        DuplicateMismatchError: If the groups share a name but are otherwise incompatible
    """
    if candidate.name != actual.name:
        return False

    if (candidate.email or '').lower() != (actual.email or '').lower():
        raise DuplicateMismatchError(
            f"Emails for group '{candidate.name}' do not match: "
            f"'{candidate.email}' vs '{actual.email}'"
        )

    if candidate.aliases is not None:
        wanted = _normalized(candidate.aliases)
        existing = _normalized(actual.aliases)
        if wanted != existing:
            raise DuplicateMismatchError(
                f"Aliases for group '{candidate.name}' do not match: "
                f"{wanted} vs {existing}"
            )

    return True


class DuplicateResolver:
    """Resolves create conflicts and group-versus-user identity questions."""

    def __init__(self, client: DirectoryClient, retry_policy: RetryPolicy):
        self.client = client
        self.retry_policy = retry_policy

    def is_group(self, identity: str) -> bool:
        """
        Determine whether an identity is a group (True) or a user (False).

        A 404 from the group lookup means the identity is not a group.
        """
        group = self.retry_policy.execute_or_none(
            Operation(f"look up group {identity}",
                      lambda: self.client.get_entity(EntityKind.GROUP, identity))
        )
        if group is None:
            logger.debug(f"{identity} is not a group, treating it as a user")
            return False
        return True

    def resolve_create_conflict(self, candidate: Group, scope_key: str) -> Group:
        """
        Find the existing group a conflicting create collided with.

        Args:
            candidate: Group whose insert failed with a conflict
            scope_key: Domain to search in

        Returns:
            The existing group matching the candidate

        Raises:
            DuplicateMismatchError: If a same-named group disagrees on email or aliases
            NoDuplicateMatchError: If no existing group matches
        """
        logger.debug(f"Listing groups in {scope_key} to match duplicate group '{candidate.name}'")
        found = list_all(self.client, self.retry_policy, EntityKind.GROUP,
                         parent=scope_key, query=f"name='{candidate.name}'")
        logger.debug(f"Found {len(found)} groups to match against '{candidate.name}'")

        for existing in found:
            if group_matches_actual(candidate, existing):
                logger.info(f"Resolved duplicate group '{candidate.name}' to existing group "
                            f"{existing.email} ({existing.id})")
                return existing

        raise NoDuplicateMatchError(f"No match found for duplicate group '{candidate.name}' in {scope_key}")
