"""
Provisioning of groups, group aliases, users and user aliases.

These operations sit next to membership reconciliation: they make sure the
entities a membership refers to exist in the shape the configuration asks for,
coping with duplicate creates and with the read-after-write lag of the
directory.
"""

import logging
from typing import Iterable, List, Optional

from directory_sync.consistency import EventualConsistencyWait
from directory_sync.directory.base import ConflictError, DirectoryClient, EntityKind
from directory_sync.directory.entities import Alias, Group, User
from directory_sync.directory.paging import list_all
from directory_sync.duplicates import DuplicateResolver
from directory_sync.retry import NOT_FOUND_OPTIONS, NonRetryableError, Operation, RetryPolicy

logger = logging.getLogger(__name__)


class ProvisioningError(NonRetryableError):
    """Raised when an entity cannot be provisioned as requested."""
    pass


class DirectoryProvisioner:
    """Creates, updates and removes groups and users, and keeps their aliases in line."""

    def __init__(self, client: DirectoryClient, retry_policy: RetryPolicy,
                 resolver: Optional[DuplicateResolver] = None,
                 waiter: Optional[EventualConsistencyWait] = None):
        self.client = client
        self.retry_policy = retry_policy
        self.resolver = resolver or DuplicateResolver(client, retry_policy)
        self.waiter = waiter or EventualConsistencyWait(retry_policy)

    def create_group(self, group: Group, ignore_duplicates: bool = False) -> Group:
        """
        Create a group, optionally adopting an identical existing group.

        Args:
            group: Group to create; aliases, if declared, are added after the insert
            ignore_duplicates: On a conflict, look for the matching existing group instead of failing

        Returns:
            The created group as read back from the directory, or the adopted duplicate

        Raises:
            ConflictError: If the group exists and ignore_duplicates is False
            DuplicateMismatchError: If a same-named group disagrees with the candidate
            NoDuplicateMatchError: If the conflict cannot be matched to an existing group
            ProvisioningError: If the group email has no domain to search for duplicates
        """
        try:
            created = self.retry_policy.execute(
                Operation(f"create group {group.email}",
                          lambda: self.client.insert(EntityKind.GROUP, None, group))
            )
        except ConflictError:
            if not ignore_duplicates:
                raise
            domain = group.domain
            if domain is None:
                raise ProvisioningError(f"Unable to determine the domain of group {group.email}")
            logger.info(f"Group {group.email} already exists, looking for a matching duplicate in {domain}")
            return self.resolver.resolve_create_conflict(group, domain)

        group_key = created.id or group.email
        logger.info(f"Created group {group.email} ({group_key})")

        for alias in group.aliases or []:
            # The group is brand new, so its alias endpoint can 404 for a while.
            self.retry_policy.execute(
                Operation(f"add alias {alias} to group {group.email}",
                          lambda alias=alias: self.client.insert(EntityKind.GROUP_ALIAS, group_key, Alias(alias=alias))),
                NOT_FOUND_OPTIONS
            )

        return self.waiter.wait_until_visible(
            lambda: self.client.get_entity(EntityKind.GROUP, group_key),
            f"group {group.email}"
        )

    def read_group(self, group_key: str) -> Optional[Group]:
        """Read a group with its aliases, None if it does not exist."""
        return self.retry_policy.execute_or_none(
            Operation(f"read group {group_key}",
                      lambda: self.client.get_entity(EntityKind.GROUP, group_key))
        )

    def update_group_aliases(self, group_key: str, aliases: Iterable[str]) -> List[str]:
        """
        Make the aliases of a group exactly the given set.

        Returns:
            The resulting aliases, sorted
        """
        return self._sync_aliases(EntityKind.GROUP_ALIAS, group_key, aliases)

    def delete_group(self, group_key: str) -> None:
        """Delete a group and wait until the directory stops returning it."""
        self.retry_policy.execute(
            Operation(f"delete group {group_key}",
                      lambda: self.client.delete(EntityKind.GROUP, None, group_key))
        )
        logger.info(f"Deleted group {group_key}")
        self.waiter.wait_until_gone(
            lambda: self.client.get_entity(EntityKind.GROUP, group_key),
            f"group {group_key}"
        )

    def find_user(self, primary_email: str) -> Optional[User]:
        """Look a user up by primary email, None if there is no such user."""
        email = primary_email.strip().lower()
        found = list_all(self.client, self.retry_policy, EntityKind.USER, query=f"email:{email}")
        for user in found:
            if user.primary_email == email:
                return user
        return None

    def upsert_user(self, user: User) -> User:
        """
        Create a user, or update the existing user with the same primary email.

        Aliases are synced afterwards when the user declares them (None leaves
        the existing aliases alone).

        Returns:
            The user as read back once visible
        """
        existing = self.find_user(user.primary_email)

        if existing is not None:
            user_key = existing.id or existing.primary_email
            self.retry_policy.execute(
                Operation(f"update user {user.primary_email}",
                          lambda: self.client.update(EntityKind.USER, None, user_key, user)),
                NOT_FOUND_OPTIONS
            )
            logger.info(f"Updated user {user.primary_email}")
        else:
            created = self.retry_policy.execute(
                Operation(f"create user {user.primary_email}",
                          lambda: self.client.insert(EntityKind.USER, None, user))
            )
            user_key = created.id or user.primary_email
            logger.info(f"Created user {user.primary_email} ({user_key})")

        visible = self.waiter.wait_until_visible(
            lambda: self.client.get_entity(EntityKind.USER, user_key),
            f"user {user.primary_email}"
        )

        if user.aliases is not None:
            visible.aliases = self._sync_aliases(EntityKind.USER_ALIAS, user_key, user.aliases)
        return visible

    def add_user_alias(self, user_key: str, alias: str) -> Alias:
        """
        Add an alias to a user and wait until the alias list shows it.

        Raises:
            ConsistencyTimeoutError: If the alias never shows up before the deadline
        """
        alias = alias.strip().lower()
        created = self.retry_policy.execute(
            Operation(f"add alias {alias} to user {user_key}",
                      lambda: self.client.insert(EntityKind.USER_ALIAS, user_key, Alias(alias=alias))),
            NOT_FOUND_OPTIONS
        )
        self.waiter.wait_until_true(
            lambda: alias in self._list_aliases(EntityKind.USER_ALIAS, user_key),
            f"alias {alias} of user {user_key}"
        )
        return created

    def _list_aliases(self, kind: EntityKind, owner_key: str) -> List[str]:
        return [item.alias for item in list_all(self.client, self.retry_policy, kind,
                                                parent=owner_key, options=NOT_FOUND_OPTIONS)]

    def _sync_aliases(self, kind: EntityKind, owner_key: str, aliases: Iterable[str]) -> List[str]:
        wanted = {alias.strip().lower() for alias in aliases}
        existing = set(self._list_aliases(kind, owner_key))

        for alias in sorted(existing - wanted):
            self.retry_policy.execute(
                Operation(f"remove alias {alias} from {owner_key}",
                          lambda alias=alias: self.client.delete(kind, owner_key, alias))
            )
            logger.info(f"Removed alias {alias} from {owner_key}")

        for alias in sorted(wanted - existing):
            if kind == EntityKind.USER_ALIAS:
                self.add_user_alias(owner_key, alias)
            else:
                self.retry_policy.execute(
                    Operation(f"add alias {alias} to {owner_key}",
                              lambda alias=alias: self.client.insert(kind, owner_key, Alias(alias=alias))),
                    NOT_FOUND_OPTIONS
                )
            logger.info(f"Added alias {alias} to {owner_key}")

        return sorted(wanted)
