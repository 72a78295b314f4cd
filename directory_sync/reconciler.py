"""
Group membership reconciliation.

The Reconciler reads the actual members of a group, diffs them against the
desired MembershipSet, and applies the resulting plan through the directory
client under the retry policy: deletes first, then role patches, then
upserts. The plan is recomputed from live state on every call, so re-running
after a partial failure converges on the same end state.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional

from directory_sync.directory.base import (
    ConflictError, DirectoryAPIError, DirectoryClient, EntityKind, NotFoundError
)
from directory_sync.directory.entities import Member
from directory_sync.directory.paging import list_all
from directory_sync.duplicates import DuplicateResolver
from directory_sync.logging_setup import audit_logger
from directory_sync.membership import MembershipSet, Role, normalize_identity
from directory_sync.retry import (
    DEFAULT_OPTIONS, NOT_FOUND_OPTIONS, ErrorClass, NonRetryableError, Operation, RetryOptions, RetryPolicy
)

logger = logging.getLogger(__name__)


class ConfigurationInvariantError(NonRetryableError):
    """Raised when the desired state asks for something the directory forbids."""

    error_class = ErrorClass.CONFIG_INVARIANT


class ReconcileError(Exception):
    """
    Raised when one plan operation fails.

    The original error is kept as both `cause` and __cause__.
    """

    def __init__(self, operation: 'PlannedOperation', parent_id: str, cause: Exception):
        self.operation = operation
        self.parent_id = parent_id
        self.cause = cause
        super().__init__(f"Failed to {operation.describe()} in {parent_id}: {cause}")


class OperationKind(Enum):
    DELETE = 'delete'
    PATCH_ROLE = 'patch_role'
    UPSERT = 'upsert'


# Execution order of the plan.
OPERATION_ORDER = (OperationKind.DELETE, OperationKind.PATCH_ROLE, OperationKind.UPSERT)


@dataclass(frozen=True)
class PlannedOperation:
    """One step of a reconcile plan."""

    kind: OperationKind
    identity: str
    role: Optional[Role] = None

    def describe(self) -> str:
        if self.kind == OperationKind.DELETE:
            return f"delete member {self.identity}"
        if self.kind == OperationKind.PATCH_ROLE:
            return f"patch role of {self.identity} to {self.role.value}"
        return f"upsert member {self.identity} as {self.role.value}"


class ReconcilePlan:
    """Ordered operations derived from one desired/actual diff."""

    def __init__(self, operations: Optional[List[PlannedOperation]] = None):
        self._operations = sorted(operations or [], key=lambda op: OPERATION_ORDER.index(op.kind))

    def of_kind(self, kind: OperationKind) -> List[PlannedOperation]:
        return [op for op in self._operations if op.kind == kind]

    def counts(self) -> Dict[str, int]:
        return {kind.value: len(self.of_kind(kind)) for kind in OPERATION_ORDER}

    @property
    def is_empty(self) -> bool:
        return not self._operations

    def __iter__(self) -> Iterator[PlannedOperation]:
        return iter(self._operations)

    def __len__(self) -> int:
        return len(self._operations)

    def __repr__(self) -> str:
        return f"ReconcilePlan({', '.join(op.describe() for op in self._operations)})"


def plan_changes(desired: MembershipSet, actual: MembershipSet) -> ReconcilePlan:
    """
    Compute the operations that turn actual into desired.

    Args:
        desired: Desired memberships
        actual: Memberships currently in the directory

    Returns:
        ReconcilePlan ordered deletes, role patches, upserts

    Raises:
        ConfigurationInvariantError: If a nested group would get a role other than MEMBER
    """
    operations = []

    for record in actual:
        if record.identity not in desired:
            operations.append(PlannedOperation(OperationKind.DELETE, record.identity))
            continue

        wanted = desired[record.identity]
        if wanted.role == record.role:
            continue

        if (record.is_group or wanted.is_group) and wanted.role != Role.MEMBER:
            raise ConfigurationInvariantError(
                f"Cannot set role {wanted.role.value} for {record.identity}: "
                f"nested groups should be role MEMBER"
            )
        operations.append(PlannedOperation(OperationKind.PATCH_ROLE, record.identity, wanted.role))

    for record in desired:
        if record.identity not in actual:
            operations.append(PlannedOperation(OperationKind.UPSERT, record.identity, record.role))

    return ReconcilePlan(operations)


@dataclass
class ReconcileResult:
    """Outcome of one reconcile call."""

    parent_id: str
    plan: ReconcilePlan
    applied: Dict[str, int] = field(default_factory=lambda: {kind.value: 0 for kind in OPERATION_ORDER})
    dry_run: bool = False
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None

    @property
    def changed(self) -> bool:
        return any(self.applied.values())

    @property
    def runtime_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


class Reconciler:
    """
    Drives the members of a group to a desired MembershipSet.

    Every remote call goes through the retry policy. Operations run strictly
    in plan order and the first failure aborts the rest of the plan.
    """

    def __init__(self, client: DirectoryClient, retry_policy: RetryPolicy,
                 resolver: Optional[DuplicateResolver] = None):
        self.client = client
        self.retry_policy = retry_policy
        self.resolver = resolver or DuplicateResolver(client, retry_policy)

    def fetch_actual(self, parent_id: str) -> MembershipSet:
        """
        Read every member of a group, page by page.

        A missing group is fatal here, not something to wait out.
        """
        members = list_all(self.client, self.retry_policy, EntityKind.MEMBER, parent=parent_id)
        actual = MembershipSet.from_members(members)
        logger.debug(f"Group {parent_id} has {len(actual)} members")
        return actual

    def plan(self, desired: MembershipSet, parent_id: str,
             fetch_actual: Optional[Callable[[], MembershipSet]] = None) -> ReconcilePlan:
        """
        Fetch actual state and compute the plan without applying it.

        Raises:
            ConfigurationInvariantError: If a nested group would get a role other than MEMBER
        """
        actual = fetch_actual() if fetch_actual else self.fetch_actual(parent_id)
        plan = plan_changes(desired, actual)
        self._check_nested_group_roles(plan)
        return plan

    def _check_nested_group_roles(self, plan: ReconcilePlan) -> None:
        # Runs before anything is applied so a rejected plan leaves the group untouched.
        for operation in plan.of_kind(OperationKind.UPSERT):
            if operation.role != Role.MEMBER and self.resolver.is_group(operation.identity):
                raise ConfigurationInvariantError(
                    f"Cannot add {operation.identity} as {operation.role.value}: nested groups should be role MEMBER"
                )

    def reconcile(self, desired: MembershipSet, parent_id: str,
                  fetch_actual: Optional[Callable[[], MembershipSet]] = None,
                  apply: Optional[Callable[[ReconcilePlan], None]] = None,
                  dry_run: bool = False) -> ReconcileResult:
        """
        Make the members of a group match the desired set.

        Args:
            desired: Desired memberships
            parent_id: Group key (email or id)
            fetch_actual: Override for reading actual state
            apply: Override for executing the plan
            dry_run: Compute and log the plan without applying it

        Returns:
            ReconcileResult with the plan and the applied operation counts

        Raises:
            ConfigurationInvariantError: If the desired state violates a directory constraint
            ReconcileError: If a plan operation fails; earlier operations stay applied
        """
        parent_id = normalize_identity(parent_id)
        plan = self.plan(desired, parent_id, fetch_actual)
        result = ReconcileResult(parent_id=parent_id, plan=plan, dry_run=dry_run)

        logger.info(f"Reconciling {parent_id}: {len(desired)} desired members, plan {plan.counts()}")

        if dry_run:
            for operation in plan:
                logger.info(f"[dry-run] {parent_id}: would {operation.describe()}")
        elif apply is not None:
            apply(plan)
            result.applied = plan.counts()
        else:
            self.apply_plan(parent_id, plan, result.applied)

        result.end_time = datetime.now()
        return result

    def apply_plan(self, parent_id: str, plan: ReconcilePlan,
                   applied: Optional[Dict[str, int]] = None) -> None:
        """
        Execute a plan in order, aborting on the first failure.

        Args:
            parent_id: Group key
            plan: Plan to execute
            applied: Optional counter dictionary updated as operations succeed
        """
        for operation in plan:
            logger.debug(f"{parent_id}: {operation.describe()}")
            try:
                if operation.kind == OperationKind.DELETE:
                    self._delete(parent_id, operation.identity)
                elif operation.kind == OperationKind.PATCH_ROLE:
                    self._patch_role(parent_id, operation.identity, operation.role)
                else:
                    self._upsert(parent_id, operation.identity, operation.role)
            except Exception as e:
                logger.error(f"{parent_id}: failed to {operation.describe()}: {e}")
                audit_logger.log_change(operation.kind.value, operation.identity, parent_id, False)
                raise ReconcileError(operation, parent_id, e) from e

            audit_logger.log_change(operation.kind.value, operation.identity, parent_id, True)
            if applied is not None:
                applied[operation.kind.value] += 1
            logger.info(f"{parent_id}: {operation.describe()} done")

    def _delete(self, parent_id: str, identity: str) -> None:
        self.retry_policy.execute(
            Operation(f"delete member {identity} from {parent_id}",
                      lambda: self.client.delete(EntityKind.MEMBER, parent_id, identity))
        )

    def _patch_role(self, parent_id: str, identity: str, role: Role) -> None:
        # The member was just listed, so a 404 here is read lag rather than absence.
        self.retry_policy.execute(
            Operation(f"patch role of {identity} in {parent_id}",
                      lambda: self.client.patch(EntityKind.MEMBER, parent_id, identity, Member(role=role.value))),
            NOT_FOUND_OPTIONS
        )

    def _upsert(self, parent_id: str, identity: str, role: Role) -> None:
        """
        Insert or update a membership.

        Nested groups and users need different existence checks: a member get
        for groups, has_member for users. The answer picks insert or update.
        """
        member = Member(email=identity, role=role.value)

        if self.resolver.is_group(identity):
            if role != Role.MEMBER:
                raise ConfigurationInvariantError(
                    f"Cannot add {identity} as {role.value}: nested groups should be role MEMBER"
                )
            existing = self.retry_policy.execute_or_none(
                Operation(f"get member {identity} of {parent_id}",
                          lambda: self.client.get_entity(EntityKind.MEMBER, identity, parent=parent_id))
            )
            if existing is not None:
                self._update(parent_id, member)
            else:
                self._insert(parent_id, member)
        elif self._has_member(parent_id, identity):
            self._update_user(parent_id, member)
        else:
            self._insert(parent_id, member)

    def _has_member(self, parent_id: str, identity: str) -> bool:
        try:
            return self.retry_policy.execute(
                Operation(f"check membership of {identity} in {parent_id}",
                          lambda: self.client.has_member(parent_id, identity))
            )
        except DirectoryAPIError as e:
            # The directory answers 400 "required" when the user does not exist at all.
            if e.status_code == 400 and e.reason == 'required':
                logger.warning(f"Could not check membership of {identity} in {parent_id}, "
                               f"make sure the user exists beforehand: {e}")
                return False
            raise

    def _insert(self, parent_id: str, member: Member) -> None:
        try:
            self.retry_policy.execute(
                Operation(f"insert member {member.email} into {parent_id}",
                          lambda: self.client.insert(EntityKind.MEMBER, parent_id, member))
            )
        except ConflictError:
            logger.info(f"{member.email} is already part of {parent_id}, updating instead")
            self._update(parent_id, member)

    def _update_user(self, parent_id: str, member: Member) -> None:
        """
        Update a user membership reported by has_member.

        has_member also answers True for indirect membership through a nested
        group. Such a user has no member row of its own, so the update 404s
        and the user is inserted as a direct member instead.
        """
        try:
            self._update(parent_id, member, DEFAULT_OPTIONS)
        except NotFoundError:
            logger.info(f"{member.email} is only an indirect member of {parent_id}, inserting instead")
            self._insert(parent_id, member)

    def _update(self, parent_id: str, member: Member,
                options: RetryOptions = NOT_FOUND_OPTIONS) -> None:
        self.retry_policy.execute(
            Operation(f"update member {member.email} in {parent_id}",
                      lambda: self.client.update(EntityKind.MEMBER, parent_id, member.email, member)),
            options
        )
