#!/usr/bin/env python3
"""
Unit tests for membership reconciliation.

Runs the reconciler against the in-memory directory with a retry policy that
sleeps on a fake clock.
"""

import os
import sys
import unittest
from unittest.mock import Mock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from directory_sync.directory.base import DirectoryAPIError, NotFoundError
from directory_sync.membership import MembershipSet, Role
from directory_sync.reconciler import (
    ConfigurationInvariantError, OperationKind, PlannedOperation, ReconcileError,
    ReconcilePlan, Reconciler, plan_changes
)
from fake_directory import FakeClock, FakeDirectory, api_error, make_policy

GROUP = 'g@example.com'
MUTATIONS = ('insert', 'patch', 'update', 'delete')


def desired_set(**roles):
    return MembershipSet.from_config([
        {'email': f"{name}@example.com", 'role': role} for name, role in roles.items()
    ])


class TestPlanChanges(unittest.TestCase):
    """Test cases for the desired/actual diff."""

    def test_delete_patch_upsert(self):
        actual = desired_set(a='MEMBER', b='OWNER')
        desired = desired_set(b='MEMBER', c='OWNER')

        plan = plan_changes(desired, actual)

        self.assertEqual(list(plan), [
            PlannedOperation(OperationKind.DELETE, 'a@example.com'),
            PlannedOperation(OperationKind.PATCH_ROLE, 'b@example.com', Role.MEMBER),
            PlannedOperation(OperationKind.UPSERT, 'c@example.com', Role.OWNER),
        ])
        self.assertEqual(plan.counts(), {'delete': 1, 'patch_role': 1, 'upsert': 1})

    def test_equal_sets_give_empty_plan(self):
        plan = plan_changes(desired_set(a='OWNER'), desired_set(a='owner'))

        self.assertTrue(plan.is_empty)
        self.assertEqual(len(plan), 0)

    def test_plan_is_ordered_by_kind(self):
        plan = ReconcilePlan([
            PlannedOperation(OperationKind.UPSERT, 'c@example.com', Role.MEMBER),
            PlannedOperation(OperationKind.DELETE, 'a@example.com'),
            PlannedOperation(OperationKind.PATCH_ROLE, 'b@example.com', Role.OWNER),
        ])

        self.assertEqual([op.kind for op in plan],
                         [OperationKind.DELETE, OperationKind.PATCH_ROLE, OperationKind.UPSERT])
        self.assertIn('delete member a@example.com', repr(plan))


class ReconcilerTestCase(unittest.TestCase):

    def setUp(self):
        self.fake = FakeDirectory()
        self.fake.add_group(GROUP)
        self.clock = FakeClock()
        self.policy = make_policy(clock=self.clock)
        self.reconciler = Reconciler(self.fake, self.policy)

    def mutations(self):
        return [(method, key) for method, _, _, key in self.fake.calls if method in MUTATIONS]


class TestReconcile(ReconcilerTestCase):
    """Test cases for Reconciler.reconcile against the in-memory directory."""

    def test_reconcile_applies_diff_in_order(self):
        self.fake.add_member(GROUP, 'a@example.com', 'MEMBER')
        self.fake.add_member(GROUP, 'b@example.com', 'OWNER')

        result = self.reconciler.reconcile(desired_set(b='MEMBER', c='OWNER'), GROUP)

        self.assertEqual(self.mutations(), [
            ('delete', 'a@example.com'),
            ('patch', 'b@example.com'),
            ('insert', 'c@example.com'),
        ])
        self.assertEqual(self.fake.roles(GROUP), {'b@example.com': 'MEMBER', 'c@example.com': 'OWNER'})
        self.assertEqual(result.applied, {'delete': 1, 'patch_role': 1, 'upsert': 1})
        self.assertTrue(result.changed)

    def test_converges_and_second_run_is_a_no_op(self):
        self.fake.add_member(GROUP, 'a@example.com', 'MANAGER')
        desired = desired_set(a='OWNER', b='MEMBER')

        self.reconciler.reconcile(desired, GROUP)
        self.assertEqual(self.reconciler.fetch_actual(GROUP), desired)

        calls_before = len(self.mutations())
        result = self.reconciler.reconcile(desired, GROUP)

        self.assertTrue(result.plan.is_empty)
        self.assertFalse(result.changed)
        self.assertEqual(len(self.mutations()), calls_before)

    def test_role_and_email_case_is_ignored(self):
        self.fake.scramble_case = True
        self.fake.add_member(GROUP, 'alice@example.com', 'OWNER')

        desired = MembershipSet.from_config([{'email': 'ALICE@EXAMPLE.COM', 'role': 'owner'}])
        result = self.reconciler.reconcile(desired, 'G@Example.com')

        self.assertTrue(result.plan.is_empty)
        self.assertEqual(result.parent_id, GROUP)
        self.assertEqual(self.mutations(), [])

    def test_nested_group_role_change_is_rejected_without_retry(self):
        self.fake.add_group('team@example.com')
        self.fake.add_member(GROUP, 'team@example.com', 'MEMBER')

        with self.assertRaises(ConfigurationInvariantError):
            self.reconciler.reconcile(desired_set(team='OWNER'), GROUP)

        self.assertEqual(self.mutations(), [])
        self.assertEqual(self.clock.sleeps, [])

    def test_nested_group_upsert_with_owner_role_is_rejected(self):
        self.fake.add_group('team@example.com')

        with self.assertRaises(ConfigurationInvariantError):
            self.reconciler.reconcile(desired_set(team='OWNER'), GROUP)

        self.assertEqual(self.mutations(), [])
        self.assertEqual(self.clock.sleeps, [])

    def test_rejected_nested_group_upsert_leaves_other_members_alone(self):
        self.fake.add_group('team@example.com')
        self.fake.add_member(GROUP, 'old@example.com', 'MEMBER')
        self.fake.add_member(GROUP, 'b@example.com', 'MEMBER')

        with self.assertRaises(ConfigurationInvariantError):
            self.reconciler.reconcile(desired_set(b='OWNER', team='OWNER'), GROUP)

        self.assertEqual(self.fake.roles(GROUP), {'old@example.com': 'MEMBER', 'b@example.com': 'MEMBER'})
        self.assertEqual(self.mutations(), [])

    def test_nested_group_check_runs_in_dry_run(self):
        self.fake.add_group('team@example.com')

        with self.assertRaises(ConfigurationInvariantError):
            self.reconciler.reconcile(desired_set(team='MANAGER'), GROUP, dry_run=True)

    def test_nested_group_is_inserted_as_member(self):
        self.fake.add_group('team@example.com')

        self.reconciler.reconcile(desired_set(team='MEMBER'), GROUP)

        self.assertEqual(self.fake.members[GROUP]['team@example.com'].type, 'GROUP')
        self.assertEqual(self.fake.calls_of('has_member'), [])

    def test_reads_every_page(self):
        self.fake.page_size = 2
        for name in 'abcdef':
            self.fake.add_member(GROUP, f"{name}@example.com")

        actual = self.reconciler.fetch_actual(GROUP)

        self.assertEqual(len(actual), 6)
        self.assertEqual(len(self.fake.calls_of('list_page')), 3)

    def test_first_failure_aborts_the_plan(self):
        self.fake.add_member(GROUP, 'a@example.com')
        self.fake.add_member(GROUP, 'b@example.com')
        error = api_error(403, 'Not Authorized to access this resource/api', reason='forbidden')
        self.fake.fail('delete', error)

        with self.assertRaises(ReconcileError) as ctx:
            self.reconciler.reconcile(desired_set(c='MEMBER'), GROUP)

        self.assertIs(ctx.exception.cause, error)
        self.assertIs(ctx.exception.__cause__, error)
        self.assertEqual(ctx.exception.operation.identity, 'a@example.com')
        self.assertIn('Failed to delete member a@example.com in g@example.com', str(ctx.exception))
        self.assertEqual(set(self.fake.roles(GROUP)), {'a@example.com', 'b@example.com'})
        self.assertEqual(self.fake.calls_of('insert'), [])

    def test_missing_member_on_delete_is_fatal(self):
        self.fake.add_member(GROUP, 'a@example.com')
        self.fake.fail('delete', api_error(404))

        with self.assertRaises(ReconcileError) as ctx:
            self.reconciler.reconcile(desired_set(), GROUP)

        self.assertIsInstance(ctx.exception.cause, NotFoundError)
        self.assertEqual(self.clock.sleeps, [])

    def test_transient_failure_is_retried(self):
        self.fake.fail('insert', api_error(503, 'Backend Error'))

        self.reconciler.reconcile(desired_set(a='MEMBER'), GROUP)

        self.assertEqual(self.fake.role_of(GROUP, 'a@example.com'), 'MEMBER')
        self.assertEqual(self.clock.sleeps, [1])

    def test_role_patch_waits_out_read_lag(self):
        self.fake.add_member(GROUP, 'a@example.com', 'MEMBER')
        self.fake.fail('patch', api_error(404))

        self.reconciler.reconcile(desired_set(a='MANAGER'), GROUP)

        self.assertEqual(self.fake.role_of(GROUP, 'a@example.com'), 'MANAGER')
        self.assertEqual(len(self.fake.calls_of('patch')), 2)

    def test_dry_run_changes_nothing(self):
        self.fake.add_member(GROUP, 'a@example.com')

        result = self.reconciler.reconcile(desired_set(b='OWNER'), GROUP, dry_run=True)

        self.assertTrue(result.dry_run)
        self.assertEqual(result.plan.counts(), {'delete': 1, 'patch_role': 0, 'upsert': 1})
        self.assertFalse(result.changed)
        self.assertEqual(self.mutations(), [])

    def test_overrides_for_fetch_and_apply(self):
        apply = Mock()
        result = self.reconciler.reconcile(desired_set(a='MEMBER'), GROUP,
                                           fetch_actual=lambda: MembershipSet(), apply=apply)

        apply.assert_called_once_with(result.plan)
        self.assertEqual(result.applied['upsert'], 1)
        self.assertEqual(self.fake.calls_of('list_page'), [])


class TestUpsert(ReconcilerTestCase):
    """Test cases for the insert-or-update decision."""

    def test_existing_user_membership_is_updated(self):
        self.fake.add_member(GROUP, 'a@example.com', 'MEMBER')

        self.reconciler.reconcile(desired_set(a='OWNER'), GROUP, fetch_actual=lambda: MembershipSet())

        self.assertEqual(self.mutations(), [('update', 'a@example.com')])
        self.assertEqual(self.fake.role_of(GROUP, 'a@example.com'), 'OWNER')

    def test_existing_nested_group_membership_is_updated(self):
        self.fake.add_group('team@example.com')
        self.fake.add_member(GROUP, 'team@example.com', 'MEMBER')

        self.reconciler.reconcile(desired_set(team='MEMBER'), GROUP, fetch_actual=lambda: MembershipSet())

        self.assertEqual(self.mutations(), [('update', 'team@example.com')])

    def test_insert_conflict_falls_back_to_update(self):
        self.fake.add_member(GROUP, 'a@example.com', 'MEMBER')
        self.fake.has_member = Mock(return_value=False)

        self.reconciler.reconcile(desired_set(a='MANAGER'), GROUP, fetch_actual=lambda: MembershipSet())

        self.assertEqual(self.mutations(), [('insert', 'a@example.com'), ('update', 'a@example.com')])
        self.assertEqual(self.fake.role_of(GROUP, 'a@example.com'), 'MANAGER')

    def test_indirect_member_is_inserted_as_direct_member(self):
        # has_member answers True, but the user only belongs through a nested group
        self.fake.has_member = Mock(return_value=True)

        self.reconciler.reconcile(desired_set(alice='MEMBER'), GROUP)

        self.assertEqual(self.mutations(), [('update', 'alice@example.com'), ('insert', 'alice@example.com')])
        self.assertEqual(self.fake.role_of(GROUP, 'alice@example.com'), 'MEMBER')
        self.assertEqual(self.clock.sleeps, [])

    def test_unknown_user_is_inserted(self):
        self.fake.require_users = True

        self.reconciler.reconcile(desired_set(ghost='MEMBER'), GROUP)

        self.assertEqual(self.mutations(), [('insert', 'ghost@example.com')])

    def test_other_membership_check_errors_propagate(self):
        self.fake.fail('has_member', api_error(403, 'forbidden', reason='forbidden'))

        with self.assertRaises(ReconcileError) as ctx:
            self.reconciler.reconcile(desired_set(a='MEMBER'), GROUP)

        self.assertIsInstance(ctx.exception.cause, DirectoryAPIError)
        self.assertEqual(ctx.exception.cause.status_code, 403)


if __name__ == '__main__':
    unittest.main()
