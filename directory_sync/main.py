"""
Main orchestrator for Directory Sync.

Loads the configuration, builds the directory client and reconciles the
membership of every configured group, creating groups that are marked for
creation and keeping their aliases in line on the way.
"""

import sys
import json
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, Optional

from directory_sync.config import load_config, ConfigurationError, DirectoryConfig
from directory_sync.directory.base import DirectoryClient, EntityKind
from directory_sync.directory.entities import Group
from directory_sync.directory.google import GoogleDirectoryClient
from directory_sync.logging_setup import setup_logging, audit_logger
from directory_sync.membership import MembershipSet
from directory_sync.provisioning import DirectoryProvisioner
from directory_sync.reconciler import Reconciler, ReconcileResult
from directory_sync.retry import RetryPolicy

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class SyncOrchestrator:
    """
    Runs one synchronization pass over every configured group.

    Group failures are counted and logged; the run carries on with the next
    group until max_errors failures have accumulated.
    """

    def __init__(self, config_path: Optional[str] = None, dry_run: bool = False,
                 client: Optional[DirectoryClient] = None,
                 retry_policy: Optional[RetryPolicy] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            dry_run: Log the planned changes without applying them
            client: Directory client to use instead of building one from the configuration
            retry_policy: Retry policy to use instead of building one from the configuration
        """
        self.config = None
        self.directory_config = None
        self.config_path = config_path
        self.dry_run = dry_run
        self.client = client
        self.retry_policy = retry_policy

        self.sync_stats = {
            'groups_processed': 0,
            'groups_failed': 0,
            'groups_created': 0,
            'members_added': 0,
            'members_removed': 0,
            'members_updated': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'group_details': {}
        }

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, 1 if a group failed, 2 for configuration errors, 4 otherwise)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            setup_logging(self.config.get('logging', {}))
            audit_logger.log_configuration_access(self.config_path or 'config.yaml')

            logger.info(f"Starting Directory Sync{' (dry run)' if self.dry_run else ''}")

            self._build_client()
            self._process_groups()

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()

            self._log_sync_summary()

            if self.sync_stats['groups_failed'] > 0:
                logger.warning(f"Sync completed with {self.sync_stats['groups_failed']} group failures")
                return 1
            logger.info("Sync completed successfully")
            return 0

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return 2
        except SyncError as e:
            logger.error(f"Sync aborted: {e}")
            self._log_sync_summary()
            return 1
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return 4

    def _load_configuration(self):
        """Load and validate configuration."""
        if self.config is None:
            self.config = load_config(self.config_path)
            self.directory_config = DirectoryConfig.from_dict(self.config)

    def _build_client(self):
        """Build the retry policy and the directory client unless they were injected."""
        if self.retry_policy is None:
            self.retry_policy = RetryPolicy.from_config(self.directory_config)
        if self.client is None:
            self.client = GoogleDirectoryClient.from_config(self.directory_config)

    def _process_groups(self):
        """Reconcile every configured group, aborting after too many failures."""
        reconciler = Reconciler(self.client, self.retry_policy)
        provisioner = DirectoryProvisioner(self.client, self.retry_policy, resolver=reconciler.resolver)
        max_errors = self.config.get('error_handling', {}).get('max_errors', 5)

        for group_config in self.config.get('groups', []):
            group_email = group_config['group_email']
            try:
                result = self._sync_group(reconciler, provisioner, group_config)
            except Exception as e:
                self.sync_stats['groups_failed'] += 1
                self.sync_stats['group_details'][group_email] = {'status': 'failed', 'error': str(e)}
                logger.error(f"Error syncing group {group_email}: {e}")

                if self.sync_stats['groups_failed'] >= max_errors:
                    raise SyncError(f"Aborting sync after {self.sync_stats['groups_failed']} group failures")
                continue

            self.sync_stats['groups_processed'] += 1
            self.sync_stats['members_removed'] += result.applied['delete']
            self.sync_stats['members_updated'] += result.applied['patch_role']
            self.sync_stats['members_added'] += result.applied['upsert']
            self.sync_stats['group_details'][group_email] = {
                'status': 'dry_run' if result.dry_run else 'ok',
                'planned': result.plan.counts(),
                'applied': dict(result.applied),
                'runtime_seconds': result.runtime_seconds,
            }
            logger.info(f"Group {group_email}: {result.applied['upsert']} added, "
                        f"{result.applied['delete']} removed, {result.applied['patch_role']} updated")

    def _sync_group(self, reconciler: Reconciler, provisioner: DirectoryProvisioner,
                    group_config: Dict[str, Any]) -> ReconcileResult:
        """
        Provision one group if requested, then reconcile its members.

        Returns:
            ReconcileResult of the membership reconciliation
        """
        group_email = group_config['group_email']
        logger.info(f"Syncing group: {group_email}")

        desired = MembershipSet.from_config(group_config.get('members', []))

        if group_config.get('create') or group_config.get('aliases') is not None:
            if not self._provision_group(provisioner, group_config):
                # Dry run of a group that does not exist yet: every member would be added
                return reconciler.reconcile(desired, group_email, fetch_actual=MembershipSet, dry_run=True)

        return reconciler.reconcile(desired, group_email, dry_run=self.dry_run)

    def _provision_group(self, provisioner: DirectoryProvisioner, group_config: Dict[str, Any]) -> bool:
        """
        Create the group or align its aliases.

        Returns:
            False if the group does not exist and this is a dry run, True otherwise
        """
        group_email = group_config['group_email']
        aliases = group_config.get('aliases')

        existing = provisioner.read_group(group_email)
        if existing is None:
            if not group_config.get('create'):
                raise SyncError(f"Group {group_email} does not exist and is not marked for creation")
            if self.dry_run:
                logger.info(f"[dry-run] would create group {group_email}")
                return False
            group = Group(
                email=group_email,
                name=group_config.get('name') or group_email.split('@')[0],
                description=group_config.get('description'),
                aliases=aliases,
            )
            provisioner.create_group(group, ignore_duplicates=True)
            self.sync_stats['groups_created'] += 1
            audit_logger.log_change('create_group', group_email, group.domain, True)
        elif aliases is not None and not self.dry_run:
            provisioner.update_group_aliases(existing.id or group_email, aliases)
        return True

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Groups processed: {stats['groups_processed']}")
        logger.info(f"Groups failed: {stats['groups_failed']}")
        logger.info(f"Groups created: {stats['groups_created']}")
        logger.info(f"Members added: {stats['members_added']}")
        logger.info(f"Members removed: {stats['members_removed']}")
        logger.info(f"Members updated: {stats['members_updated']}")

        for group_email, details in stats['group_details'].items():
            logger.debug(f"  {group_email}: {details}")

    def health_check(self) -> Dict[str, Any]:
        """
        Check that the configuration loads and the directory answers.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': f"Configuration loaded successfully ({len(self.config.get('groups', []))} groups)"
            }
        except Exception as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            self._build_client()
            domains, _ = self.retry_policy.call(
                "list domains for health check",
                lambda: self.client.list_page(EntityKind.DOMAIN)
            )
            health_status['checks']['directory'] = {
                'status': 'pass',
                'message': f'Directory reachable, {len(domains)} domains visible'
            }
        except Exception as e:
            health_status['checks']['directory'] = {
                'status': 'fail',
                'message': f'Directory check failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        return health_status


def main():
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='Google Workspace group membership sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--dry-run', action='store_true',
                        help='Log the planned changes without applying them')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')

    args = parser.parse_args()

    orchestrator = SyncOrchestrator(config_path=args.config, dry_run=args.dry_run)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
