#!/usr/bin/env python3
"""
Unit tests for configuration module.

Covers loading, validation, environment variable overrides and the
DirectoryConfig built from the loaded configuration.
"""

import os
import sys
import tempfile
import yaml
import unittest
from unittest.mock import patch
from typing import Dict, Any

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.config import (
    DEFAULT_OAUTH_SCOPES, ConfigLoader, ConfigurationError, DirectoryConfig, load_config, validate_email
)


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'directory': {
                'credentials': '/etc/directory-sync/service-account.json',
                'impersonated_user_email': 'admin@example.com',
            },
            'groups': [
                {
                    'group_email': 'Engineering@example.com',
                    'members': [
                        {'email': 'Alice@Example.com', 'role': 'owner'},
                        {'email': 'bob@example.com'},
                    ]
                }
            ]
        }
        self.files = []

    def tearDown(self):
        for path in self.files:
            os.unlink(path)

    def create_test_config(self, config_data: Dict[str, Any]) -> str:
        """Create a temporary config file with the given data."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.safe_dump(config_data, f)
        self.files.append(f.name)
        return f.name

    def assert_invalid(self, config_data: Dict[str, Any], *fragments: str):
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(self.create_test_config(config_data)).load()
        for fragment in fragments:
            self.assertIn(fragment, str(ctx.exception))

    def test_valid_config_gets_defaults(self):
        config = load_config(self.create_test_config(self.valid_config))

        self.assertEqual(config['directory']['customer_id'], 'my_customer')
        self.assertEqual(config['directory']['timeout_minutes'], 5)
        self.assertEqual(config['directory']['oauth_scopes'], list(DEFAULT_OAUTH_SCOPES))
        self.assertEqual(config['retry'], {'initial_delay_seconds': 1.0, 'max_jitter_ms': 1000,
                                           'max_delay_seconds': None})
        self.assertEqual(config['logging']['level'], 'INFO')
        self.assertEqual(config['error_handling']['max_errors'], 5)

    def test_emails_and_roles_are_normalized(self):
        config = load_config(self.create_test_config(self.valid_config))
        group = config['groups'][0]

        self.assertEqual(group['group_email'], 'engineering@example.com')
        self.assertEqual(group['members'], [
            {'email': 'alice@example.com', 'role': 'OWNER'},
            {'email': 'bob@example.com', 'role': 'MEMBER'},
        ])

    def test_file_not_found(self):
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader('/nonexistent/config.yaml').load()
        self.assertIn('not found', str(ctx.exception))

    def test_invalid_yaml(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write('groups: [unclosed\n')
        self.files.append(f.name)

        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(f.name).load()
        self.assertIn('Invalid YAML', str(ctx.exception))

    def test_groups_are_required(self):
        self.assert_invalid({'directory': {}}, 'At least one group must be configured')

    def test_all_errors_are_reported_together(self):
        self.valid_config['groups'][0]['members'] = [
            {'email': 'Alice <alice@example.com>'},
            {'email': 'a' * 64 + '@example.com'},
            {'email': 'carol@example.com', 'role': 'admin'},
            {'role': 'MEMBER'},
        ]
        self.valid_config['groups'].append({'group_email': 'not-an-email'})

        self.assert_invalid(
            self.valid_config,
            'groups[0].members[0].email: unexpected email format',
            'exceeds 63 characters',
            "groups[0].members[2].role: Unknown role 'admin'",
            'Missing email for groups[0].members[3]',
            'groups[1].group_email: unable to parse email address not-an-email',
            'Missing members list for groups[1]',
        )

    def test_groups_must_be_a_list(self):
        self.valid_config['groups'] = {'group_email': 'eng@example.com', 'members': []}

        self.assert_invalid(self.valid_config, 'groups must be a list')

    def test_malformed_group_and_member_entries(self):
        self.valid_config['groups'][0]['members'] = ['alice@example.com', {'email': 42}]
        self.valid_config['groups'].append('ops@example.com')
        self.valid_config['groups'].append({'group_email': 'ops@example.com', 'members': 'bob@example.com'})
        self.valid_config['retry'] = ['initial_delay_seconds']

        self.assert_invalid(
            self.valid_config,
            'groups[0].members[0] must be a mapping with an email',
            'groups[0].members[1].email must be a string',
            'groups[1] must be a mapping',
            'groups[2].members must be a list',
            'retry section must be a mapping',
        )

    def test_duplicate_groups(self):
        self.valid_config['groups'].append({'group_email': 'ENGINEERING@example.com', 'members': []})

        self.assert_invalid(self.valid_config, 'Duplicate group_email')

    def test_invalid_retry_settings(self):
        self.valid_config['retry'] = {'initial_delay_seconds': 5, 'max_delay_seconds': 1}
        self.valid_config['directory']['timeout_minutes'] = 0

        self.assert_invalid(self.valid_config, 'retry.max_delay_seconds', 'directory.timeout_minutes')

    def test_group_aliases(self):
        self.valid_config['groups'][0]['aliases'] = ['Eng@example.com']
        config = load_config(self.create_test_config(self.valid_config))
        self.assertEqual(config['groups'][0]['aliases'], ['eng@example.com'])

        self.valid_config['groups'][0]['aliases'] = 'eng@example.com'
        self.assert_invalid(self.valid_config, 'groups[0].aliases must be a list')

    def test_empty_member_list_is_allowed(self):
        self.valid_config['groups'][0]['members'] = []

        config = load_config(self.create_test_config(self.valid_config))

        self.assertEqual(config['groups'][0]['members'], [])

    def test_credentials_from_environment(self):
        del self.valid_config['directory']['credentials']
        env = {'GCLOUD_KEYFILE_JSON': '{"type": "fallback"}', 'GOOGLE_CREDENTIALS': '{"type": "first"}'}

        with patch.dict(os.environ, env):
            config = load_config(self.create_test_config(self.valid_config))

        self.assertEqual(config['directory']['credentials'], '{"type": "first"}')

    def test_configured_values_win_over_environment(self):
        env = {'GOOGLE_CREDENTIALS': '{"type": "env"}', 'IMPERSONATED_USER_EMAIL': 'other@example.com'}

        with patch.dict(os.environ, env):
            config = load_config(self.create_test_config(self.valid_config))

        self.assertEqual(config['directory']['credentials'], '/etc/directory-sync/service-account.json')
        self.assertEqual(config['directory']['impersonated_user_email'], 'admin@example.com')

    def test_impersonated_user_from_environment(self):
        del self.valid_config['directory']['impersonated_user_email']

        with patch.dict(os.environ, {'IMPERSONATED_USER_EMAIL': 'admin2@example.com'}):
            config = load_config(self.create_test_config(self.valid_config))

        self.assertEqual(config['directory']['impersonated_user_email'], 'admin2@example.com')


class TestDirectoryConfig(unittest.TestCase):
    """Test cases for DirectoryConfig."""

    def test_from_dict(self):
        config = DirectoryConfig.from_dict({
            'directory': {
                'credentials': '{}',
                'impersonated_user_email': 'admin@example.com',
                'customer_id': 'C0123',
                'timeout_minutes': 2,
                'oauth_scopes': ['https://www.googleapis.com/auth/admin.directory.group'],
            },
            'retry': {'initial_delay_seconds': 2, 'max_jitter_ms': 0, 'max_delay_seconds': 60},
        })

        self.assertEqual(config.customer_id, 'C0123')
        self.assertEqual(config.timeout_minutes, 2)
        self.assertEqual(config.oauth_scopes, ('https://www.googleapis.com/auth/admin.directory.group',))
        self.assertEqual(config.initial_delay_seconds, 2)
        self.assertEqual(config.max_delay_seconds, 60)

    def test_defaults(self):
        config = DirectoryConfig.from_dict({})

        self.assertIsNone(config.credentials)
        self.assertEqual(config.oauth_scopes, DEFAULT_OAUTH_SCOPES)
        self.assertEqual(config.timeout_minutes, 5)
        self.assertIsNone(config.max_delay_seconds)


class TestValidateEmail(unittest.TestCase):

    def test_plain_address(self):
        self.assertEqual(validate_email('alice@example.com'), [])

    def test_display_name_is_rejected(self):
        self.assertIn('expected an email format of myemail@domain.com',
                      validate_email('Alice <alice@example.com>')[0])

    def test_local_part_limit(self):
        self.assertEqual(validate_email('a' * 63 + '@example.com'), [])
        self.assertEqual(len(validate_email('a' * 64 + '@example.com')), 1)


if __name__ == '__main__':
    unittest.main()
