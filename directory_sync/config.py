"""
Configuration loading and management for Directory Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults, and builds the immutable DirectoryConfig that is
passed into the reconciliation core.
"""

import os
import re
import yaml
import logging
from dataclasses import dataclass
from email.utils import parseaddr
from typing import Dict, Any, List, Optional, Tuple

from directory_sync.membership import Role

logger = logging.getLogger(__name__)

DEFAULT_OAUTH_SCOPES = (
    'https://www.googleapis.com/auth/admin.directory.group',
    'https://www.googleapis.com/auth/admin.directory.user',
    'https://www.googleapis.com/auth/admin.directory.userschema',
)

DEFAULT_CUSTOMER_ID = 'my_customer'
DEFAULT_TIMEOUT_MINUTES = 5
MAX_EMAIL_LOCAL_PART_LENGTH = 63

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


def validate_email(value: str) -> List[str]:
    """
    Validate a plain email address.

    Args:
        value: Email address to check

    Returns:
        List of problems found (empty if valid)
    """
    if not value:
        return []

    name, address = parseaddr(value)
    if not address or not EMAIL_PATTERN.match(address):
        return [f"unable to parse email address {value}"]

    errors = []
    if name or address != value.strip():
        errors.append(f"unexpected email format for {value} expected an email format of myemail@domain.com")

    local = address.rsplit('@', 1)[0]
    if len(local) > MAX_EMAIL_LOCAL_PART_LENGTH:
        errors.append(f"local portion of email {value} exceeds {MAX_EMAIL_LOCAL_PART_LENGTH} characters")

    return errors


@dataclass(frozen=True)
class DirectoryConfig:
    """
    Settings for talking to the directory, built once at startup.

    Attributes:
        credentials: Service account key file path or inline JSON (None for default credentials)
        impersonated_user_email: Admin user the service account acts as
        oauth_scopes: OAuth scopes requested for the credentials
        customer_id: Customer the users, domains and schemas belong to
        timeout_minutes: Deadline of every retried remote call
        initial_delay_seconds: First backoff wait
        max_jitter_ms: Upper bound of the random jitter per wait
        max_delay_seconds: Optional backoff cap (None leaves growth uncapped)
    """

    credentials: Optional[str] = None
    impersonated_user_email: Optional[str] = None
    oauth_scopes: Tuple[str, ...] = DEFAULT_OAUTH_SCOPES
    customer_id: str = DEFAULT_CUSTOMER_ID
    timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES
    initial_delay_seconds: float = 1.0
    max_jitter_ms: int = 1000
    max_delay_seconds: Optional[float] = None

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'DirectoryConfig':
        """
        Build from a loaded configuration dictionary.

        Args:
            config: Full configuration (uses the 'directory' and 'retry' sections)
        """
        directory = config.get('directory', {}) or {}
        retry = config.get('retry', {}) or {}
        scopes = directory.get('oauth_scopes') or DEFAULT_OAUTH_SCOPES
        if not directory.get('oauth_scopes'):
            logger.info("No OAuth scopes provided, using default OAuth scopes")

        return cls(
            credentials=directory.get('credentials'),
            impersonated_user_email=directory.get('impersonated_user_email'),
            oauth_scopes=tuple(scopes),
            customer_id=directory.get('customer_id', DEFAULT_CUSTOMER_ID),
            timeout_minutes=directory.get('timeout_minutes', DEFAULT_TIMEOUT_MINUTES),
            initial_delay_seconds=retry.get('initial_delay_seconds', 1.0),
            max_jitter_ms=retry.get('max_jitter_ms', 1000),
            max_delay_seconds=retry.get('max_delay_seconds'),
        )


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variables checked, in order, for each overridable field
    ENV_OVERRIDES = {
        'directory.credentials': ('GOOGLE_CREDENTIALS', 'GOOGLE_CLOUD_KEYFILE_JSON', 'GCLOUD_KEYFILE_JSON'),
        'directory.impersonated_user_email': ('IMPERSONATED_USER_EMAIL',),
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides; configured values win over the environment."""
        for config_key, env_vars in self.ENV_OVERRIDES.items():
            if self._get_nested_value(self.config, config_key):
                continue
            for env_var in env_vars:
                env_value = os.getenv(env_var)
                if env_value:
                    self._set_nested_value(self.config, config_key, env_value)
                    logger.debug(f"Applied environment override for {config_key} from {env_var}")
                    break

    def _get_nested_value(self, config: Dict, key_path: str) -> Any:
        current = config
        for key in key_path.split('.'):
            if not isinstance(current, dict) or key not in current:
                return None
            current = current[key]
        return current

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        directory = self.config.get('directory') or {}
        if not isinstance(directory, dict):
            errors.append("directory section must be a mapping")
            directory = {}

        for error in validate_email(directory.get('impersonated_user_email') or ''):
            errors.append(f"directory.impersonated_user_email: {error}")

        timeout = directory.get('timeout_minutes', DEFAULT_TIMEOUT_MINUTES)
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            errors.append("directory.timeout_minutes must be a positive number")

        scopes = directory.get('oauth_scopes', [])
        if scopes and not isinstance(scopes, list):
            errors.append("directory.oauth_scopes must be a list")

        for section in ('retry', 'logging', 'error_handling'):
            if not isinstance(self.config.get(section) or {}, dict):
                errors.append(f"{section} section must be a mapping")
                self.config[section] = {}

        retry = self.config.get('retry') or {}
        delay = retry.get('initial_delay_seconds', 1.0)
        if not isinstance(delay, (int, float)) or delay <= 0:
            errors.append("retry.initial_delay_seconds must be a positive number")
        max_delay = retry.get('max_delay_seconds')
        if max_delay is not None and (not isinstance(max_delay, (int, float)) or max_delay < delay):
            errors.append("retry.max_delay_seconds must be a number not smaller than initial_delay_seconds")

        groups = self.config.get('groups', [])
        if not groups:
            errors.append("At least one group must be configured")
        elif not isinstance(groups, list):
            errors.append("groups must be a list")
            groups = []

        seen_groups = set()
        for i, group in enumerate(groups or []):
            group_prefix = f"groups[{i}]"
            if not isinstance(group, dict):
                errors.append(f"{group_prefix} must be a mapping")
                continue

            group_email = group.get('group_email')
            if not group_email:
                errors.append(f"Missing group_email for {group_prefix}")
            elif not isinstance(group_email, str):
                errors.append(f"{group_prefix}.group_email must be a string")
            else:
                for error in validate_email(group_email):
                    errors.append(f"{group_prefix}.group_email: {error}")
                if group_email.lower() in seen_groups:
                    errors.append(f"Duplicate group_email {group_email} in {group_prefix}")
                seen_groups.add(group_email.lower())

            aliases = group.get('aliases')
            if aliases is not None:
                if not isinstance(aliases, list):
                    errors.append(f"{group_prefix}.aliases must be a list")
                else:
                    for alias in aliases:
                        if not isinstance(alias, str):
                            errors.append(f"{group_prefix}.aliases must only contain strings")
                            continue
                        for error in validate_email(alias):
                            errors.append(f"{group_prefix}.aliases: {error}")

            members = group.get('members')
            if members is None:
                errors.append(f"Missing members list for {group_prefix} (use [] to remove every member)")
                continue
            if not isinstance(members, list):
                errors.append(f"{group_prefix}.members must be a list")
                continue

            for j, member in enumerate(members):
                member_prefix = f"{group_prefix}.members[{j}]"
                if not isinstance(member, dict):
                    errors.append(f"{member_prefix} must be a mapping with an email")
                    continue
                if not member.get('email'):
                    errors.append(f"Missing email for {member_prefix}")
                elif not isinstance(member['email'], str):
                    errors.append(f"{member_prefix}.email must be a string")
                else:
                    for error in validate_email(member['email']):
                        errors.append(f"{member_prefix}.email: {error}")
                try:
                    Role.parse(member.get('role', 'MEMBER'))
                except ValueError as e:
                    errors.append(f"{member_prefix}.role: {e}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        directory_defaults = {
            'customer_id': DEFAULT_CUSTOMER_ID,
            'timeout_minutes': DEFAULT_TIMEOUT_MINUTES,
            'oauth_scopes': list(DEFAULT_OAUTH_SCOPES),
        }
        directory_config = self.config.setdefault('directory', {}) or {}
        self.config['directory'] = directory_config
        for key, value in directory_defaults.items():
            if not directory_config.get(key):
                directory_config[key] = value

        retry_defaults = {
            'initial_delay_seconds': 1.0,
            'max_jitter_ms': 1000,
            'max_delay_seconds': None,
        }
        retry_config = self.config.setdefault('retry', {}) or {}
        self.config['retry'] = retry_config
        for key, value in retry_defaults.items():
            retry_config.setdefault(key, value)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_errors': 5
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        for group in self.config.get('groups', []):
            group['group_email'] = group['group_email'].lower()
            if group.get('aliases') is not None:
                group['aliases'] = [alias.lower() for alias in group['aliases']]
            for member in group['members']:
                member['email'] = member['email'].lower()
                member['role'] = Role.parse(member.get('role', 'MEMBER')).value


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
