"""
Google Workspace implementation of the directory client.

Wraps the Admin SDK Directory API (and the Groups Settings API for group
settings) behind DirectoryClient. Authentication uses a service account with
domain-wide delegation when credentials are configured, and application
default credentials otherwise.
"""

import os
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import google.auth
import httplib2
from google.oauth2 import service_account
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from directory_sync.config import ConfigurationError, DirectoryConfig
from directory_sync.directory.base import DirectoryAPIError, DirectoryClient, EntityKind, make_api_error
from directory_sync.directory.entities import decode_entity, encode_entity

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 60.0

ALL_OPERATIONS = frozenset({'get', 'list', 'insert', 'patch', 'update', 'delete'})


@dataclass(frozen=True)
class ResourceSpec:
    """
    How one entity kind maps onto the discovery-based API resources.

    Attributes:
        path: Resource accessor chain on the service, e.g. ('groups', 'aliases')
        key_param: Request parameter naming the entity itself
        parent_param: Request parameter naming the owning entity
        customer_param: Customer parameter sent with every request
        list_customer_param: Customer parameter sent with list requests only (a parent domain replaces it)
        list_key: Response field holding the listed entities
        page_size: maxResults for list requests (None when the endpoint does not page)
        operations: Operations the endpoint supports
        settings: Served by the Groups Settings API instead of the Directory API
    """

    path: Tuple[str, ...]
    key_param: Optional[str]
    parent_param: Optional[str] = None
    customer_param: Optional[str] = None
    list_customer_param: Optional[str] = None
    list_key: Optional[str] = None
    page_size: Optional[int] = None
    operations: FrozenSet[str] = ALL_OPERATIONS
    settings: bool = False


RESOURCES: Dict[EntityKind, ResourceSpec] = {
    EntityKind.GROUP: ResourceSpec(
        path=('groups',), key_param='groupKey', list_customer_param='customer',
        list_key='groups', page_size=200,
    ),
    EntityKind.MEMBER: ResourceSpec(
        path=('members',), key_param='memberKey', parent_param='groupKey',
        list_key='members', page_size=200,
    ),
    EntityKind.GROUP_ALIAS: ResourceSpec(
        path=('groups', 'aliases'), key_param='alias', parent_param='groupKey',
        list_key='aliases', operations=frozenset({'list', 'insert', 'delete'}),
    ),
    EntityKind.USER: ResourceSpec(
        path=('users',), key_param='userKey', list_customer_param='customer',
        list_key='users', page_size=500,
    ),
    EntityKind.USER_ALIAS: ResourceSpec(
        path=('users', 'aliases'), key_param='alias', parent_param='userKey',
        list_key='aliases', operations=frozenset({'list', 'insert', 'delete'}),
    ),
    EntityKind.DOMAIN: ResourceSpec(
        path=('domains',), key_param='domainName', customer_param='customer',
        list_key='domains', operations=frozenset({'get', 'list', 'insert', 'delete'}),
    ),
    EntityKind.ORG_UNIT: ResourceSpec(
        path=('orgunits',), key_param='orgUnitPath', customer_param='customerId',
        list_key='organizationUnits',
    ),
    EntityKind.SCHEMA: ResourceSpec(
        path=('schemas',), key_param='schemaKey', customer_param='customerId',
        list_key='schemas',
    ),
    EntityKind.GROUP_SETTINGS: ResourceSpec(
        path=('groups',), key_param='groupUniqueId',
        operations=frozenset({'get', 'patch', 'update'}), settings=True,
    ),
}


def translate_http_error(error: HttpError) -> DirectoryAPIError:
    """
    Convert a googleapiclient HttpError into a DirectoryAPIError.

    The status code comes from the HTTP response; the reason and message come
    from the first entry of the JSON error body when it parses. The raw body
    is kept either way.
    """
    status = getattr(error.resp, 'status', None)
    status_code = int(status) if status is not None else None

    content = error.content or b''
    body = content.decode('utf-8', 'replace') if isinstance(content, bytes) else str(content)

    message = None
    reason = None
    try:
        payload = json.loads(body)
    except ValueError:
        payload = None

    details = payload.get('error') if isinstance(payload, dict) else None
    if isinstance(details, dict):
        message = details.get('message')
        errors = details.get('errors') or []
        if errors and isinstance(errors[0], dict):
            reason = errors[0].get('reason')

    text = f"googleapi: Error {status_code}: {message}" if message else str(error)
    if reason:
        text = f"{text}, {reason}"
    return make_api_error(text, status_code, reason, body)


def _load_credentials_info(credentials: str) -> Dict[str, Any]:
    """Parse service account credentials given as a file path or as inline JSON."""
    try:
        if os.path.isfile(credentials):
            with open(credentials, 'r') as f:
                return json.load(f)
        return json.loads(credentials)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Error loading credentials: {e}")


def build_credentials(config: DirectoryConfig):
    """
    Build credentials for the configured scopes.

    With service account credentials, the account impersonates
    impersonated_user_email, or itself when none is set.

    Raises:
        ConfigurationError: If the credentials cannot be parsed
    """
    scopes = list(config.oauth_scopes)

    if config.credentials:
        info = _load_credentials_info(config.credentials)
        try:
            credentials = service_account.Credentials.from_service_account_info(info, scopes=scopes)
        except ValueError as e:
            raise ConfigurationError(f"Invalid service account credentials: {e}")
        subject = config.impersonated_user_email or info.get('client_email')
        logger.info(f"Using service account {info.get('client_email')} acting as {subject}")
        return credentials.with_subject(subject)

    logger.info("No credentials configured, using application default credentials")
    credentials, _ = google.auth.default(scopes=scopes)
    return credentials


class GoogleDirectoryClient(DirectoryClient):
    """DirectoryClient backed by the Admin SDK Directory and Groups Settings APIs."""

    def __init__(self, directory_service, settings_service=None, customer_id: str = 'my_customer'):
        """
        Initialize the client.

        Args:
            directory_service: Discovery service for admin directory_v1
            settings_service: Discovery service for groupssettings v1 (optional)
            customer_id: Customer for users, domains, org units and schemas
        """
        self.directory_service = directory_service
        self.settings_service = settings_service
        self.customer_id = customer_id

    @classmethod
    def from_config(cls, config: DirectoryConfig,
                    http_timeout: float = DEFAULT_HTTP_TIMEOUT) -> 'GoogleDirectoryClient':
        """Authenticate and build both API services."""
        credentials = build_credentials(config)

        def authorized_http():
            return AuthorizedHttp(credentials, http=httplib2.Http(timeout=http_timeout))

        directory_service = build('admin', 'directory_v1', http=authorized_http(), cache_discovery=False)
        settings_service = build('groupssettings', 'v1', http=authorized_http(), cache_discovery=False)
        return cls(directory_service, settings_service, customer_id=config.customer_id)

    def _spec(self, kind: EntityKind, operation: str) -> ResourceSpec:
        spec = RESOURCES[kind]
        if operation not in spec.operations:
            raise ValueError(f"{operation} is not supported for {kind.value} entities")
        return spec

    def _resource(self, spec: ResourceSpec):
        service = self.settings_service if spec.settings else self.directory_service
        if service is None:
            raise ValueError("Group settings require a groupssettings service")
        resource = service
        for name in spec.path:
            resource = getattr(resource, name)()
        return resource

    def _params(self, spec: ResourceSpec, parent: Optional[str], key: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if spec.customer_param:
            params[spec.customer_param] = self.customer_id
        if spec.parent_param:
            if not parent:
                raise ValueError(f"{spec.parent_param} is required")
            params[spec.parent_param] = parent
        if key is not None:
            params[spec.key_param] = key
        return params

    def _execute(self, request, description: str) -> Any:
        try:
            return request.execute()
        except HttpError as e:
            error = translate_http_error(e)
            logger.debug(f"{description} failed: {error}")
            raise error from e
        except httplib2.HttpLib2Error as e:
            raise ConnectionError(f"{description} failed: {e}") from e

    def get_entity(self, kind: EntityKind, key: str, parent: Optional[str] = None) -> Any:
        spec = self._spec(kind, 'get')
        request = self._resource(spec).get(**self._params(spec, parent, key))
        return decode_entity(kind, self._execute(request, f"get {kind.value} {key}"))

    def list_page(self, kind: EntityKind, parent: Optional[str] = None,
                  page_token: Optional[str] = None,
                  query: Optional[str] = None) -> Tuple[List[Any], Optional[str]]:
        spec = self._spec(kind, 'list')
        params = self._params(spec, parent)

        if spec.list_customer_param:
            if parent:
                params['domain'] = parent
            else:
                params[spec.list_customer_param] = self.customer_id
        if kind == EntityKind.ORG_UNIT:
            params['type'] = 'all'
        if query:
            params['query'] = query
        if spec.page_size:
            params['maxResults'] = spec.page_size
            if page_token:
                params['pageToken'] = page_token

        response = self._execute(self._resource(spec).list(**params),
                                 f"list {kind.value} of {parent or self.customer_id}") or {}
        items = [decode_entity(kind, item) for item in response.get(spec.list_key) or []]
        return items, response.get('nextPageToken') or None

    def insert(self, kind: EntityKind, parent: Optional[str], entity: Any) -> Any:
        spec = self._spec(kind, 'insert')
        request = self._resource(spec).insert(body=encode_entity(entity), **self._params(spec, parent))
        return decode_entity(kind, self._execute(request, f"insert {kind.value} into {parent or self.customer_id}"))

    def patch(self, kind: EntityKind, parent: Optional[str], key: str, partial: Any) -> Any:
        spec = self._spec(kind, 'patch')
        request = self._resource(spec).patch(body=encode_entity(partial), **self._params(spec, parent, key))
        return decode_entity(kind, self._execute(request, f"patch {kind.value} {key}"))

    def update(self, kind: EntityKind, parent: Optional[str], key: str, entity: Any) -> Any:
        spec = self._spec(kind, 'update')
        request = self._resource(spec).update(body=encode_entity(entity), **self._params(spec, parent, key))
        return decode_entity(kind, self._execute(request, f"update {kind.value} {key}"))

    def delete(self, kind: EntityKind, parent: Optional[str], key: str) -> None:
        spec = self._spec(kind, 'delete')
        request = self._resource(spec).delete(**self._params(spec, parent, key))
        self._execute(request, f"delete {kind.value} {key}")

    def has_member(self, group_key: str, member_key: str) -> bool:
        request = self.directory_service.members().hasMember(groupKey=group_key, memberKey=member_key)
        response = self._execute(request, f"check membership of {member_key} in {group_key}")
        return bool(response.get('isMember'))
