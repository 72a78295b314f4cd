"""
Directory service boundary: the abstract client, its errors, and typed entities.
"""

from directory_sync.directory.base import (
    ConflictError,
    DirectoryAPIError,
    DirectoryClient,
    EntityKind,
    NotFoundError,
)
