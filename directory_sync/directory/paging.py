"""
Paginated listing of directory entities under the retry policy.
"""

import logging
from typing import Any, List, Optional

from directory_sync.directory.base import DirectoryClient, EntityKind
from directory_sync.retry import DEFAULT_OPTIONS, Operation, RetryOptions, RetryPolicy

logger = logging.getLogger(__name__)


def list_all(client: DirectoryClient, policy: RetryPolicy, kind: EntityKind,
             parent: Optional[str] = None, query: Optional[str] = None,
             options: RetryOptions = DEFAULT_OPTIONS) -> List[Any]:
    """
    Fetch every page of a listing, each page fetch wrapped in the retry policy.

    Args:
        client: Directory client
        policy: Retry policy applied to every page request
        kind: Entity kind to list
        parent: Owning entity or scope
        query: Optional search query
        options: Retry switches (404 is fatal by default: a missing parent is not transient)

    Returns:
        All entities across all pages, in the order the service returned them
    """
    items: List[Any] = []
    page_token = None
    page = 0

    while True:
        page += 1
        token = page_token
        page_items, page_token = policy.execute(
            Operation(f"list {kind.value} page {page} of {parent or 'customer'}",
                      lambda: client.list_page(kind, parent, token, query)),
            options
        )
        items.extend(page_items)
        if not page_token:
            break

    logger.debug(f"Listed {len(items)} {kind.value} entities of {parent or 'customer'} in {page} pages")
    return items
