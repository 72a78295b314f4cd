"""
Waiting out the directory's read-after-write lag.

A freshly created group or user can keep answering 404 for a while, and a
deleted one can keep showing up. These helpers poll under the retry policy
until the entity reaches the expected state or the deadline passes.
"""

import logging
from typing import Callable, Optional, TypeVar

from directory_sync.directory.base import NotFoundError
from directory_sync.retry import (
    DEFAULT_OPTIONS,
    NOT_FOUND_OPTIONS,
    NonRetryableError,
    Operation,
    RetryableError,
    RetryPolicy,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ConsistencyTimeoutError(NonRetryableError):
    """Raised when an entity did not reach the expected visibility before the deadline."""

    def __init__(self, message: str, cause: Exception):
        self.cause = cause
        super().__init__(message)


class EntityStillPresentError(RetryableError):
    """An entity that was deleted is still visible."""
    pass


class ConditionNotMetError(RetryableError):
    """A polled condition does not hold yet."""
    pass


class EventualConsistencyWait:
    """Polls for created entities to appear and deleted entities to disappear."""

    def __init__(self, retry_policy: RetryPolicy):
        self.retry_policy = retry_policy

    def wait_until_visible(self, fetch: Callable[[], T], description: str,
                           deadline: Optional[float] = None) -> T:
        """
        Poll until fetch stops raising NotFoundError.

        Args:
            fetch: Read of the entity that was just created
            description: What is being waited for, used in logs and errors
            deadline: Seconds to wait (policy default if None)

        Returns:
            The entity as returned by fetch

        Raises:
            ConsistencyTimeoutError: If the entity is still not found at the deadline
        """
        try:
            entity = self.retry_policy.execute(Operation(f"wait for {description}", fetch),
                                               NOT_FOUND_OPTIONS, deadline)
        except NotFoundError as e:
            raise ConsistencyTimeoutError(f"Taking too long to create this resource ({description}): {e}", e) from e

        logger.debug(f"{description} is visible")
        return entity

    def wait_until_gone(self, fetch: Callable[[], object], description: str,
                        deadline: Optional[float] = None) -> None:
        """
        Poll until fetch raises NotFoundError.

        Raises:
            ConsistencyTimeoutError: If the entity is still visible at the deadline
        """
        def probe():
            try:
                fetch()
            except NotFoundError:
                return None
            raise EntityStillPresentError(f"{description} is still visible")

        try:
            self.retry_policy.execute(Operation(f"wait for removal of {description}", probe),
                                      DEFAULT_OPTIONS, deadline)
        except EntityStillPresentError as e:
            raise ConsistencyTimeoutError(f"Taking too long to delete this resource ({description}): {e}", e) from e

        logger.debug(f"{description} is gone")

    def wait_until_true(self, check: Callable[[], bool], description: str,
                        deadline: Optional[float] = None) -> None:
        """
        Poll until check returns True.

        Used where visibility shows up in a listing rather than as a 404,
        such as an alias appearing in the alias list of its owner.

        Raises:
            ConsistencyTimeoutError: If the condition still does not hold at the deadline
        """
        def probe():
            if not check():
                raise ConditionNotMetError(f"{description} is not visible yet")

        try:
            self.retry_policy.execute(Operation(f"wait for {description}", probe),
                                      DEFAULT_OPTIONS, deadline)
        except ConditionNotMetError as e:
            raise ConsistencyTimeoutError(f"Taking too long to create this resource ({description}): {e}", e) from e

        logger.debug(f"{description} is visible")
