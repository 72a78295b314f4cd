"""
Retry utilities for handling transient directory failures.

Every remote call is wrapped in an Operation and run through
RetryPolicy.execute(). A failed attempt is classified by classify_error(),
turned into a RetryDecision for the caller's RetryOptions, and retried with
exponential backoff plus jitter until a wall-clock deadline runs out.

classify_error() is the only place that inspects error message text. The
directory service sometimes reports failures with a malformed or missing
status, so a handful of known messages have to be matched by pattern; this
is a quirk of the upstream service, not something to extend casually.
"""

import re
import time
import random
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, Optional, TypeVar

from directory_sync.directory.base import DirectoryAPIError, NotFoundError

logger = logging.getLogger(__name__)

T = TypeVar('T')

SERVER_ERROR_CODES = (500, 502, 503)
QUOTA_ERROR_CODES = (401, 429)
QUOTA_REASONS = ('quotaExceeded', 'rateLimitExceeded', 'userRateLimitExceeded')

# Each entry is retryable when every regex in it matches the error text.
UPSTREAM_RETRY_PATTERNS = (
    (re.compile(r'Invalid Input: Bad request for "'), re.compile(r'"code"\s*:\s*400')),
    (re.compile(r'Service unavailable\. Please try again'),),
    (re.compile(r'Eventual consistency\. Please try again'),),
)


class ErrorClass(Enum):
    """Failure categories of a remote call."""

    TRANSIENT_SERVER = 'transient_server'
    QUOTA = 'quota'
    NOT_FOUND = 'not_found'
    CONFLICT = 'conflict'
    INVALID = 'invalid'
    UPSTREAM_PATTERN = 'upstream_pattern'
    PENDING = 'pending'
    CONFIG_INVARIANT = 'config_invariant'
    DUPLICATE_MISMATCH = 'duplicate_mismatch'
    FATAL = 'fatal'


class RetryableError(Exception):
    """Base exception for conditions that are expected to clear up on their own."""
    pass


class NonRetryableError(Exception):
    """Base exception for errors that must never be retried."""

    error_class = ErrorClass.FATAL


class DecisionKind(Enum):
    RETRY = 'retry'
    RETRY_UNTIL_FOUND = 'retry_until_found'
    FATAL = 'fatal'


@dataclass(frozen=True)
class RetryOptions:
    """
    Per-call switches for the error classes that are only sometimes transient.

    Attributes:
        retry_not_found: Retry 404s (right after a create or delete)
        retry_on_conflict: Retry 409s
        retry_invalid: Retry 400s and "invalid" reasons
    """

    retry_not_found: bool = False
    retry_on_conflict: bool = False
    retry_invalid: bool = False


DEFAULT_OPTIONS = RetryOptions()
NOT_FOUND_OPTIONS = RetryOptions(retry_not_found=True)


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of classifying one failed attempt."""

    kind: DecisionKind
    error_class: ErrorClass
    error: Exception

    @property
    def retryable(self) -> bool:
        return self.kind != DecisionKind.FATAL


def _error_text(error: Exception) -> str:
    text = str(error)
    body = getattr(error, 'body', '')
    if body:
        text = f"{text} {body}"
    return text


def _matches_upstream_pattern(text: str) -> bool:
    return any(all(pattern.search(text) for pattern in group) for group in UPSTREAM_RETRY_PATTERNS)


def classify_error(error: Exception) -> ErrorClass:
    """
    Classify an error raised by a remote call.

    Args:
        error: Exception raised by the operation

    Returns:
        ErrorClass describing the failure
    """
    if isinstance(error, NonRetryableError):
        return error.error_class

    if isinstance(error, RetryableError):
        return ErrorClass.PENDING

    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorClass.TRANSIENT_SERVER

    status_code = getattr(error, 'status_code', None) if isinstance(error, DirectoryAPIError) else None
    reason = getattr(error, 'reason', None) if isinstance(error, DirectoryAPIError) else None

    if status_code in SERVER_ERROR_CODES:
        return ErrorClass.TRANSIENT_SERVER
    if status_code in QUOTA_ERROR_CODES or reason in QUOTA_REASONS:
        return ErrorClass.QUOTA
    if status_code == 404:
        return ErrorClass.NOT_FOUND
    if status_code == 409:
        return ErrorClass.CONFLICT

    # Checked before INVALID: the broken responses arrive as 400s or without a status.
    if _matches_upstream_pattern(_error_text(error)):
        return ErrorClass.UPSTREAM_PATTERN

    if status_code == 400 or reason == 'invalid':
        return ErrorClass.INVALID

    return ErrorClass.FATAL


def decide(error: Exception, options: RetryOptions = DEFAULT_OPTIONS) -> RetryDecision:
    """
    Decide whether a failed attempt should be retried.

    Args:
        error: Exception raised by the operation
        options: Switches for the conditionally retryable classes

    Returns:
        RetryDecision for this attempt
    """
    error_class = classify_error(error)

    if error_class in (ErrorClass.TRANSIENT_SERVER, ErrorClass.QUOTA,
                       ErrorClass.UPSTREAM_PATTERN, ErrorClass.PENDING):
        kind = DecisionKind.RETRY
    elif error_class == ErrorClass.NOT_FOUND and options.retry_not_found:
        kind = DecisionKind.RETRY_UNTIL_FOUND
    elif error_class == ErrorClass.CONFLICT and options.retry_on_conflict:
        kind = DecisionKind.RETRY
    elif error_class == ErrorClass.INVALID and options.retry_invalid:
        kind = DecisionKind.RETRY
    else:
        kind = DecisionKind.FATAL

    return RetryDecision(kind=kind, error_class=error_class, error=error)


@dataclass
class Operation(Generic[T]):
    """A described unit of remote work that can be attempted repeatedly."""

    description: str
    func: Callable[[], T]

    def execute(self) -> T:
        return self.func()

    def __str__(self) -> str:
        return self.description


class RetryPolicy:
    """
    Exponential backoff with jitter, bounded by a wall-clock deadline.

    The first retry waits initial_delay seconds, and the wait doubles after
    every retryable failure. A random jitter of 0..max_jitter_ms milliseconds
    is added to every sleep. Growth is uncapped unless max_delay is set, but a
    sleep never runs past the deadline. Once the deadline has passed the last
    error is raised unchanged, whatever its class.
    """

    def __init__(self, timeout_seconds: float = 300.0, initial_delay: float = 1.0,
                 max_jitter_ms: int = 1000, max_delay: Optional[float] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 rng: Optional[random.Random] = None):
        """
        Initialize retry policy.

        Args:
            timeout_seconds: Default deadline for one execute() call
            initial_delay: Wait before the first retry, in seconds
            max_jitter_ms: Upper bound of the random jitter added to each wait
            max_delay: Optional cap on the backoff before jitter
            sleep: Blocking sleep function
            clock: Monotonic clock used for the deadline
            rng: Random source for the jitter
        """
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if initial_delay <= 0:
            raise ValueError("initial_delay must be positive")
        if max_delay is not None and max_delay < initial_delay:
            raise ValueError("max_delay must not be smaller than initial_delay")

        self.timeout_seconds = timeout_seconds
        self.initial_delay = initial_delay
        self.max_jitter_ms = max_jitter_ms
        self.max_delay = max_delay
        self.sleep = sleep
        self.clock = clock
        self.rng = rng or random.Random()

    @classmethod
    def from_config(cls, config, **overrides) -> 'RetryPolicy':
        """Create a policy from a DirectoryConfig."""
        settings = {
            'timeout_seconds': config.timeout_minutes * 60,
            'initial_delay': config.initial_delay_seconds,
            'max_jitter_ms': config.max_jitter_ms,
            'max_delay': config.max_delay_seconds,
        }
        settings.update(overrides)
        return cls(**settings)

    def _jitter(self) -> float:
        if self.max_jitter_ms <= 0:
            return 0.0
        return self.rng.randint(0, self.max_jitter_ms) / 1000.0

    def execute(self, operation: Operation[T], options: RetryOptions = DEFAULT_OPTIONS,
                deadline: Optional[float] = None) -> T:
        """
        Run an operation until it succeeds, fails fatally, or the deadline passes.

        Args:
            operation: Operation to run
            options: Switches for the conditionally retryable classes
            deadline: Seconds allowed from the first attempt (policy default if None)

        Returns:
            Result of the first successful attempt

        Raises:
            Exception: The error of the last attempt, unchanged
        """
        allowed = self.timeout_seconds if deadline is None else deadline
        started = self.clock()
        delay = self.initial_delay
        attempt = 0

        while True:
            attempt += 1
            try:
                result = operation.execute()
            except Exception as e:
                decision = decide(e, options)
                if not decision.retryable:
                    logger.debug(f"{operation.description}: giving up on {decision.error_class.value} "
                                 f"error after attempt {attempt}: {e}")
                    raise

                remaining = allowed - (self.clock() - started)
                if remaining <= 0:
                    logger.debug(f"{operation.description}: deadline of {allowed:.0f}s exceeded "
                                 f"after {attempt} attempts, last error: {e}")
                    raise

                wait = min(delay + self._jitter(), remaining)
                logger.debug(f"{operation.description}: attempt {attempt} failed with "
                             f"{decision.error_class.value} error ({decision.kind.value}), "
                             f"retrying in {wait:.2f}s: {e}")
                self.sleep(wait)

                delay *= 2
                if self.max_delay is not None:
                    delay = min(delay, self.max_delay)
                continue

            if attempt > 1:
                logger.debug(f"{operation.description}: succeeded on attempt {attempt}")
            return result

    def call(self, description: str, func: Callable[[], T],
             options: RetryOptions = DEFAULT_OPTIONS, deadline: Optional[float] = None) -> T:
        """Shorthand for execute(Operation(description, func), ...)."""
        return self.execute(Operation(description, func), options, deadline)

    def execute_or_none(self, operation: Operation[T],
                        deadline: Optional[float] = None) -> Optional[T]:
        """
        Run a read operation, mapping a not-found result to None.

        A missing entity is a state signal for reads ("it is gone"), not an error.
        """
        try:
            return self.execute(operation, DEFAULT_OPTIONS, deadline)
        except NotFoundError:
            logger.debug(f"{operation.description}: entity does not exist")
            return None

