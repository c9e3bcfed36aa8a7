"""Retrying of remote operations with exponential backoff and jitter.

Errors are classified as retryable (the remote host could not be reached, the
connection was reset, an operation timed out) or fatal (the credential was rejected,
permission was denied, the target is invalid). Retryable errors are retried up to a
fixed number of attempts, waiting an exponentially increasing, jittered delay between
attempts; fatal errors are raised straight away.
"""

import logging
import random
import socket
import time
from typing import Callable, Optional, TypeVar

from namdrunner.sim_management.cancellation import CancellationToken, check_cancelled
from namdrunner.sim_management.errors import ChainCancelledError, RunnerError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_KEYWORDS = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "temporary",
    "temporarily",
    "busy",
    "unavailable",
    "interrupted",
    "broken pipe",
    "reset",
    "eof",
)

PERMANENT_KEYWORDS = (
    "authentication",
    "permission",
    "access denied",
    "unauthorized",
    "no such file",
    "not found",
)


def is_retryable(error: BaseException) -> bool:
    """Whether an error is worth retrying.

    Errors from this package say for themselves whether they are retryable. Other
    errors are classified by type and, failing that, by the text of their message.
    """

    if isinstance(error, ChainCancelledError):
        return False

    if isinstance(error, RunnerError):
        return error.retryable

    if isinstance(error, (PermissionError, FileNotFoundError)):
        return False

    if isinstance(error, (ConnectionError, TimeoutError, socket.timeout, EOFError)):
        return True

    message = str(error).lower()
    if any(keyword in message for keyword in PERMANENT_KEYWORDS):
        return False

    return any(keyword in message for keyword in TRANSIENT_KEYWORDS)


class RetryPolicy:
    """A policy for retrying an operation.

    Parameters
    ----------
    max_attempts : int, optional
        (Default: 3) The total number of attempts, including the first.
    initial_delay : float, optional
        (Default: 1) The delay in seconds before the first retry.
    max_delay : float, optional
        (Default: 32) The largest delay in seconds between attempts, before jitter.
    multiplier : float, optional
        (Default: 2) The factor by which the delay grows after each retry.
    jitter : float, optional
        (Default: 0.1) The largest random addition to a delay, as a fraction of it.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 32.0,
        multiplier: float = 2.0,
        jitter: float = 0.1,
    ):
        if not isinstance(max_attempts, int) or max_attempts < 1:
            raise ValueError(
                f"Expected 'max_attempts' to be a positive integer but received "
                f"{max_attempts} instead."
            )
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter = jitter

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(max_attempts={self.max_attempts}, "
            f"initial_delay={self.initial_delay}, max_delay={self.max_delay}, "
            f"multiplier={self.multiplier}, jitter={self.jitter})"
        )

    def delay(self, retry_number: int) -> float:
        """The delay in seconds before the given retry (counting from 1), including a
        random jitter."""

        delay = min(self.initial_delay * self.multiplier ** (retry_number - 1), self.max_delay)
        return delay + random.uniform(0, self.jitter * delay)

    def call(
        self,
        func: Callable[[], T],
        description: str = "operation",
        cancel: Optional[CancellationToken] = None,
        on_retry: Optional[Callable[[BaseException], None]] = None,
    ) -> T:
        """Call `func`, retrying on retryable errors.

        Parameters
        ----------
        func : Callable[[], T]
            The operation to attempt.
        description : str, optional
            (Default: "operation") What the operation does, for logging.
        cancel : CancellationToken, optional
            (Default: None) If given, cancellation is checked before each attempt and
            interrupts the wait between attempts.
        on_retry : Callable[[BaseException], None], optional
            (Default: None) Called with the error before waiting to retry, e.g. to reset
            a dropped connection.

        Returns
        -------
        T
            The return value of `func`.

        Raises
        ------
        Exception
            The error from the last attempt, if all attempts fail, or the first fatal
            error.
        ChainCancelledError
            If cancellation is requested.
        """

        retry_number = 0
        while True:
            check_cancelled(cancel, description)
            try:
                return func()
            except Exception as e:
                retry_number += 1
                if not is_retryable(e):
                    raise

                if retry_number >= self.max_attempts:
                    logger.warning(
                        "Max retry attempts reached for %s: %s", description, e
                    )
                    raise

                delay = self.delay(retry_number)
                logger.warning(
                    "Failed to %s: %s. Retrying in %.2f seconds...", description, e, delay
                )
                if on_retry is not None:
                    on_retry(e)

                if cancel is not None:
                    cancel.wait(delay)
                else:
                    time.sleep(delay)


COMMAND_RETRY = RetryPolicy(max_attempts=3, initial_delay=1.0, max_delay=32.0)
"""Retry policy for ordinary remote commands."""

QUICK_RETRY = RetryPolicy(max_attempts=2, initial_delay=0.2, max_delay=2.0)
"""Retry policy for quick, frequent queries such as status polls."""

FILE_RETRY = RetryPolicy(max_attempts=5, initial_delay=2.0, max_delay=60.0, multiplier=1.5)
"""Retry policy for file transfers."""

NO_RETRY = RetryPolicy(max_attempts=1)
"""A policy that makes a single attempt."""
