from threading import Event
from typing import Optional

from namdrunner.sim_management.errors import ChainCancelledError


class CancellationToken:
    """A flag through which a caller can ask a running chain to stop.

    The token is checked at each point where remote work may be suspended: before
    connecting, before each command, before each transfer chunk and while waiting to
    retry. Once cancellation is requested no new remote operation is started, but
    operations that have already finished are not undone.
    """

    def __init__(self):
        self._event = Event()

    def cancel(self) -> None:
        """Request cancellation."""

        self._event.set()

    @property
    def cancelled(self) -> bool:
        """(Read-only) Whether cancellation has been requested."""

        return self._event.is_set()

    def raise_if_cancelled(self, context: str = "") -> None:
        """Raise `ChainCancelledError` if cancellation has been requested."""

        if self._event.is_set():
            suffix = f" before {context}" if context else ""
            raise ChainCancelledError(f"Cancelled{suffix}.")

    def wait(self, timeout: Optional[float]) -> bool:
        """Block for up to `timeout` seconds, returning early (with ``True``) if
        cancellation is requested."""

        return self._event.wait(timeout=timeout)


def check_cancelled(token: Optional[CancellationToken], context: str = "") -> None:
    """As for `CancellationToken.raise_if_cancelled`, allowing for no token."""

    if token is not None:
        token.raise_if_cancelled(context)
