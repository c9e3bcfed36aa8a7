"""Authenticated sessions with the remote host, and execution of commands over them.

A `Session` owns a single SSH connection (made with ``fabric``) and serialises all
commands and file transfers made through it. The password used to authenticate is held
in memory only, for as long as the session may need to reconnect, and is overwritten
when the session is disposed.
"""

import dataclasses
import errno
import logging
import socket
from threading import BoundedSemaphore, RLock
from typing import Callable, Optional, TypeVar, Union

from fabric import Connection
from invoke.exceptions import CommandTimedOut
from paramiko.ssh_exception import AuthenticationException, SSHException

from namdrunner.sim_management.cancellation import CancellationToken
from namdrunner.sim_management.cluster import Timeouts
from namdrunner.sim_management.errors import (
    AuthenticationError,
    CommandTimeoutError,
    FilesystemError,
    NetworkError,
    RemoteNotFoundError,
    RunnerError,
    SessionError,
)
from namdrunner.sim_management.retry import COMMAND_RETRY, RetryPolicy, is_retryable
from namdrunner.sim_management.shell import Command
from namdrunner.utilities.string_validation import sanitize_username

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_SESSIONS = 4
"""The most sessions that may be open at once in a process."""

_session_slots = BoundedSemaphore(MAX_SESSIONS)


@dataclasses.dataclass(frozen=True)
class CommandResult:
    """The outcome of running a remote command.

    A non-zero exit code is not an error at this level: it is up to the caller to
    interpret it.
    """

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        """(Read-only) Whether the command exited with code 0."""
        return self.exit_code == 0


def translate_os_error(error: OSError, action: str) -> RunnerError:
    """Make a package error from an ``OSError`` raised by a socket or SFTP operation."""

    if error.errno == errno.ENOENT:
        return RemoteNotFoundError(f"Could not {action}: no such file or directory")
    elif error.errno in {errno.EACCES, errno.EPERM}:
        return FilesystemError(f"Could not {action}: permission denied")
    elif error.errno in {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}:
        return FilesystemError(f"Could not {action}: disk quota exceeded")
    elif isinstance(error, TimeoutError):
        return CommandTimeoutError(f"Could not {action}: timed out")
    elif isinstance(error, (ConnectionError, socket.gaierror)) or is_retryable(error):
        return NetworkError(f"Could not {action}: {error}")
    else:
        return FilesystemError(f"Could not {action}: {error}")


class Session:
    """An authenticated session with a remote host.

    Sessions are made with `connect`, or by creating an instance and calling `open`. A
    session should be disposed of when no longer needed, either by calling `dispose` or
    by using it as a context manager; this closes the connection and overwrites the
    credential held in memory.

    Every command run through a session is prefixed with the environment bootstrap of
    the remote site (e.g. sourcing a profile and loading modules). Commands and file
    transfers against one session run one at a time, in the order they are made.

    Parameters
    ----------
    host : str
        The hostname or IP address of the remote host.
    username : str
        The username to authenticate with.
    secret : Union[str, bytes, bytearray]
        The password to authenticate with. It is copied into a private buffer.
    bootstrap : str, optional
        (Default: "") Shell text to run before every command, e.g.
        ``"source /etc/profile && module load slurm"``.
    timeouts : Timeouts, optional
        (Default: None) Timeouts for connecting and running commands. If ``None`` the
        default ``Timeouts`` are used.
    retry_policy : RetryPolicy, optional
        (Default: ``COMMAND_RETRY``) How to retry operations that fail with a
        retryable error.
    """

    def __init__(
        self,
        host: str,
        username: str,
        secret: Union[str, bytes, bytearray],
        bootstrap: str = "",
        timeouts: Optional[Timeouts] = None,
        retry_policy: RetryPolicy = COMMAND_RETRY,
    ):
        if not isinstance(host, str) or not host.strip():
            raise ValueError("Expected 'host' to be a non-empty string.")

        self._host = host
        self._username = sanitize_username(username)
        self._secret = bytearray(secret.encode("utf-8") if isinstance(secret, str) else secret)
        self._bootstrap = bootstrap.strip()
        self._timeouts = timeouts if timeouts is not None else Timeouts()
        self._retry_policy = retry_policy
        self._lock = RLock()
        self._conn = None
        self._holds_slot = False
        self._disposed = False

    @property
    def host(self) -> str:
        """(Read-only) The remote host."""
        return self._host

    @property
    def username(self) -> str:
        """(Read-only) The username on the remote host."""
        return self._username

    @property
    def user_at_host(self) -> str:
        return f"{self._username}@{self._host}"

    @property
    def timeouts(self) -> Timeouts:
        """(Read-only) The timeouts used for remote operations."""
        return self._timeouts

    @property
    def is_open(self) -> bool:
        """(Read-only) Whether the session has been opened and not disposed."""
        return self._holds_slot and not self._disposed

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.user_at_host!r}, open={self.is_open})"

    def open(self, cancel: Optional[CancellationToken] = None) -> "Session":
        """Establish the connection to the remote host.

        Connection failures caused by the network are retried according to the
        session's retry policy. Authentication failures are not retried.

        Raises
        ------
        AuthenticationError
            If the remote host rejects the credential.
        NetworkError
            If the remote host cannot be reached.
        SessionError
            If the session has been disposed, or too many sessions are already open.
        """

        with self._lock:
            if self._disposed:
                raise SessionError(f"Session for {self.user_at_host} has been disposed.")
            if self._holds_slot:
                return self

            if not _session_slots.acquire(blocking=False):
                raise SessionError(
                    f"Cannot open more than {MAX_SESSIONS} sessions at once."
                )
            self._holds_slot = True

        try:
            self._retry_policy.call(
                self._ensure_connected,
                description=f"connect to {self._host}",
                cancel=cancel,
                on_retry=self._reset,
            )
        except Exception:
            self.dispose()
            raise

        logger.info("Connection to %s established.", self.user_at_host)
        return self

    def _open_connection(self) -> Connection:
        """Make and open a new connection, authenticating with the password."""

        conn = Connection(
            self.user_at_host,
            connect_kwargs={
                "password": self._secret.decode("utf-8"),
                "look_for_keys": False,
                "allow_agent": False,
            },
            connect_timeout=self._timeouts.connect,
        )
        try:
            conn.open()
        except AuthenticationException:
            raise AuthenticationError(
                f"Authentication failed for {self.user_at_host}."
            ) from None
        except (socket.error, SSHException, EOFError) as e:
            raise NetworkError(
                f"Could not connect to {self._host}: {e}", details=type(e).__name__
            ) from e
        finally:
            conn.connect_kwargs.pop("password", None)

        return conn

    def _ensure_connected(self) -> Connection:
        with self._lock:
            if self._disposed or not self._holds_slot:
                raise SessionError(f"Session for {self.user_at_host} is not open.")

            if self._conn is None or not self._conn.is_connected:
                self._close_connection()
                self._conn = self._open_connection()

            return self._conn

    def _close_connection(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except Exception as e:
                logger.debug("Ignoring error closing connection to %s: %s", self._host, e)
            self._conn = None

    def _reset(self, error: BaseException) -> None:
        """Drop the current connection after a network failure, so that the next
        attempt reconnects."""

        if isinstance(error, NetworkError):
            with self._lock:
                self._close_connection()

    def _with_bootstrap(self, command: Command) -> str:
        return f"{self._bootstrap} && {command}" if self._bootstrap else str(command)

    def execute(
        self,
        command: Command,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> CommandResult:
        """Run a command on the remote host.

        The command is prefixed with the session's environment bootstrap. A non-zero exit
        code is returned as part of the result rather than raised.

        Parameters
        ----------
        command : Command
            The command to run, as made by ``build_command``.
        timeout : float, optional
            (Default: None) The time in seconds to allow the command to run. If ``None``
            the session's default command timeout is used.
        cancel : CancellationToken, optional
            (Default: None) A token checked before each attempt.
        retry_policy : RetryPolicy, optional
            (Default: None) Overrides the session's retry policy.

        Returns
        -------
        CommandResult
            Standard output, standard error and the exit code of the command.

        Raises
        ------
        TypeError
            If `command` is not a `Command`.
        CommandTimeoutError
            If the command timed out on every attempt.
        NetworkError
            If the connection failed on every attempt.
        SessionError
            If the session is not open.
        """

        if not isinstance(command, Command):
            raise TypeError(
                f"Expected 'command' to be of type {Command} but received "
                f"{type(command)} instead."
            )

        full_command = self._with_bootstrap(command)
        timeout = timeout if timeout is not None else self._timeouts.command
        policy = retry_policy if retry_policy is not None else self._retry_policy
        return policy.call(
            lambda: self._execute_once(full_command, timeout),
            description=f"run command on {self.user_at_host}",
            cancel=cancel,
            on_retry=self._reset,
        )

    def _execute_once(self, command: str, timeout: float) -> CommandResult:
        with self._lock:
            conn = self._ensure_connected()
            logger.debug("Running on %s: %s", self.user_at_host, command)
            try:
                res = conn.run(command, hide=True, warn=True, timeout=timeout, in_stream=False)
            except CommandTimedOut as e:
                raise CommandTimeoutError(
                    f"Command timed out after {timeout} seconds on {self.user_at_host}."
                ) from e
            except (socket.error, SSHException, EOFError) as e:
                raise NetworkError(
                    f"Connection to {self._host} failed while running a command: {e}"
                ) from e

        return CommandResult(
            stdout=str(res.stdout), stderr=str(res.stderr), exit_code=res.exited
        )

    def sftp_call(
        self,
        func: Callable[..., T],
        action: str,
        cancel: Optional[CancellationToken] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> T:
        """Run a function against the session's SFTP client.

        The function is passed a ``paramiko.SFTPClient`` and is run with the session's
        lock held. Errors raised from it are translated into the package's error types
        and retried according to the retry policy.

        Parameters
        ----------
        func : Callable[[paramiko.SFTPClient], T]
            The operation to perform.
        action : str
            What the operation does, for error messages, e.g. "upload file.pdb".
        cancel : CancellationToken, optional
            (Default: None) A token checked before each attempt.
        retry_policy : RetryPolicy, optional
            (Default: None) Overrides the session's retry policy.
        """

        policy = retry_policy if retry_policy is not None else self._retry_policy
        return policy.call(
            lambda: self._sftp_once(func, action),
            description=action,
            cancel=cancel,
            on_retry=self._reset,
        )

    def _sftp_once(self, func: Callable[..., T], action: str) -> T:
        with self._lock:
            conn = self._ensure_connected()
            try:
                return func(conn.sftp())
            except RunnerError:
                raise
            except OSError as e:
                raise translate_os_error(e, action) from e
            except (SSHException, EOFError) as e:
                raise NetworkError(f"Could not {action}: {e}") from e

    def dispose(self) -> None:
        """Close the connection and overwrite the credential held in memory.

        The session cannot be used afterwards. Calling this more than once has no
        further effect.
        """

        with self._lock:
            if self._disposed:
                return None

            self._close_connection()
            for i in range(len(self._secret)):
                self._secret[i] = 0
            self._secret = bytearray()
            self._disposed = True
            if self._holds_slot:
                self._holds_slot = False
                _session_slots.release()

        logger.info("Session for %s closed.", self.user_at_host)
        return None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.dispose()


def connect(
    host: str,
    username: str,
    secret: Union[str, bytes, bytearray],
    bootstrap: str = "",
    timeouts: Optional[Timeouts] = None,
    retry_policy: RetryPolicy = COMMAND_RETRY,
    cancel: Optional[CancellationToken] = None,
) -> Session:
    """Open an authenticated session with a remote host.

    See `Session` for a description of the parameters.

    Raises
    ------
    AuthenticationError
        If the remote host rejects the credential.
    NetworkError
        If the remote host cannot be reached.
    SessionError
        If too many sessions are already open.
    """

    return Session(host, username, secret, bootstrap, timeouts, retry_policy).open(
        cancel=cancel
    )
