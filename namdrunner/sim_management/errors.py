"""
Error types raised by the job engine.

Every error raised from the session, transfer and chain layers derives from
`RunnerError`, which carries a category, a stable code, whether the failure is worth
retrying and a set of actionable suggestions for the user. Exceptions from third-party
libraries (``paramiko``, ``fabric``/``invoke``) are translated into these types at the
boundary where they are caught.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from enum import Enum
from typing import Any, Optional


class ErrorCategory(Enum):
    """User-facing categories of failure."""

    NETWORK = "Network"
    """The remote host could not be reached, or the connection dropped or timed out."""

    AUTHENTICATION = "Authentication"
    """The credential was rejected by the remote host."""

    VALIDATION = "Validation"
    """Input was rejected before any remote call was made."""

    REMOTE_COMMAND = "RemoteCommand"
    """A remote tool exited with a non-zero exit code."""

    FILESYSTEM = "Filesystem"
    """A remote file operation failed (permissions, quota, missing file)."""

    SESSION = "Session"
    """The session is closed, disposed or otherwise unusable."""


class RunnerError(Exception):
    """Base class for errors raised by the job engine.

    Parameters
    ----------
    msg : str
        A human-readable description of the failure.
    details : str, optional
        (Default: None) Additional detail, e.g. the text of an underlying error.
    suggestions : Sequence[str], optional
        (Default: None) Actions the user could take to resolve the failure. If not
        provided, the default suggestions for the error class are used.

    Attributes
    ----------
    category : ErrorCategory
        (Class attribute) The category of the error.
    code : str
        (Class attribute) A stable error code.
    retryable : bool
        (Class attribute) Whether the operation that raised the error may succeed if
        repeated.
    """

    category = ErrorCategory.SESSION
    code = "ERR_000"
    retryable = False
    default_suggestions: tuple[str, ...] = ()

    def __init__(
        self,
        msg: str,
        details: Optional[str] = None,
        suggestions: Optional[Sequence[str]] = None,
    ):
        super().__init__(msg)
        self.details = details
        self.suggestions = (
            tuple(suggestions) if suggestions is not None else self.default_suggestions
        )

    def to_dict(self) -> dict[str, Any]:
        """A JSON-serialisable summary of the error, suitable for storing on a job
        record."""

        return {
            "category": self.category.value,
            "code": self.code,
            "message": str(self),
            "details": self.details,
            "retryable": self.retryable,
            "suggestions": list(self.suggestions),
        }


class NetworkError(RunnerError):
    """Raised when the remote host cannot be reached or the connection is lost."""

    category = ErrorCategory.NETWORK
    code = "NET_001"
    retryable = True
    default_suggestions = (
        "Check your network connection.",
        "Verify the cluster hostname is correct.",
        "Check whether you need to be on a VPN.",
        "Try again in a moment.",
    )


class CommandTimeoutError(NetworkError):
    """Raised when a remote command or transfer does not finish within its timeout."""

    code = "NET_002"
    default_suggestions = (
        "The cluster may be under heavy load; try again in a moment.",
        "Check your network connection.",
    )


class AuthenticationError(RunnerError):
    """Raised when the remote host rejects the supplied credential."""

    category = ErrorCategory.AUTHENTICATION
    code = "AUTH_001"
    default_suggestions = (
        "Check your username and password.",
        "Check whether your password has expired.",
        "Contact the system administrator if you still cannot log in.",
    )


class SessionError(RunnerError):
    """Raised when an operation is attempted on a session that cannot be used."""

    code = "SESSION_001"
    default_suggestions = ("Reconnect to the cluster.",)


class ValidationError(RunnerError):
    """Raised when input is rejected before any remote call is made.

    Parameters
    ----------
    msg : str
        A summary of the failure.
    issues : Iterable[str], optional
        (Default: None) The individual problems found. If not provided then `msg` is
        taken to be the single issue.
    suggestions : Sequence[str], optional
        (Default: None) Actions the user could take to resolve the problems.
    """

    category = ErrorCategory.VALIDATION
    code = "VAL_001"

    def __init__(
        self,
        msg: str,
        issues: Optional[Iterable[str]] = None,
        suggestions: Optional[Sequence[str]] = None,
    ):
        self.issues = tuple(issues) if issues is not None else (msg,)
        details = "; ".join(self.issues) if issues is not None else None
        super().__init__(msg, details=details, suggestions=suggestions)


class RemoteCommandError(RunnerError):
    """Raised when a remote tool exits with a non-zero exit code, or produces output
    that cannot be interpreted.

    Parameters
    ----------
    msg : str
        A human-readable description of the failure.
    exit_code : int, optional
        (Default: None) The exit code of the remote command.
    stderr : str, optional
        (Default: "") Standard error from the remote command.
    failure_kind : str, optional
        (Default: "unknown") The kind of failure recognised from the command's output.
    suggestions : Sequence[str], optional
        (Default: None) Actions the user could take to resolve the failure.
    """

    category = ErrorCategory.REMOTE_COMMAND
    code = "SLURM_001"
    default_suggestions = ("Check the job's resource request and try the step again.",)

    def __init__(
        self,
        msg: str,
        exit_code: Optional[int] = None,
        stderr: str = "",
        failure_kind: str = "unknown",
        suggestions: Optional[Sequence[str]] = None,
    ):
        super().__init__(msg, details=stderr.strip() or None, suggestions=suggestions)
        self.exit_code = exit_code
        self.stderr = stderr
        self.failure_kind = failure_kind


class FilesystemError(RunnerError):
    """Raised when a remote file operation fails for a reason that retrying will not
    fix, such as a permission or quota problem."""

    category = ErrorCategory.FILESYSTEM
    code = "FILE_001"
    default_suggestions = (
        "Check that you have write access to your project and scratch directories.",
        "Check your disk quota on the cluster.",
    )


class RemoteNotFoundError(FilesystemError):
    """Raised when a remote file or directory does not exist."""

    code = "FILE_002"
    default_suggestions = ("Check that the file exists on the cluster.",)


class ChainCancelledError(RunnerError):
    """Raised inside an automation chain when cancellation has been requested."""

    code = "CHAIN_001"


class InvalidJobStatusError(RunnerError):
    """Raised when the status of a job is not appropriate for an action to be
    performed."""

    category = ErrorCategory.VALIDATION
    code = "VAL_002"

    def __init__(self, msg, status=None):
        super().__init__(msg)
        self.status = status


class UnknownJobIdError(RunnerError):
    """Raised when a job ID does not correspond to a job in the local cache."""

    category = ErrorCategory.VALIDATION
    code = "VAL_003"

    def __init__(self, msg, unknown_ids: Optional[Sequence[Any]] = None):
        super().__init__(msg)
        self.unknown_ids = unknown_ids


_FAILURE_SIGNATURES = (
    (
        "out_of_memory",
        re.compile(r"out[ _-]of[ _-]memory|oom[ -]kill|exceeded (job )?memory", re.I),
        "The job ran out of memory; request more memory or fewer cores per task.",
    ),
    (
        "invalid_partition",
        re.compile(r"invalid partition", re.I),
        "Choose a partition that exists on the cluster.",
    ),
    (
        "invalid_qos",
        re.compile(r"invalid qos|qos.*(not permitted|invalid)", re.I),
        "Choose a QoS that is valid for the selected partition.",
    ),
    (
        "invalid_time_limit",
        re.compile(r"time limit|invalid time", re.I),
        "Reduce the wall-clock limit to within the QoS maximum.",
    ),
    (
        "invalid_account",
        re.compile(r"invalid account|account.*not permitted", re.I),
        "Check that your account is allowed to submit to this partition.",
    ),
    (
        "job_not_found",
        re.compile(r"invalid job id", re.I),
        "The scheduler no longer knows about this job.",
    ),
    (
        "module_not_found",
        re.compile(r"command not found|unable to locate a modulefile", re.I),
        "Check the environment bootstrap and module names in the cluster profile.",
    ),
)

_FILESYSTEM_SIGNATURES = (
    (
        "permission_denied",
        re.compile(r"permission denied|operation not permitted", re.I),
        "Check that you have access to the directory.",
    ),
    (
        "disk_quota",
        re.compile(r"disk quota exceeded|no space left on device", re.I),
        "Free up space in your project or scratch directory.",
    ),
)


def classify_remote_failure(
    exit_code: Optional[int], stderr: str, stdout: str = "", action: str = "command"
) -> RunnerError:
    """Make an error from the output of a failed remote command.

    The text of the command's output is matched against known failure signatures, so
    that e.g. an out-of-memory failure or an invalid partition is reported in terms the
    user can act upon. Permission and quota failures give a `FilesystemError`; all other
    failures give a `RemoteCommandError`.

    Parameters
    ----------
    exit_code : int, optional
        The exit code of the remote command.
    stderr : str
        Standard error from the remote command.
    stdout : str, optional
        (Default: "") Standard output from the remote command.
    action : str, optional
        (Default: "command") A short description of what was being attempted, used in
        the error message.

    Returns
    -------
    RunnerError
        The error describing the failure (not raised).
    """

    text = f"{stderr}\n{stdout}"
    for kind, pattern, suggestion in _FILESYSTEM_SIGNATURES:
        if pattern.search(text):
            error = FilesystemError(
                f"Could not {action}: {kind.replace('_', ' ')}",
                details=stderr.strip() or None,
                suggestions=(suggestion,),
            )
            error.failure_kind = kind
            return error

    for kind, pattern, suggestion in _FAILURE_SIGNATURES:
        if pattern.search(text):
            return RemoteCommandError(
                f"Could not {action}: {kind.replace('_', ' ')} (exit code {exit_code})",
                exit_code=exit_code,
                stderr=stderr,
                failure_kind=kind,
                suggestions=(suggestion,),
            )

    return RemoteCommandError(
        f"Could not {action}: remote command exited with code {exit_code}",
        exit_code=exit_code,
        stderr=stderr,
    )
