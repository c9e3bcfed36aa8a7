import re
from pathlib import PurePosixPath
from typing import Any

from namdrunner.sim_management.errors import ValidationError

IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")
FILENAME_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")
SHELL_METACHARACTERS = frozenset(";&|`$()<>{}[]*?!~#'\"\\\n\r\t ")
MAX_IDENTIFIER_LENGTH = 64
MAX_FILENAME_LENGTH = 255


def _check_str(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(
            f"Expected '{name}' to be of type {str} but received {type(value)} instead."
        )
    return value


def _check_common(value: str, name: str, max_length: int) -> None:
    """Rejections shared by all identifier-like strings."""

    if not value:
        raise ValidationError(f"{name} cannot be empty.")

    if len(value) > max_length:
        raise ValidationError(f"{name} exceeds maximum length of {max_length} characters.")

    if "\0" in value:
        raise ValidationError(f"{name} contains a null byte.")

    if not value.isascii():
        raise ValidationError(f"{name} contains non-ASCII characters.")

    if ".." in value or value.startswith(("/", "\\")):
        raise ValidationError(f"{name} contains a path traversal sequence.")


def sanitize_identifier(value: Any, name: str = "Identifier") -> str:
    """Validate an identifier such as a job ID or job name.

    Identifiers may only contain ASCII letters, digits, hyphens and underscores, so that
    they are safe to use as a single directory segment on the remote host.

    Parameters
    ----------
    value : Any
        The identifier to validate.
    name : str, optional
        (Default: "Identifier") What the identifier is, for use in error messages.

    Returns
    -------
    str
        The validated identifier, unchanged.

    Raises
    ------
    ValidationError
        If the identifier is empty, exceeds the maximum length, contains a path
        traversal sequence or contains characters other than those allowed.
    """

    value = _check_str(value, name)
    _check_common(value, name, MAX_IDENTIFIER_LENGTH)
    if not IDENTIFIER_PATTERN.match(value):
        raise ValidationError(
            f"{name} contains invalid characters. Allowed characters are "
            "alphanumeric, hyphens, and underscores."
        )

    return value


def sanitize_username(value: Any) -> str:
    """Validate a username on the remote host.

    As for `sanitize_identifier`, except that dots are also allowed (but not a leading
    dot).
    """

    value = _check_str(value, "Username")
    _check_common(value, "Username", MAX_IDENTIFIER_LENGTH)
    if any(char in SHELL_METACHARACTERS for char in value):
        raise ValidationError("Username contains shell metacharacters.")

    if value.startswith(".") or not USERNAME_PATTERN.match(value):
        raise ValidationError(
            "Username contains invalid characters. Allowed characters are "
            "alphanumeric, dots, hyphens, and underscores."
        )

    return value


def sanitize_filename(value: Any) -> str:
    """Validate the name of an uploaded file.

    File names are used exactly as given on the remote host, so rather than being
    rewritten an unsafe name is rejected. Names may contain ASCII letters, digits, dots,
    hyphens and underscores, and may not start with a dot or a hyphen.

    Raises
    ------
    ValidationError
        If the name is not a safe, plain file name.
    """

    value = _check_str(value, "File name")
    _check_common(value, "File name", MAX_FILENAME_LENGTH)
    if value.startswith((".", "-")):
        raise ValidationError(f"File name '{value}' cannot start with '.' or '-'.")

    if not FILENAME_PATTERN.match(value):
        raise ValidationError(
            f"File name '{value}' contains invalid characters. Allowed characters are "
            "alphanumeric, dots, hyphens, and underscores."
        )

    return value


def validate_relative_path(value: Any) -> PurePosixPath:
    """Validate a path relative to a job directory, e.g. ``outputs/run.dcd``.

    Raises
    ------
    ValidationError
        If the path is empty, absolute, contains a null byte or a ``..`` segment, or any
        segment fails `sanitize_filename`.
    """

    value = _check_str(value, "Relative path")
    if not value:
        raise ValidationError("Relative path cannot be empty.")

    if "\0" in value:
        raise ValidationError("Relative path contains a null byte.")

    path = PurePosixPath(value)
    if path.is_absolute() or value.startswith("\\"):
        raise ValidationError(f"Path '{value}' must be relative.")

    if ".." in path.parts:
        raise ValidationError(f"Path '{value}' contains a path traversal sequence.")

    for part in path.parts:
        sanitize_filename(part)

    return path
