"""Composition of shell commands for the remote host.

Every command run on the remote host is a `Command`, and the only way of making one
from variable data is `build_command`, which accepts only `SafeToken` parameters (or
other `Command` objects). A `SafeToken` is produced by `escape_parameter`, which quotes
its argument so that the shell sees it as a single literal word.
"""

import shlex
import string
from pathlib import PurePosixPath
from typing import Union


class SafeToken(str):
    """A string that has been escaped for use as a single shell word."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({str.__repr__(self)})"


class Command(str):
    """A complete shell command, composed only from trusted templates and escaped
    parameters."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({str.__repr__(self)})"

    def then(self, other: "Command") -> "Command":
        """Chain another command to run only if this one succeeds."""

        if not isinstance(other, Command):
            raise TypeError(
                f"Expected 'other' to be of type {Command} but received {type(other)} "
                "instead."
            )
        return Command(f"{self} && {other}")


def escape_parameter(value: Union[str, int, PurePosixPath]) -> SafeToken:
    """Escape a value so that it is interpreted by a POSIX shell as one literal word.

    Strings are wrapped in single quotes, with any embedded single quotes closed,
    escaped and re-opened, so that no character within the value is interpreted by the
    shell.

    Parameters
    ----------
    value : Union[str, int, PurePosixPath]
        The value to escape.

    Returns
    -------
    SafeToken
        The escaped value.

    Examples
    --------
    >>> print(escape_parameter("it's"))
    'it'"'"'s'
    """

    if isinstance(value, bool) or not isinstance(value, (str, int, PurePosixPath)):
        raise TypeError(
            f"Expected 'value' to be a str, int or path but received {type(value)} "
            "instead."
        )

    text = str(value)
    if "\0" in text:
        raise ValueError("Cannot escape a value containing a null byte.")

    return SafeToken(shlex.quote(text))


def build_command(template: str, **params: Union[SafeToken, Command]) -> Command:
    """Build a command from a template and escaped parameters.

    The template uses ``{name}`` placeholders (as for ``str.format``); every placeholder
    must be supplied, and every supplied parameter must be a `SafeToken` (or a
    `Command`, for nesting commands). The template itself must be program text, never
    data supplied by a user.

    Raises
    ------
    TypeError
        If a parameter has not been escaped.
    KeyError
        If a placeholder in the template has no corresponding parameter.
    ValueError
        If a parameter is supplied that does not appear in the template.
    """

    for name, value in params.items():
        if not isinstance(value, (SafeToken, Command)):
            raise TypeError(
                f"Parameter '{name}' must be escaped with escape_parameter before being "
                f"used in a command, but received {type(value)}."
            )

    placeholders = {
        field for _, field, _, _ in string.Formatter().parse(template) if field
    }
    unused = set(params) - placeholders
    if unused:
        raise ValueError(f"Parameters {sorted(unused)} do not appear in the template.")

    return Command(template.format(**params))


def cd_and_run(directory: Union[str, PurePosixPath], command: Command) -> Command:
    """Make a command that changes to a directory and then runs `command` there."""

    return build_command(
        "cd {directory} && {command}",
        directory=escape_parameter(str(directory)),
        command=command,
    )
