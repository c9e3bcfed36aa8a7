"""
Type aliases used across the `namdrunner` package.


Type Definitions
------------------------------------------------------------------------------------
[`FilePath`][namdrunner.sim_management.types.FilePath]
Represents a file path, defined as a union of `str` and `PathLike` to support both
string-based and OS-native path objects.

[`ProgressCallback`][namdrunner.sim_management.types.ProgressCallback]
A callable that receives progress events emitted by the automation chains.

"""

from os import PathLike
from typing import Any, Callable, Union

FilePath = Union[str, PathLike]
"""A type to represent filepaths."""

ProgressCallback = Callable[[Any], None]
"""A type to represent a receiver of progress events."""
