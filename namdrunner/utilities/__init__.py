"""
namdrunner.utilities
====================

Validation helpers used throughout the package.

[`string_validation`][namdrunner.utilities.string_validation]:
    Sanitisers for identifiers, usernames, file names and relative paths that are later
    used to build remote paths and shell commands.
"""
