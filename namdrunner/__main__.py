import argparse
import logging
import pathlib
import sys
from importlib.metadata import PackageNotFoundError, version

import namdrunner.app.cli


def get_version() -> str:
    """Retrieve the version of namdrunner currently installed."""

    try:
        return version("namdrunner")
    except PackageNotFoundError:
        return "Package not found."


def configure_logging(workspace: pathlib.Path, verbose: bool = False) -> None:
    """Send log records to a file in the workspace, leaving the terminal to the shell."""

    workspace.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=workspace / "namdrunner.log",
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )
    # Keep transport chatter out of the log unless asked for.
    if not verbose:
        logging.getLogger("paramiko").setLevel(logging.WARNING)


def main():
    """The entry point into the namdrunner command line application."""

    try:
        parser = argparse.ArgumentParser(
            description="Create, submit and track NAMD simulations on a SLURM cluster.",
        )
        parser.add_argument(
            "workspace",
            type=pathlib.Path,
            nargs="?",  # 0 or 1
            default=".namdrunner-ws",
            help="path to a directory for storing settings and job records (defaults to '%(default)s')",
        )
        parser.add_argument(
            "--verbose",
            action="store_true",
            help="write debug messages to the workspace log file",
        )
        parser.add_argument(
            "-v",
            "--version",
            action="version",
            version=f"namdrunner {get_version()}",
            help="show the current installed version of namdrunner and exit",
        )

        args = parser.parse_args()
        configure_logging(args.workspace, args.verbose)
        cli = namdrunner.app.cli.Cli(args.workspace)
        sys.exit(cli.cmdloop())

    except KeyboardInterrupt:
        sys.exit(print())  # Use of print ensures next shell prompt starts on new line


if __name__ == "__main__":
    main()
