"""Fake remote hosts for use in tests.

`FakeRemote` plays the part of a cluster login node: it holds an in-memory filesystem
(reachable over a fake SFTP client) and answers the shell commands the package runs,
with the scheduler's responses scripted by the test. `FakeConnection` stands in for
``fabric.Connection`` and is made by patching
``namdrunner.sim_management.session.Connection`` with ``FakeRemote.connect``.
"""

import errno
import pathlib
import shlex
import stat
import tempfile
import unittest
from pathlib import PurePosixPath
from types import SimpleNamespace
from typing import Optional
from unittest.mock import patch

from paramiko.ssh_exception import AuthenticationException

from namdrunner.sim_management.cache import JobCache
from namdrunner.sim_management.chains import ChainContext
from namdrunner.sim_management.cluster import ALPINE_PROFILE, ClusterProfile
from namdrunner.sim_management.jobs import (
    InputFile,
    JobSpec,
    ResourceRequest,
    SimulationParameters,
)
from namdrunner.sim_management.paths import RemoteLayout
from namdrunner.sim_management.retry import RetryPolicy
from namdrunner.sim_management.session import Session
from namdrunner.sim_management.slurm import StatusPoller
from namdrunner.sim_management.transfer import FileTransfer

FAST_RETRY = RetryPolicy(max_attempts=3, initial_delay=0, jitter=0)
"""A retry policy that does not wait between attempts."""

MTIME = 1_700_000_000


def _not_found(path: str) -> FileNotFoundError:
    return FileNotFoundError(errno.ENOENT, "No such file", path)


class FakeSftpFile:
    """An open file on a `FakeSftp`."""

    def __init__(self, sftp: "FakeSftp", path: str, mode: str):
        self._sftp = sftp
        self._path = path
        self._position = 0
        self.timeout = None
        if "w" in mode:
            sftp.remote.files[path] = bytearray()
        elif path not in sftp.remote.files:
            raise _not_found(path)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def settimeout(self, timeout):
        self.timeout = timeout

    def seek(self, offset):
        self._position = offset

    def write(self, data: bytes) -> None:
        self._sftp.writes += 1
        fault = self._sftp.write_faults.pop(self._sftp.writes, None)
        if fault is not None:
            raise fault

        buffer = self._sftp.remote.files[self._path]
        end = self._position + len(data)
        if len(buffer) < end:
            buffer.extend(b"\0" * (end - len(buffer)))
        buffer[self._position:end] = data
        self._position = end

    def read(self, size: int) -> bytes:
        buffer = self._sftp.remote.files[self._path]
        data = bytes(buffer[self._position:self._position + size])
        self._position += len(data)
        return data

    def flush(self):
        pass

    def close(self):
        pass


class FakeSftp:
    """A fake ``paramiko.SFTPClient`` over the filesystem of a `FakeRemote`.

    Attributes
    ----------
    write_faults : dict[int, Exception]
        Errors to raise, keyed on the number of the file write call (counting from 1)
        that should raise them. Each error is raised once.
    writes : int
        The number of file write calls made.
    """

    def __init__(self, remote: "FakeRemote"):
        self.remote = remote
        self.write_faults = {}
        self.writes = 0

    def open(self, path, mode="r"):
        path = str(path)
        if "w" in mode and str(PurePosixPath(path).parent) not in self.remote.dirs:
            raise _not_found(path)

        return FakeSftpFile(self, path, mode)

    def stat(self, path):
        path = str(path)
        if path in self.remote.dirs:
            return SimpleNamespace(st_size=4096, st_mode=stat.S_IFDIR | 0o755, st_mtime=MTIME)
        elif path in self.remote.files:
            return SimpleNamespace(
                st_size=len(self.remote.files[path]),
                st_mode=stat.S_IFREG | 0o644,
                st_mtime=MTIME,
            )
        raise _not_found(path)

    def listdir_attr(self, path):
        path = str(path)
        if path not in self.remote.dirs:
            raise _not_found(path)

        children = [p for p in self.remote.dirs | set(self.remote.files) if p != path]
        children = [p for p in children if str(PurePosixPath(p).parent) == path]
        attrs = []
        for child in children:
            attr = self.stat(child)
            attr.filename = PurePosixPath(child).name
            attrs.append(attr)

        return attrs

    def remove(self, path):
        path = str(path)
        if path not in self.remote.files:
            raise _not_found(path)
        del self.remote.files[path]

    def rmdir(self, path):
        path = str(path)
        if path not in self.remote.dirs:
            raise _not_found(path)
        self.remote.dirs.discard(path)


class FakeConnection:
    """A stand-in for ``fabric.Connection`` attached to a `FakeRemote`."""

    def __init__(self, remote: "FakeRemote", host: str, connect_kwargs=None, **kwargs):
        self.remote = remote
        self.host = host
        self.connect_kwargs = dict(connect_kwargs or {})
        self.kwargs = kwargs
        self.is_connected = False

    def open(self):
        self.remote.connection_attempts += 1
        if self.remote.unreachable:
            raise ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")

        if self.connect_kwargs.get("password") != self.remote.password:
            raise AuthenticationException("Authentication failed.")

        self.is_connected = True

    def close(self):
        self.is_connected = False

    def run(self, command, hide=None, warn=None, timeout=None, in_stream=None):
        if not self.is_connected:
            raise EOFError("Not connected")

        self.remote.timeouts.append(timeout)
        exit_code, stdout, stderr = self.remote.run(command)
        return SimpleNamespace(stdout=stdout, stderr=stderr, exited=exit_code)

    def sftp(self):
        if not self.is_connected:
            raise EOFError("Not connected")

        return self.remote.sftp


class FakeRemote:
    """A fake cluster login node.

    Understands the commands run by the package (``mkdir``, ``rm``, ``rsync``, ``cd``,
    ``sbatch``, ``squeue``, ``sacct`` and ``scancel``) against an in-memory filesystem.
    The output of the scheduler query commands and of ``scancel`` is scripted with
    `script`; ``sbatch`` assigns increasing job IDs unless scripted otherwise.

    Parameters
    ----------
    password : str, optional
        (Default: "secret") The password the remote accepts.
    """

    def __init__(self, password: str = "secret"):
        self.password = password
        self.unreachable = False
        self.files: dict[str, bytearray] = {}
        self.dirs = {"/"}
        self.commands: list[str] = []
        self.timeouts: list[Optional[float]] = []
        self.connections: list[FakeConnection] = []
        self.connection_attempts = 0
        self.sftp = FakeSftp(self)
        self._responses: dict[str, tuple[int, str, str]] = {}
        self._next_scheduler_id = 1000

    def connect(self, host, connect_kwargs=None, **kwargs) -> FakeConnection:
        """Make a connection; use as the side effect of a patched ``Connection``."""

        conn = FakeConnection(self, host, connect_kwargs=connect_kwargs, **kwargs)
        self.connections.append(conn)
        return conn

    def script(self, program: str, stdout: str = "", stderr: str = "", exit_code: int = 0):
        """Set the response of a program for all subsequent runs of it."""

        self._responses[program] = (exit_code, stdout, stderr)

    def unscript(self, program: str) -> None:
        """Restore the default response of a program."""

        self._responses.pop(program, None)

    def calls(self, program: str) -> list[list[str]]:
        """The arguments of each run of a program, in order."""

        calls = []
        for command in self.commands:
            calls += [argv for argv in self._split(command) if argv and argv[0] == program]
        return calls

    def add_dir(self, path) -> None:
        path = PurePosixPath(str(path))
        self.dirs.update(str(p) for p in [path, *path.parents])

    def write_file(self, path, data) -> None:
        self.add_dir(PurePosixPath(str(path)).parent)
        self.files[str(path)] = bytearray(data.encode() if isinstance(data, str) else data)

    def read_file(self, path) -> bytes:
        return bytes(self.files[str(path)])

    def exists(self, path) -> bool:
        return str(path) in self.dirs or str(path) in self.files

    @staticmethod
    def _split(command: str) -> list[list[str]]:
        segments = [[]]
        for token in shlex.split(command):
            if token == "&&":
                segments.append([])
            else:
                segments[-1].append(token)
        return segments

    def run(self, command: str) -> tuple[int, str, str]:
        self.commands.append(command)
        cwd = "/"
        stdout = ""
        for argv in self._split(command):
            program, args = argv[0], argv[1:]
            if program in {"source", "module"}:
                continue
            elif program in self._responses:
                exit_code, out, err = self._responses[program]
                stdout += out
                if exit_code != 0:
                    return exit_code, stdout, err
            elif program == "cd":
                if args[0] not in self.dirs:
                    return 1, stdout, f"cd: {args[0]}: No such file or directory"
                cwd = args[0]
            elif program == "mkdir":
                self.add_dir([a for a in args if not a.startswith("-")][-1])
            elif program == "rm":
                self._remove_tree([a for a in args if not a.startswith("-")][-1])
            elif program == "rsync":
                result = self._rsync(*[a for a in args if not a.startswith("-")])
                if result is not None:
                    return result
            elif program == "sbatch":
                if str(PurePosixPath(cwd) / args[0]) not in self.files:
                    return 1, stdout, f"sbatch: error: Unable to open file {args[0]}"
                self._next_scheduler_id += 1
                stdout += f"Submitted batch job {self._next_scheduler_id}\n"
            elif program in {"squeue", "sacct", "scancel"}:
                continue
            else:
                return 127, stdout, f"bash: {program}: command not found"

        return 0, stdout, ""

    def _remove_tree(self, path: str) -> None:
        prefix = path.rstrip("/") + "/"
        self.files = {
            p: d for p, d in self.files.items() if p != path and not p.startswith(prefix)
        }
        self.dirs = {p for p in self.dirs if p != path and not p.startswith(prefix)}

    def _rsync(self, source: str, destination: str):
        source, destination = source.rstrip("/"), destination.rstrip("/")
        if source not in self.dirs:
            return 23, "", f"rsync: change_dir \"{source}\" failed: No such file or directory (2)"

        self.add_dir(destination)
        for d in [p for p in self.dirs if p.startswith(source + "/")]:
            self.add_dir(destination + d[len(source):])
        for p, data in list(self.files.items()):
            if p.startswith(source + "/"):
                self.files[destination + p[len(source):]] = bytearray(data)

        return None


def make_profile(**changes) -> ClusterProfile:
    """The Alpine profile with fields changed, e.g. to remove the bootstrap."""

    return ClusterProfile.from_dict(changes, base=ALPINE_PROFILE) if changes else ALPINE_PROFILE


def write_input_files(directory, names=("system.pdb", "system.psf", "par_all36.prm")):
    """Write small input files to a local directory, returning their paths."""

    paths = []
    for name in names:
        path = pathlib.Path(directory) / name
        path.write_text(f"contents of {name}\n")
        paths.append(path)
    return paths


def make_job_spec(paths, job_name="equilibration", **parameter_changes) -> JobSpec:
    parameters = dict(
        steps=10000, temperature=300.0, timestep=2.0, output_name="equil"
    ) | parameter_changes
    return JobSpec(
        job_name=job_name,
        resources=ResourceRequest(
            cores=24, memory_gb=16, walltime="04:00:00", partition="amilan", qos="normal"
        ),
        parameters=SimulationParameters(**parameters),
        input_files=tuple(InputFile.from_path(p) for p in paths),
    )


class FakeRemoteTestCase(unittest.TestCase):
    """Base class for tests that need a connected session to a `FakeRemote`.

    Provides ``self.remote``, an open ``self.session``, a ``self.cache`` in a temporary
    directory (``self.tmp_dir``) and a ``self.context`` for running chains.
    """

    username = "testuser"

    def setUp(self) -> None:
        super().setUp()
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.tmp_dir = pathlib.Path(self.tmp.name)

        self.remote = FakeRemote()
        patcher = patch(
            "namdrunner.sim_management.session.Connection", side_effect=self.remote.connect
        )
        patcher.start()
        self.addCleanup(patcher.stop)

        self.profile = ALPINE_PROFILE
        self.session = Session(
            self.profile.host,
            self.username,
            self.remote.password,
            bootstrap=self.profile.bootstrap,
            retry_policy=FAST_RETRY,
        ).open()
        self.addCleanup(self.session.dispose)

        self.cache = JobCache(self.tmp_dir / "jobs.db")
        self.context = ChainContext(
            session=self.session,
            transfer=FileTransfer(self.session, retry_policy=FAST_RETRY),
            cache=self.cache,
            layout=RemoteLayout(self.profile, self.username),
            profile=self.profile,
            poller=StatusPoller(self.session),
        )

    def make_input_files(self, names=("system.pdb", "system.psf", "par_all36.prm")):
        local_dir = self.tmp_dir / "inputs"
        local_dir.mkdir(exist_ok=True)
        return write_input_files(local_dir, names)
