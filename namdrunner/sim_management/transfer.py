"""File transfer to and from the remote host over a session's SFTP channel."""

import dataclasses
import io
import logging
import pathlib
import stat
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import BinaryIO, Callable, Optional, Union

from namdrunner.sim_management.cancellation import CancellationToken, check_cancelled
from namdrunner.sim_management.errors import FilesystemError, classify_remote_failure
from namdrunner.sim_management.retry import FILE_RETRY, RetryPolicy
from namdrunner.sim_management.session import Session
from namdrunner.sim_management.shell import build_command, escape_parameter
from namdrunner.sim_management.types import FilePath

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024
"""The size in bytes of each chunk sent when uploading."""

RemotePath = Union[str, PurePosixPath]


@dataclasses.dataclass(frozen=True)
class TransferResult:
    """The outcome of an upload."""

    remote_path: str
    bytes_transferred: int
    chunks: int


@dataclasses.dataclass(frozen=True)
class RemoteEntry:
    """An entry in a remote directory listing."""

    name: str
    path: str
    size: int
    is_dir: bool
    modified: Optional[str] = None


class FileTransfer:
    """Uploads, downloads and manages files on the remote host through a `Session`.

    Uploads are sent in fixed-size chunks. Each chunk is written through its own file
    handle at its own offset, with its own timeout window and a flush afterwards, so a
    chunk that fails can be retried on its own without restarting the whole transfer.

    Parameters
    ----------
    session : Session
        The session to transfer files over.
    chunk_size : int, optional
        (Default: ``CHUNK_SIZE``) The size in bytes of each uploaded chunk.
    retry_policy : RetryPolicy, optional
        (Default: ``FILE_RETRY``) How to retry failed chunks and file operations.
    """

    def __init__(
        self,
        session: Session,
        chunk_size: int = CHUNK_SIZE,
        retry_policy: RetryPolicy = FILE_RETRY,
    ):
        if not isinstance(chunk_size, int) or chunk_size <= 0:
            raise ValueError(
                f"Expected 'chunk_size' to be a positive integer but received "
                f"{chunk_size} instead."
            )
        self._session = session
        self._chunk_size = chunk_size
        self._retry_policy = retry_policy

    @property
    def session(self) -> Session:
        """(Read-only) The session used for transfers."""
        return self._session

    @property
    def _chunk_timeout(self) -> float:
        return self._session.timeouts.transfer_chunk

    def upload(
        self,
        source: Union[bytes, FilePath],
        remote_path: RemotePath,
        cancel: Optional[CancellationToken] = None,
        progress: Optional[Callable[[int, int], None]] = None,
    ) -> TransferResult:
        """Upload bytes, or the contents of a local file, to a remote file.

        Parameters
        ----------
        source : Union[bytes, FilePath]
            The data to upload, or the path to a local file to upload.
        remote_path : Union[str, PurePosixPath]
            The path of the remote file to write. An existing file is overwritten.
        cancel : CancellationToken, optional
            (Default: None) A token checked before each chunk.
        progress : Callable[[int, int], None], optional
            (Default: None) Called after each chunk with the number of bytes sent so far
            and the total size.

        Returns
        -------
        TransferResult
            The remote path, the number of bytes written and the number of chunks.

        Raises
        ------
        FilesystemError
            If the local file cannot be read, the remote file cannot be written or the
            size of the remote file does not match the source afterwards.
        NetworkError
            If a chunk could not be sent after retrying.
        """

        remote = str(remote_path)
        with self._open_source(source) as reader:
            total = reader.seek(0, io.SEEK_END)
            reader.seek(0)
            n_chunks = max(1, -(-total // self._chunk_size))
            logger.debug("Uploading %d bytes to %s in %d chunks", total, remote, n_chunks)

            for index in range(n_chunks):
                check_cancelled(cancel, f"uploading chunk {index + 1} of {remote}")
                offset = index * self._chunk_size
                reader.seek(offset)
                data = reader.read(self._chunk_size)
                self._session.sftp_call(
                    lambda sftp, o=offset, d=data: self._write_chunk(sftp, remote, o, d),
                    action=f"upload chunk {index + 1}/{n_chunks} of {remote}",
                    cancel=cancel,
                    retry_policy=self._retry_policy,
                )
                if progress is not None:
                    progress(offset + len(data), total)

        remote_size = self._session.sftp_call(
            lambda sftp: sftp.stat(remote).st_size,
            action=f"check size of {remote}",
            cancel=cancel,
            retry_policy=self._retry_policy,
        )
        if remote_size != total:
            raise FilesystemError(
                f"Upload to {remote} is incomplete: expected {total} bytes but found "
                f"{remote_size}."
            )

        logger.info("Uploaded %s (%d bytes)", remote, total)
        return TransferResult(remote_path=remote, bytes_transferred=total, chunks=n_chunks)

    def upload_text(
        self,
        text: str,
        remote_path: RemotePath,
        cancel: Optional[CancellationToken] = None,
    ) -> TransferResult:
        """Write text to a remote file, using the same binary-safe path as `upload`."""

        return self.upload(text.encode("utf-8"), remote_path, cancel=cancel)

    @staticmethod
    def _open_source(source: Union[bytes, FilePath]) -> BinaryIO:
        if isinstance(source, (bytes, bytearray)):
            return io.BytesIO(bytes(source))

        try:
            return open(pathlib.Path(source), mode="rb")
        except OSError as e:
            raise FilesystemError(f"Could not read local file {source}: {e}") from e

    def _write_chunk(self, sftp, remote: str, offset: int, data: bytes) -> None:
        # The first chunk creates (or truncates) the file; later chunks write in place.
        mode = "wb" if offset == 0 else "r+b"
        with sftp.open(remote, mode) as remote_file:
            remote_file.settimeout(self._chunk_timeout)
            remote_file.seek(offset)
            remote_file.write(data)
            remote_file.flush()

    def download(
        self, remote_path: RemotePath, cancel: Optional[CancellationToken] = None
    ) -> bytes:
        """Download the contents of a remote file.

        Raises
        ------
        RemoteNotFoundError
            If the remote file does not exist.
        """

        remote = str(remote_path)

        def read(sftp) -> bytes:
            buffer = io.BytesIO()
            with sftp.open(remote, "rb") as remote_file:
                remote_file.settimeout(self._chunk_timeout)
                while True:
                    check_cancelled(cancel, f"downloading {remote}")
                    chunk = remote_file.read(self._chunk_size)
                    if not chunk:
                        break
                    buffer.write(chunk)
            return buffer.getvalue()

        contents = self._session.sftp_call(
            read, action=f"download {remote}", cancel=cancel, retry_policy=self._retry_policy
        )
        logger.debug("Downloaded %s (%d bytes)", remote, len(contents))
        return contents

    def download_text(
        self, remote_path: RemotePath, cancel: Optional[CancellationToken] = None
    ) -> str:
        return self.download(remote_path, cancel=cancel).decode("utf-8", errors="replace")

    def exists(self, remote_path: RemotePath) -> bool:
        """Whether a remote file or directory exists."""

        remote = str(remote_path)

        def check(sftp) -> bool:
            try:
                sftp.stat(remote)
            except FileNotFoundError:
                return False
            return True

        return self._session.sftp_call(
            check, action=f"check existence of {remote}", retry_policy=self._retry_policy
        )

    def mkdir(
        self,
        remote_path: RemotePath,
        parents: bool = True,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        """Make a remote directory.

        If `parents` is ``True`` then intermediary directories are created as required
        and an existing directory is left untouched; otherwise an error is raised if the
        directory already exists.
        """

        template = "mkdir -p -- {path}" if parents else "mkdir -- {path}"
        command = build_command(template, path=escape_parameter(str(remote_path)))
        result = self._session.execute(
            command, timeout=self._session.timeouts.quick, cancel=cancel
        )
        if not result.ok:
            raise classify_remote_failure(
                result.exit_code,
                result.stderr,
                result.stdout,
                action=f"make directory {remote_path}",
            )
        return None

    def list(
        self, remote_path: RemotePath, cancel: Optional[CancellationToken] = None
    ) -> list[RemoteEntry]:
        """List the entries of a remote directory, sorted by name.

        Raises
        ------
        RemoteNotFoundError
            If the remote directory does not exist.
        """

        remote = PurePosixPath(str(remote_path))
        attrs = self._session.sftp_call(
            lambda sftp: sftp.listdir_attr(str(remote)),
            action=f"list {remote}",
            cancel=cancel,
            retry_policy=self._retry_policy,
        )
        entries = [
            RemoteEntry(
                name=attr.filename,
                path=str(remote / attr.filename),
                size=attr.st_size or 0,
                is_dir=stat.S_ISDIR(attr.st_mode or 0),
                modified=(
                    datetime.fromtimestamp(attr.st_mtime, tz=timezone.utc).isoformat()
                    if attr.st_mtime is not None
                    else None
                ),
            )
            for attr in attrs
        ]
        return sorted(entries, key=lambda e: e.name)

    def remove(
        self,
        remote_path: RemotePath,
        recursive: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        """Remove a remote file, or a directory.

        A non-recursive removal deletes a single file or an empty directory. A recursive
        removal deletes a directory and all of its contents; a path that does not exist
        is not an error in this case. Callers are responsible for checking that the path
        is safe to delete.
        """

        remote = str(remote_path)
        if recursive:
            command = build_command("rm -rf -- {path}", path=escape_parameter(remote))
            result = self._session.execute(
                command, timeout=self._session.timeouts.command, cancel=cancel
            )
            if not result.ok:
                raise classify_remote_failure(
                    result.exit_code, result.stderr, result.stdout, action=f"remove {remote}"
                )
            logger.info("Removed %s", remote)
            return None

        def remove_one(sftp) -> None:
            if stat.S_ISDIR(sftp.stat(remote).st_mode or 0):
                sftp.rmdir(remote)
            else:
                sftp.remove(remote)

        self._session.sftp_call(
            remove_one, action=f"remove {remote}", cancel=cancel, retry_policy=self._retry_policy
        )
        return None
