"""
Clawgate - Backup Export / Import
===================================
Streams a gzip tar of the gateway's persisted state and workspace, and
restores one.

Archive layout:
    When both the state and workspace directories live under the storage
    root (default /data), entries are written relative to that root, e.g.

        .openclaw/openclaw.json
        .openclaw/workspace/notes.md

    so the archive restores into an equivalent root on another deployment.
    Otherwise entries carry each directory's absolute path without the
    leading separator.

Import rules:
    - Refused unless both directories are under the storage root.
    - The body is spooled to a temporary file with a size ceiling; an
      oversized upload is rejected before anything is extracted.
    - The gateway is stopped and held down while extracting, so no request
      can start it, then resumed afterwards.
    - Every entry is checked on its own: unsafe paths (absolute,
      drive-qualified, '..') are skipped, the rest is extracted.
    - Extraction only adds or overwrites files; nothing is deleted.
"""

import asyncio
import os
import queue
import re
import tarfile
import tempfile
import threading
import zlib
from dataclasses import dataclass, field
from typing import AsyncIterator, Iterator

from clawgate.config import ConfigManager, file_timestamp
from clawgate.errors import (
    ClawgateError,
    ImportPathUnsafe,
    ImportRootMismatch,
    ImportTooLarge,
)
from clawgate.log import EventLog
from clawgate.manager import GatewayManager


_DRIVE_PATH = re.compile(r"^[A-Za-z]:[\\/]")

# End-of-archive marker for the export queue
_DONE = object()


def check_entry_path(name: str) -> str:
    """
    Validate an archive entry path.

    Args:
        name: Entry name as stored in the archive ('/' separators).

    Returns:
        The name, unchanged, when it is safe.

    Raises:
        ImportPathUnsafe: Empty, absolute, drive-qualified or containing a
                          '..' segment.
    """
    if not name:
        raise ImportPathUnsafe(name)
    if name.startswith("/") or name.startswith("\\"):
        raise ImportPathUnsafe(name)
    if _DRIVE_PATH.match(name):
        raise ImportPathUnsafe(name)
    if ".." in name.replace("\\", "/").split("/"):
        raise ImportPathUnsafe(name)
    return name


def is_under_dir(path: str, root: str) -> bool:
    """True if 'path' is 'root' itself or lies inside it."""
    path = os.path.abspath(path)
    root = os.path.abspath(root)
    try:
        return os.path.commonpath([path, root]) == root
    except ValueError:
        return False  # different drives


@dataclass
class ImportResult:
    """Summary of one import."""
    root: str
    received_bytes: int = 0
    extracted: int = 0
    skipped: list[str] = field(default_factory=list)
    error: str = ""
    resumed: bool = False
    resume_error: str = ""

    def summary(self) -> str:
        lines = [f"OK - imported backup into {self.root}."]
        if self.error:
            lines[0] = f"Import into {self.root} stopped early: {self.error}"
        lines.append(f"Entries extracted: {self.extracted}")
        if self.skipped:
            lines.append(f"Entries skipped (unsafe paths): {len(self.skipped)}")
            lines.extend(f"  - {name}" for name in self.skipped[:20])
        if self.resumed:
            lines.append("Gateway restarted.")
        elif self.resume_error:
            lines.append(f"Gateway not restarted: {self.resume_error}")
        return "\n".join(lines) + "\n"


class _QueueSink:
    """
    Write-only file object that hands compressed chunks to the response.

    The bounded queue applies backpressure to the archive writer thread.
    Once the consumer sets 'closed', further writes fail so the writer
    thread exits instead of blocking forever.
    """

    def __init__(self, maxsize: int = 64):
        self.queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self.closed = threading.Event()

    def put(self, item) -> None:
        while True:
            if self.closed.is_set():
                raise BrokenPipeError("export consumer went away")
            try:
                self.queue.put(item, timeout=0.5)
                return
            except queue.Full:
                continue

    def write(self, data) -> int:
        if data:
            self.put(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass


def _portable(tarinfo: tarfile.TarInfo) -> tarfile.TarInfo:
    """Strip owner information so archives restore on any host."""
    tarinfo.uid = 0
    tarinfo.gid = 0
    tarinfo.uname = ""
    tarinfo.gname = ""
    return tarinfo


class BackupManager:
    """
    Export and import of the gateway's persisted state.

    Attributes:
        config:  ConfigManager (paths, size ceiling, configured check).
        gateway: GatewayManager (stopped and resumed around an import).
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        gateway_manager: GatewayManager,
        event_log: EventLog | None = None,
    ):
        self.config = config_manager
        self.gateway = gateway_manager
        self.log = event_log

    @property
    def paths(self) -> dict:
        return self.config.settings["paths"]

    @property
    def max_import_bytes(self) -> int:
        return int(self.config.settings["backup"]["max_import_bytes"])

    def under_storage_root(self) -> bool:
        """True if both state and workspace directories are under the storage root."""
        root = self.paths["storage_root"]
        return is_under_dir(self.paths["state_dir"], root) and is_under_dir(
            self.paths["workspace_dir"], root
        )

    # -- Export ---------------------------------------------------------------

    def export_filename(self) -> str:
        return f"openclaw-backup-{file_timestamp()}.tar.gz"

    def export_layout(self) -> list[tuple[str, str]]:
        """
        Decide which directories go into the archive and under which names.

        Creates the state and workspace directories if they are missing.
        A directory nested inside another exported one is not listed twice.

        Returns:
            List of (absolute directory, archive name) pairs.
        """
        state_dir = self.paths["state_dir"]
        workspace_dir = self.paths["workspace_dir"]
        os.makedirs(state_dir, exist_ok=True)
        os.makedirs(workspace_dir, exist_ok=True)

        dirs = []
        for d in (os.path.abspath(state_dir), os.path.abspath(workspace_dir)):
            if d not in dirs:
                dirs.append(d)
        dirs = [
            d for d in dirs
            if not any(other != d and is_under_dir(d, other) for other in dirs)
        ]

        if self.under_storage_root():
            root = self.paths["storage_root"]
            return [(d, os.path.relpath(d, root).replace(os.sep, "/")) for d in dirs]
        return [(d, d.replace(os.sep, "/").lstrip("/") or ".") for d in dirs]

    def iter_export(self) -> Iterator[bytes]:
        """
        Start an export and return an iterator over the compressed archive.

        A writer thread runs tarfile in streaming mode into a bounded queue;
        the returned generator drains it. Closing the generator (client went
        away) stops the writer.

        Raises:
            OSError: The state or workspace directory cannot be created.
        """
        layout = self.export_layout()
        self._log("export started: " + ", ".join(name for _, name in layout))

        sink = _QueueSink()
        worker = threading.Thread(
            target=self._write_archive,
            args=(layout, sink),
            daemon=True,
            name="clawgate-export",
        )
        worker.start()
        return self._drain(sink)

    def _drain(self, sink: _QueueSink) -> Iterator[bytes]:
        try:
            while True:
                item = sink.queue.get()
                if item is _DONE:
                    break
                if isinstance(item, BaseException):
                    # Headers are already sent; end the (truncated) stream
                    self._log(f"export failed: {item!r}")
                    return
                yield item
        finally:
            sink.closed.set()

        self._log("export finished")

    def _write_archive(self, layout: list[tuple[str, str]], sink: _QueueSink) -> None:
        """Writer thread body."""
        try:
            with tarfile.open(fileobj=sink, mode="w|gz") as tar:
                for abs_dir, arcname in layout:
                    tar.add(abs_dir, arcname=arcname, filter=_portable)
            sink.put(_DONE)
        except BrokenPipeError:
            pass
        except Exception as e:
            try:
                sink.put(e)
            except BrokenPipeError:
                pass

    # -- Import ---------------------------------------------------------------

    async def import_archive(
        self,
        chunks: AsyncIterator[bytes],
        declared_size: int | None = None,
    ) -> ImportResult:
        """
        Restore an archive produced by export.

        Args:
            chunks:        The request body as an async byte stream.
            declared_size: Content-Length, if the client sent one.

        Returns:
            ImportResult. A corrupt archive stops extraction part-way; what
            was extracted stays, and the error is recorded in the result.

        Raises:
            ImportRootMismatch: Directories not under the storage root.
            ImportTooLarge:     Body larger than the configured ceiling.
            ValueError:         Empty body.
            GatewayHeld:        Another restore is in progress.
        """
        root = self.paths["storage_root"]
        if not self.under_storage_root():
            raise ImportRootMismatch(root)

        limit = self.max_import_bytes
        if declared_size is not None and declared_size > limit:
            raise ImportTooLarge(limit)

        fd, tmp_path = tempfile.mkstemp(prefix="openclaw-import-", suffix=".tar.gz")
        result = ImportResult(root=root)
        try:
            with os.fdopen(fd, "wb") as f:
                async for chunk in chunks:
                    result.received_bytes += len(chunk)
                    if result.received_bytes > limit:
                        raise ImportTooLarge(limit)
                    # No blocking file I/O on the event loop
                    await asyncio.to_thread(f.write, chunk)

            if result.received_bytes == 0:
                raise ValueError("Empty body")

            self._log(f"import received {result.received_bytes} bytes, stopping gateway")
            # The gateway stays down until extraction is over
            async with self.gateway.hold("restore in progress"):
                try:
                    await asyncio.to_thread(self._extract, tmp_path, root, result)
                except (tarfile.TarError, OSError, EOFError, zlib.error) as e:
                    result.error = str(e) or type(e).__name__
                    self._log(f"import extraction failed: {result.error}")

            await self._resume(result)

            return result
        finally:
            try:
                os.remove(tmp_path)
            except OSError:
                pass

    def _extract(self, archive_path: str, root: str, result: ImportResult) -> None:
        """Extract entry by entry; unsafe entries are skipped."""
        with tarfile.open(archive_path, mode="r:gz") as tar:
            for member in tar:
                try:
                    check_entry_path(member.name)
                    tar.extract(member, path=root, filter="data")
                except ImportPathUnsafe:
                    result.skipped.append(member.name)
                    self._log(f"skipped unsafe entry {member.name!r}")
                    continue
                except tarfile.FilterError as e:
                    result.skipped.append(member.name)
                    self._log(f"skipped entry {member.name!r}: {e}")
                    continue
                result.extracted += 1

        self._log(f"import extracted {result.extracted} entries, skipped {len(result.skipped)}")

    async def _resume(self, result: ImportResult) -> None:
        """Start the gateway again if the restored state is configured."""
        if not self.config.is_configured():
            return
        try:
            await self.gateway.ensure_running()
            result.resumed = True
        except ClawgateError as e:
            result.resume_error = e.message
            self._log(f"gateway not resumed after import: {e}")

    def _log(self, text: str) -> None:
        if self.log:
            self.log.log("BACKUP", text)
