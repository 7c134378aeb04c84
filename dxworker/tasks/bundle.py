"""
Bundle materialization: task code reference -> working directory.

Strategies, first match wins:
  1. inline base64 archive
  2. archive downloaded from a URL
  3. bare command (empty directory, nothing to fetch)

The task's directory is always wiped first so a retried task id starts
clean. Archives are detected by content (tar in any compression, or zip) and
members that would land outside the directory are refused.
"""

import asyncio
import base64
import binascii
import shutil
import stat
import tarfile
import zipfile
from pathlib import Path, PurePosixPath

import httpx
from loguru import logger

from dxworker.tasks.errors import MaterializationError
from dxworker.tasks.models import Task
from dxworker.utils.helpers import ensure_dir, safe_filename

ARCHIVE_NAME = ".dx-bundle.tmp"


def _check_member_name(name: str) -> None:
    raw = (name or "").replace("\\", "/")
    path = PurePosixPath(raw)
    if not raw or path.is_absolute() or (len(raw) > 1 and raw[1] == ":"):
        raise MaterializationError(f"Archive member has an absolute path: {name!r}")
    if ".." in path.parts:
        raise MaterializationError(f"Archive member escapes the working directory: {name!r}")


def _zip_member_is_link(info: zipfile.ZipInfo) -> bool:
    mode = (info.external_attr >> 16) & 0xFFFF
    return stat.S_ISLNK(mode)


def extract_archive(archive: Path, dest: Path) -> None:
    """Extract a zip or tar archive into ``dest`` (blocking)."""
    if zipfile.is_zipfile(archive):
        with zipfile.ZipFile(archive) as zf:
            for info in zf.infolist():
                _check_member_name(info.filename)
                if _zip_member_is_link(info):
                    raise MaterializationError(f"Archive member is a link: {info.filename!r}")
            zf.extractall(dest)
        return

    if tarfile.is_tarfile(archive):
        with tarfile.open(archive, "r:*") as tf:
            members = tf.getmembers()
            for member in members:
                _check_member_name(member.name)
                if member.issym() or member.islnk():
                    raise MaterializationError(f"Archive member is a link: {member.name!r}")
            regular = [m for m in members if m.isfile() or m.isdir()]
            tf.extractall(dest, members=regular, filter="data")
        return

    raise MaterializationError("Bundle is not a recognised archive (expected tar, tar.gz or zip)")


class BundleMaterializer:
    """Creates a fresh working directory per task and fills it with the task's code."""

    def __init__(
        self,
        root: Path,
        download_timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.root = root
        self.download_timeout = download_timeout
        self._transport = transport

    def working_dir_for(self, task_id: str) -> Path:
        return self.root / safe_filename(task_id)

    @staticmethod
    def _reset(path: Path) -> None:
        if path.exists():
            shutil.rmtree(path)
        ensure_dir(path)

    async def materialize(self, task: Task) -> Path:
        """Return the task's working directory, populated with its bundle."""
        workdir = self.working_dir_for(task.id)
        try:
            await asyncio.to_thread(self._reset, workdir)
        except OSError as e:
            raise MaterializationError(f"Could not prepare working directory {workdir}: {e}") from e

        if task.code_base64:
            logger.info(f"Task [{task.id}] unpacking inline bundle into {workdir}")
            payload = "".join(task.code_base64.split())
            try:
                data = base64.b64decode(payload, validate=True)
            except (binascii.Error, ValueError) as e:
                raise MaterializationError(f"Invalid base64 bundle: {e}") from e
            archive = workdir / ARCHIVE_NAME
            try:
                await asyncio.to_thread(archive.write_bytes, data)
            except OSError as e:
                raise MaterializationError(f"Could not write bundle to {archive}: {e}") from e
            await self._extract(archive, workdir)
            return workdir

        if task.code_url:
            logger.info(f"Task [{task.id}] downloading bundle from {task.code_url}")
            archive = workdir / ARCHIVE_NAME
            await self._download(task.code_url, archive)
            await self._extract(archive, workdir)
            return workdir

        if task.command:
            logger.debug(f"Task [{task.id}] is a bare command; nothing to materialize")
            return workdir

        raise MaterializationError(f"Task {task.id} has no executable content (no bundle, URL or command)")

    async def _download(self, url: str, archive: Path) -> None:
        try:
            async with httpx.AsyncClient(
                timeout=self.download_timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url) as resp:
                    if not resp.is_success:
                        raise MaterializationError(f"Bundle download failed: HTTP {resp.status_code}")
                    with open(archive, "wb") as fh:
                        async for chunk in resp.aiter_bytes():
                            fh.write(chunk)
        except httpx.TimeoutException as e:
            raise MaterializationError(
                f"Bundle download timed out after {self.download_timeout:g} seconds"
            ) from e
        except httpx.HTTPError as e:
            raise MaterializationError(f"Bundle download failed: {type(e).__name__}: {e}") from e
        except OSError as e:
            raise MaterializationError(f"Could not write bundle to {archive}: {e}") from e

    async def _extract(self, archive: Path, dest: Path) -> None:
        try:
            await asyncio.to_thread(extract_archive, archive, dest)
        except MaterializationError:
            raise
        except (tarfile.TarError, zipfile.BadZipFile, OSError, EOFError) as e:
            raise MaterializationError(f"Bundle extraction failed: {e}") from e
        finally:
            archive.unlink(missing_ok=True)
