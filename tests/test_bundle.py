"""Tests for bundle materialization."""

import base64
import io
import tarfile
import zipfile
from pathlib import Path

import httpx
import pytest

from dxworker.tasks import bundle
from dxworker.tasks.bundle import ARCHIVE_NAME, BundleMaterializer
from dxworker.tasks.errors import MaterializationError
from dxworker.tasks.models import Task

FILES = {
    "main.py": b"print('hello')\n",
    "lib/helper.py": b"VALUE = 1\n",
    "data/input.csv": b"a,b\n1,2\n",
}


def _tar_gz(files: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def _zip(files: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buf.getvalue()


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def _files_under(root: Path) -> dict[str, bytes]:
    return {p.relative_to(root).as_posix(): p.read_bytes() for p in root.rglob("*") if p.is_file()}


@pytest.mark.asyncio
@pytest.mark.parametrize("pack", [_tar_gz, _zip])
async def test_inline_archive_round_trip(tmp_path: Path, pack) -> None:
    materializer = BundleMaterializer(tmp_path)
    task = Task(id="task-1", code_base64=_b64(pack(FILES)))

    workdir = await materializer.materialize(task)

    assert workdir == tmp_path / "task-1"
    assert _files_under(workdir) == FILES
    assert not (workdir / ARCHIVE_NAME).exists()


@pytest.mark.asyncio
async def test_same_task_id_twice_starts_clean(tmp_path: Path) -> None:
    materializer = BundleMaterializer(tmp_path)
    first = Task(id="again", code_base64=_b64(_tar_gz({"old.py": b"x"})))
    second = Task(id="again", code_base64=_b64(_tar_gz({"new.py": b"y"})))

    await materializer.materialize(first)
    (tmp_path / "again" / "leftover.txt").write_text("stale")
    workdir = await materializer.materialize(second)

    assert _files_under(workdir) == {"new.py": b"y"}


@pytest.mark.asyncio
async def test_bare_command_gets_empty_directory(tmp_path: Path) -> None:
    workdir = await BundleMaterializer(tmp_path).materialize(Task(id="cmd", command="echo hi"))

    assert workdir.is_dir()
    assert list(workdir.iterdir()) == []


@pytest.mark.asyncio
async def test_no_content_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(MaterializationError, match="no executable content"):
        await BundleMaterializer(tmp_path).materialize(Task(id="empty"))


@pytest.mark.asyncio
async def test_invalid_base64_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(MaterializationError, match="Invalid base64"):
        await BundleMaterializer(tmp_path).materialize(Task(id="bad", code_base64="not*base64!"))


@pytest.mark.asyncio
async def test_non_archive_payload_is_an_error(tmp_path: Path) -> None:
    task = Task(id="plain", code_base64=_b64(b"just some text, not an archive"))

    with pytest.raises(MaterializationError, match="not a recognised archive"):
        await BundleMaterializer(tmp_path).materialize(task)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "pack, name",
    [(_zip, "../escape.py"), (_zip, "..\\escape.py"), (_tar_gz, "../escape.py"), (_tar_gz, "/etc/evil.py")],
)
async def test_escaping_members_are_rejected(tmp_path: Path, pack, name: str) -> None:
    task = Task(id="evil", code_base64=_b64(pack({name: b"x"})))

    with pytest.raises(MaterializationError):
        await BundleMaterializer(tmp_path / "root").materialize(task)

    assert not (tmp_path / "escape.py").exists()


@pytest.mark.asyncio
async def test_symlink_members_are_rejected(tmp_path: Path) -> None:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tf:
        link = tarfile.TarInfo("passwd")
        link.type = tarfile.SYMTYPE
        link.linkname = "/etc/passwd"
        tf.addfile(link)
    task = Task(id="link", code_base64=_b64(buf.getvalue()))

    with pytest.raises(MaterializationError, match="link"):
        await BundleMaterializer(tmp_path).materialize(task)


@pytest.mark.asyncio
async def test_download_from_url(tmp_path: Path) -> None:
    archive = _tar_gz(FILES)
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, content=archive)

    materializer = BundleMaterializer(tmp_path, transport=httpx.MockTransport(handler))
    workdir = await materializer.materialize(Task(id="dl", code_url="https://cdn.example/bundle.tgz"))

    assert seen == ["https://cdn.example/bundle.tgz"]
    assert _files_under(workdir) == FILES


@pytest.mark.asyncio
async def test_download_http_error(tmp_path: Path) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(404))
    materializer = BundleMaterializer(tmp_path, transport=transport)

    with pytest.raises(MaterializationError, match="HTTP 404"):
        await materializer.materialize(Task(id="dl", code_url="https://cdn.example/missing.tgz"))


@pytest.mark.asyncio
async def test_download_timeout(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    materializer = BundleMaterializer(tmp_path, download_timeout=1.5, transport=httpx.MockTransport(handler))

    with pytest.raises(MaterializationError, match="timed out after 1.5 seconds"):
        await materializer.materialize(Task(id="dl", code_url="https://cdn.example/slow.tgz"))


@pytest.mark.asyncio
async def test_unwritable_inline_bundle_is_a_materialization_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def disk_full(self: Path, data: bytes) -> int:
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(Path, "write_bytes", disk_full)
    task = Task(id="full", code_base64=_b64(_tar_gz(FILES)))

    with pytest.raises(MaterializationError, match="No space left on device"):
        await BundleMaterializer(tmp_path).materialize(task)


@pytest.mark.asyncio
async def test_unwritable_download_is_a_materialization_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def denied(*args, **kwargs):
        raise PermissionError(13, "Permission denied")

    monkeypatch.setattr(bundle, "open", denied, raising=False)
    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=_tar_gz(FILES)))
    materializer = BundleMaterializer(tmp_path, transport=transport)

    with pytest.raises(MaterializationError, match="Permission denied"):
        await materializer.materialize(Task(id="dl", code_url="https://cdn.example/bundle.tgz"))
