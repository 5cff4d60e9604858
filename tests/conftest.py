from __future__ import annotations

from dataclasses import dataclass
from email.message import Message
import json
import os
from pathlib import Path
import socket
import subprocess
import sys
import time
from typing import Optional
import urllib.error
import urllib.request
from uuid import uuid4

import pytest
import pytest_asyncio

from config import Settings
from database import Database
from storage import StorageError


class FakeBlobStore:
    """In-memory stand-in for the object store."""

    def __init__(self, *, fail_store: bool = False, fail_delete: bool = False) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.deleted: list[str] = []
        self.fail_store = fail_store
        self.fail_delete = fail_delete

    def store(self, key: str, data: bytes, content_type: str) -> None:
        if self.fail_store:
            raise StorageError("bucket unavailable")
        if key in self.objects:
            raise StorageError(f"object already exists: {key}")
        self.objects[key] = (data, content_type)

    def delete(self, key: str) -> None:
        if self.fail_delete:
            raise StorageError("bucket unavailable")
        self.objects.pop(key, None)
        self.deleted.append(key)

    def public_url(self, key: str) -> str:
        return f"https://cdn.example.com/{key}"


def multipart_body(
    parts: list[tuple[str, str, Optional[str], bytes]],
) -> tuple[bytes, str]:
    """Encode (field, filename, content_type, data) parts as multipart/form-data."""
    boundary = uuid4().hex
    body = b""
    for field, filename, content_type, data in parts:
        head = (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{field}"; filename="{filename}"\r\n'
        )
        if content_type:
            head += f"Content-Type: {content_type}\r\n"
        body += head.encode("utf-8") + b"\r\n" + data + b"\r\n"
    body += f"--{boundary}--\r\n".encode("utf-8")
    return body, f"multipart/form-data; boundary={boundary}"


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = dict(
        db_path=tmp_path / "test.db",
        storage_backend="local",
        local_storage_dir=tmp_path / "blobs",
        b2_key_id=None,
        b2_app_key=None,
        b2_bucket_name=None,
        site_url="http://testserver",
        max_upload_bytes=50 * 1024 * 1024,
        sharex_rate_limit=100,
        sharex_rate_window=3600,
        log_level="INFO",
    )
    values.update(overrides)
    return Settings(**values)


@pytest_asyncio.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(tmp_path / "test.db")
    await database.initialize()
    return database


# --- HTTP integration helpers -------------------------------------------------


class _NoRedirect(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[override]
        return None


@dataclass
class TestResponse:
    status: int
    headers: Message
    body: str

    def json(self):
        return json.loads(self.body)


class TestClient:
    __test__ = False

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.opener = urllib.request.build_opener(_NoRedirect())

    def request(
        self,
        method: str,
        path: str,
        *,
        json_data: dict | None = None,
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
    ) -> TestResponse:
        url = f"{self.base_url}{path}"
        req_headers = headers.copy() if headers else {}
        if json_data is not None:
            body = json.dumps(json_data).encode("utf-8")
            req_headers.setdefault("Content-Type", "application/json")
        request = urllib.request.Request(
            url, data=body, headers=req_headers, method=method
        )
        try:
            response = self.opener.open(request, timeout=5)
        except urllib.error.HTTPError as exc:
            response = exc
        content = response.read().decode("utf-8", errors="replace")
        return TestResponse(status=response.code, headers=response.headers, body=content)


@dataclass
class ServerInfo:
    base_url: str
    db_path: Path
    secret: str


def _find_free_port() -> int:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            return int(sock.getsockname()[1])
    except PermissionError as exc:
        raise RuntimeError("Socket binding is not permitted in this environment.") from exc


def _wait_for_server(base_url: str, proc: subprocess.Popen[str]) -> None:
    deadline = time.time() + 15
    last_error: Exception | None = None
    while time.time() < deadline:
        if proc.poll() is not None:
            raise RuntimeError("Robyn server process exited early.")
        try:
            with urllib.request.urlopen(f"{base_url}/api/health", timeout=1) as resp:
                if resp.status == 200:
                    return
        except Exception as exc:  # pragma: no cover - transient startup errors
            last_error = exc
        time.sleep(0.2)
    raise RuntimeError(f"Robyn server failed to start: {last_error}")


@pytest.fixture(scope="module")
def server(tmp_path_factory: pytest.TempPathFactory) -> ServerInfo:
    repo_root = Path(__file__).resolve().parents[1]
    workdir = tmp_path_factory.mktemp("server")
    db_path = workdir / "snapshelf.db"
    secret = uuid4().hex
    try:
        port = _find_free_port()
    except RuntimeError as exc:
        pytest.skip(str(exc))
    env = os.environ.copy()
    env.update(
        {
            "ROBYN_HOST": "127.0.0.1",
            "ROBYN_PORT": str(port),
            "SNAPSHELF_DB_PATH": str(db_path),
            "SNAPSHELF_STORAGE": "local",
            "SNAPSHELF_STORAGE_DIR": str(workdir / "blobs"),
            "SNAPSHELF_SITE_URL": f"http://127.0.0.1:{port}",
            "SNAPSHELF_SECRET_KEY": secret,
            "SNAPSHELF_LOG_LEVEL": "ERROR",
            "SNAPSHELF_SHAREX_RATE_LIMIT": "1",
        }
    )
    proc = subprocess.Popen(
        [sys.executable, "app.py"],
        cwd=repo_root,
        env=env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        text=True,
    )
    try:
        try:
            _wait_for_server(f"http://127.0.0.1:{port}", proc)
        except RuntimeError as exc:
            pytest.skip(str(exc))
        yield ServerInfo(base_url=f"http://127.0.0.1:{port}", db_path=db_path, secret=secret)
    finally:
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:  # pragma: no cover - safety net
            proc.kill()
