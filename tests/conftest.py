"""Shared fixtures: source trees, a stepping clock and an in-memory blob service."""

import os
import xml.etree.ElementTree as ET
from datetime import datetime, timedelta, timezone
from urllib.parse import unquote, urlsplit
from xml.sax.saxutils import escape

import pytest
import requests
from loguru import logger

from snapshot_shuttle.config import EngineContext

CONTAINER_URL = "https://acct.blob.core.windows.net/backups?sv=2021-08-06&sig=s3cr3t"


@pytest.fixture(autouse=True)
def _reset_logger():
    yield
    logger.remove()


def make_tree(root, files, symlinks=None):
    """Create ``files`` ({relative path: bytes or str}) and ``symlinks`` under root."""
    os.makedirs(root, exist_ok=True)
    for rel, content in files.items():
        path = os.path.join(root, rel)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        mode = "wb" if isinstance(content, bytes) else "w"
        with open(path, mode) as f:
            f.write(content)
    for rel, target in (symlinks or {}).items():
        path = os.path.join(root, rel)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        os.symlink(target, path)
    return str(root)


def read_tree(root):
    """Map every regular file under root (relative path) to its bytes."""
    out = {}
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            path = os.path.join(dirpath, name)
            if os.path.islink(path):
                continue
            rel = os.path.relpath(path, root).replace(os.sep, "/")
            with open(path, "rb") as f:
                out[rel] = f.read()
    return out


class StepClock:
    """Returns a new, later instant on every call."""

    def __init__(self, start=None, step=timedelta(minutes=1)):
        self.current = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self):
        value = self.current
        self.current = self.current + self.step
        return value


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def context(tmp_path, clock):
    return EngineContext(clock=clock, mount_root=tmp_path / "mounts")


class FakeResponse:
    def __init__(self, status_code, content=b""):
        self.status_code = status_code
        self.content = content

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]


class FakeBlobService:
    """In-memory blob container speaking the subset of REST used by BlobClient."""

    def __init__(self, container="backups", page_size=1000):
        self.container = container
        self.page_size = page_size
        self.blobs = {}
        self.blocks = {}
        self.calls = []
        self.fail = {}

    def _name(self, url):
        path = urlsplit(url).path
        prefix = f"/{self.container}"
        if path == prefix:
            return ""
        return unquote(path[len(prefix) + 1:])

    def handle(self, method, url, params, headers, data):
        params = dict(params)
        name = self._name(url)
        self.calls.append((method, name, params.get("comp")))
        if params.get("sig") != "s3cr3t":
            return FakeResponse(403)
        if (method, name) in self.fail:
            return FakeResponse(self.fail[(method, name)])

        if method == "PUT":
            if params.get("comp") == "block":
                self.blocks.setdefault(name, {})[params["blockid"]] = bytes(data)
                return FakeResponse(201)
            if params.get("comp") == "blocklist":
                ids = [e.text for e in ET.fromstring(data).findall("Latest")]
                staged = self.blocks.pop(name, {})
                self.blobs[name] = b"".join(staged[i] for i in ids)
                return FakeResponse(201)
            assert headers.get("x-ms-blob-type") == "BlockBlob"
            self.blobs[name] = bytes(data)
            return FakeResponse(201)
        if method == "GET" and params.get("comp") == "list":
            return FakeResponse(200, self._list(params))
        if method == "GET":
            if name not in self.blobs:
                return FakeResponse(404)
            return FakeResponse(200, self.blobs[name])
        if method == "HEAD":
            return FakeResponse(200 if name in self.blobs else 404)
        if method == "DELETE":
            if self.blobs.pop(name, None) is None:
                return FakeResponse(404)
            return FakeResponse(202)
        return FakeResponse(400)

    def _list(self, params):
        prefix = params.get("prefix", "")
        delimiter = params.get("delimiter")
        entries = []
        seen = set()
        for name in sorted(self.blobs):
            if not name.startswith(prefix):
                continue
            rest = name[len(prefix):]
            if delimiter and delimiter in rest:
                sub = prefix + rest[: rest.index(delimiter) + 1]
                if sub not in seen:
                    seen.add(sub)
                    entries.append(("prefix", sub))
            else:
                entries.append(("blob", name))

        start = int(params.get("marker") or 0)
        page = entries[start:start + self.page_size]
        body = []
        for kind, name in page:
            if kind == "prefix":
                body.append(f"<BlobPrefix><Name>{escape(name)}</Name></BlobPrefix>")
            else:
                size = len(self.blobs[name])
                body.append(
                    f"<Blob><Name>{escape(name)}</Name>"
                    f"<Properties><Content-Length>{size}</Content-Length></Properties></Blob>"
                )
        next_marker = str(start + self.page_size) if start + self.page_size < len(entries) else ""
        xml = (
            '<?xml version="1.0" encoding="utf-8"?><EnumerationResults>'
            f"<Blobs>{''.join(body)}</Blobs><NextMarker>{next_marker}</NextMarker>"
            "</EnumerationResults>"
        )
        return xml.encode("utf-8")


class FakeSession:
    """Stands in for requests.Session; routes calls to a FakeBlobService."""

    def __init__(self, service, raise_error=False):
        self.service = service
        self.raise_error = raise_error

    def request(self, method, url, params=None, headers=None, timeout=None, data=None, stream=False):
        if self.raise_error:
            raise requests.ConnectionError("connection refused")
        return self.service.handle(method, url, params or [], headers or {}, data)


@pytest.fixture
def blob_service():
    return FakeBlobService()


@pytest.fixture
def session(blob_service):
    return FakeSession(blob_service)
