"""Tests for the remote backend on top of the in-memory blob service."""

import json
import os

import pytest

from conftest import CONTAINER_URL, make_tree, read_tree
from snapshot_shuttle.backends.blob_client import SINGLE_PUT_THRESHOLD
from snapshot_shuttle.backends.remote import RemoteBackend
from snapshot_shuttle.errors import (
    BackupIOError,
    InvalidEncryptionSettingsError,
    RemoteProtocolError,
    RepoNotInitializedError,
    SnapshotNotFoundError,
)
from snapshot_shuttle.models import (
    BackupOptions,
    EncryptionMode,
    EncryptionSettings,
    PrunePolicy,
)


@pytest.fixture
def backend(context, session):
    return RemoteBackend(CONTAINER_URL, context, session=session)


@pytest.fixture
def source(tmp_path):
    return make_tree(
        tmp_path / "docs",
        {"readme.md": "# hi\n", "nested/data.csv": "a,b\n1,2\n", ".DS_Store": "junk"},
        symlinks={"nested/latest": "data.csv"},
    )


class TestInitialize:
    """Tests for remote initialization."""

    def test_initialize_twice_keeps_marker(self, backend, blob_service):
        backend.initialize()
        marker = blob_service.blobs["config.json"]
        assert json.loads(marker)["version"] == 1

        backend.initialize()
        assert blob_service.blobs["config.json"] == marker
        assert sum(1 for c in blob_service.calls if c[:2] == ("PUT", "config.json")) == 1

    def test_identity_hides_token(self, backend):
        assert backend.identity == "https://acct.blob.core.windows.net/backups"

    def test_operations_require_init(self, backend, source, tmp_path):
        with pytest.raises(RepoNotInitializedError):
            backend.backup([source])
        with pytest.raises(RepoNotInitializedError):
            backend.list_snapshots()
        with pytest.raises(RepoNotInitializedError):
            backend.restore("x", str(tmp_path / "out"))


class TestBackupRestore:
    """Round trips through the blob service."""

    def test_layout(self, backend, blob_service, source):
        backend.initialize()
        snap = backend.backup([source])
        prefix = f"snapshots/{snap.id}/"
        assert blob_service.blobs[prefix + "data/docs/readme.md"] == b"# hi\n"
        assert prefix + "data/docs/.DS_Store" not in blob_service.blobs
        assert json.loads(blob_service.blobs[prefix + "symlinks.json"]) == {
            "docs/nested/latest": "data.csv"
        }
        manifest = json.loads(blob_service.blobs[prefix + "manifest.json"])
        assert manifest["totalFiles"] == 2
        assert manifest["relativePath"] == f"snapshots/{snap.id}"

    def test_manifest_uploaded_last(self, backend, blob_service, source):
        backend.initialize()
        snap = backend.backup([source])
        puts = [c[1] for c in blob_service.calls if c[0] == "PUT"]
        assert puts[-1] == f"snapshots/{snap.id}/manifest.json"
        assert puts[-2] == f"snapshots/{snap.id}/symlinks.json"

    def test_round_trip(self, backend, source, tmp_path):
        backend.initialize()
        snap = backend.backup([source], BackupOptions(concurrency=3))
        out = tmp_path / "out"
        backend.restore(snap.id, str(out))

        expected = {k: v for k, v in read_tree(source).items() if k != ".DS_Store"}
        assert read_tree(out / "docs") == expected
        assert os.readlink(out / "docs" / "nested" / "latest") == "data.csv"

    def test_block_upload_round_trip(self, backend, blob_service, tmp_path):
        payload = os.urandom(4096) * (SINGLE_PUT_THRESHOLD // 4096) + b"Z"
        src = make_tree(tmp_path / "big", {"blob.bin": payload})
        backend.initialize()
        snap = backend.backup([src])
        assert snap.total_bytes == SINGLE_PUT_THRESHOLD + 1
        assert any(c[2] == "blocklist" for c in blob_service.calls)

        out = tmp_path / "out"
        backend.restore(snap.id, str(out))
        assert (out / "big" / "blob.bin").read_bytes() == payload

    def test_filters_apply(self, backend, tmp_path):
        src = make_tree(tmp_path / "src", {"keep/yes.txt": "y", "skip/no.txt": "n"})
        backend.initialize()
        snap = backend.backup([src], BackupOptions(include=["keep/**"], exclude=["**/no.txt"]))
        out = tmp_path / "out"
        backend.restore(snap.id, str(out))
        assert read_tree(out / "src") == {"keep/yes.txt": b"y"}

    def test_upload_failure_leaves_snapshot_invisible(self, backend, blob_service, source, monkeypatch):
        backend.initialize()
        real = backend.client.upload_file

        def flaky(local_path, path):
            if path.endswith("readme.md"):
                raise RemoteProtocolError("upload", 500, path)
            return real(local_path, path)

        monkeypatch.setattr(backend.client, "upload_file", flaky)
        with pytest.raises(RemoteProtocolError):
            backend.backup([source])
        assert not any(name.endswith("manifest.json") for name in blob_service.blobs)
        assert backend.list_snapshots() == []

    def test_certificate_encryption_rejected(self, backend, blob_service, source):
        backend.initialize()
        settings = EncryptionSettings(EncryptionMode.CERTIFICATE, ("cn:Backup",))
        with pytest.raises(InvalidEncryptionSettingsError):
            backend.backup([source], BackupOptions(encryption=settings))
        assert list(blob_service.blobs) == ["config.json"]

    def test_restore_unknown(self, backend, tmp_path):
        backend.initialize()
        with pytest.raises(SnapshotNotFoundError):
            backend.restore("20990101T000000-deadbeef", str(tmp_path / "out"))

    def test_restore_into_occupied_path(self, backend, source, tmp_path):
        backend.initialize()
        snap = backend.backup([source])
        occupied = tmp_path / "occupied"
        occupied.write_text("not a directory")
        with pytest.raises(BackupIOError):
            backend.restore(snap.id, str(occupied))


class TestListAndPrune:
    """Tests for listing and retention on the remote backend."""

    def test_list_skips_incomplete(self, backend, blob_service, source):
        backend.initialize()
        good = backend.backup([source])
        blob_service.blobs["snapshots/partial/data/docs/readme.md"] = b"x"
        blob_service.blobs["snapshots/corrupt/manifest.json"] = b"{oops"
        assert [s.id for s in backend.list_snapshots()] == [good.id]

    def test_prune_keep_last(self, backend, blob_service, source):
        backend.initialize()
        ids = [backend.backup([source]).id for _ in range(3)]
        result = backend.prune(PrunePolicy(keep_last=1))
        assert result.deleted == ids[:2]
        assert result.kept == [ids[2]]
        assert [s.id for s in backend.list_snapshots()] == [ids[2]]
        assert not any(name.startswith(f"snapshots/{ids[0]}/") for name in blob_service.blobs)

    def test_prune_degenerate_policy(self, backend, source):
        backend.initialize()
        ids = [backend.backup([source]).id for _ in range(3)]
        result = backend.prune(PrunePolicy(keep_last=0, keep_days=0))
        assert result.kept == [ids[-1]]
        assert result.deleted == ids[:2]
