"""Blob container client authenticated with a container-level SAS URL."""

from __future__ import annotations

import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Optional, Sequence
from urllib.parse import parse_qsl, quote, urlsplit, urlunsplit

import requests

from snapshot_shuttle.errors import CopyFailedError, RemoteProtocolError
from snapshot_shuttle.logs import get_logger, redact_url
from snapshot_shuttle.pipeline.chunking import ChunkingStrategy, FixedSizeChunker

log = get_logger("core.blob")

API_VERSION = "2021-08-06"
BLOCK_SIZE = 8 * 1024 * 1024
SINGLE_PUT_THRESHOLD = BLOCK_SIZE
DOWNLOAD_CHUNK = 1024 * 1024


@dataclass(frozen=True)
class BlobItem:
    name: str
    size: int = 0


@dataclass
class BlobListing:
    blobs: list[BlobItem] = field(default_factory=list)
    prefixes: list[str] = field(default_factory=list)


def block_list_xml(block_ids: Sequence[str]) -> bytes:
    latest = "".join(f"<Latest>{bid}</Latest>" for bid in block_ids)
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f"<BlockList>{latest}</BlockList>"
    ).encode("utf-8")


class BlobClient:
    """
    Minimal blob REST client.

    ``container_url`` carries the SAS token as its query string. The token
    is appended to every request and never logged.
    """

    def __init__(
        self,
        container_url: str,
        session: Optional[requests.Session] = None,
        timeout: float = 60,
        chunker: Optional[ChunkingStrategy] = None,
        single_put_threshold: int = SINGLE_PUT_THRESHOLD,
    ):
        parts = urlsplit(container_url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(f"Not a container URL: {redact_url(container_url)}")
        self.base_url = urlunsplit((parts.scheme, parts.netloc, parts.path.rstrip("/"), "", ""))
        self._auth = parse_qsl(parts.query, keep_blank_values=True)
        self._session = session or requests.Session()
        self.timeout = timeout
        self.chunker = chunker or FixedSizeChunker(BLOCK_SIZE)
        self.single_put_threshold = single_put_threshold

    def _url(self, path: str) -> str:
        if not path:
            return self.base_url
        return f"{self.base_url}/{quote(path.lstrip('/'), safe='/')}"

    def _request(
        self,
        method: str,
        operation: str,
        path: str = "",
        ok: Sequence[int] = (200,),
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
        **kwargs,
    ) -> requests.Response:
        all_params = list(self._auth) + list((params or {}).items())
        all_headers = {"x-ms-version": API_VERSION}
        all_headers.update(headers or {})
        try:
            r = self._session.request(
                method,
                self._url(path),
                params=all_params,
                headers=all_headers,
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as e:
            log.error(f"{operation} {self._url(path)} failed: {e}")
            raise RemoteProtocolError(operation, None, path) from e
        if r.status_code not in ok:
            log.debug(f"{operation} {self._url(path)} -> {r.status_code}")
            raise RemoteProtocolError(operation, r.status_code, path)
        return r

    # Upload

    def put_blob(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        """Create or overwrite a block blob with ``data`` in a single request."""
        self._request(
            "PUT",
            "upload",
            path,
            ok=(200, 201),
            data=data,
            headers={"x-ms-blob-type": "BlockBlob", "Content-Type": content_type},
        )

    def put_block(self, path: str, block_id: str, data: bytes) -> None:
        """Stage one uncommitted block of ``path``."""
        self._request(
            "PUT",
            "put block",
            path,
            ok=(200, 201),
            params={"comp": "block", "blockid": block_id},
            data=data,
        )

    def put_block_list(self, path: str, block_ids: Sequence[str]) -> None:
        """Commit the staged blocks of ``path`` in the given order."""
        self._request(
            "PUT",
            "put block list",
            path,
            ok=(200, 201),
            params={"comp": "blocklist"},
            data=block_list_xml(block_ids),
            headers={"Content-Type": "application/xml"},
        )

    def upload_file(self, local_path: str, path: str) -> int:
        """
        Upload a local file to ``path``.

        Files up to ``single_put_threshold`` bytes go in one PUT; larger files
        are staged block by block and committed with a block list.

        Args:
            local_path: File to read.
            path: Blob name relative to the container.

        Returns:
            Number of bytes uploaded.

        Raises:
            RemoteProtocolError: If any request fails.
        """
        size = os.path.getsize(local_path)
        with open(local_path, "rb") as f:
            if size <= self.single_put_threshold:
                self.put_blob(path, f.read())
                return size
            block_ids = []
            for block_id, data in self.chunker.chunk(f):
                self.put_block(path, block_id, data)
                block_ids.append(block_id)
        self.put_block_list(path, block_ids)
        log.debug(f"Uploaded {path} as {len(block_ids)} blocks")
        return size

    def upload_bytes(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        self.put_blob(path, data, content_type)

    # Download

    def download_bytes(self, path: str) -> bytes:
        return self._request("GET", "download", path).content

    def download_to(self, path: str, local_path: str) -> None:
        """
        Stream a blob into ``local_path``, replacing any file or link there.

        Raises:
            RemoteProtocolError: If the blob cannot be fetched.
            CopyFailedError: If the local file cannot be written.
        """
        r = self._request("GET", "download", path, stream=True)
        try:
            os.makedirs(os.path.dirname(local_path) or ".", exist_ok=True)
            if os.path.islink(local_path):
                os.remove(local_path)
            with open(local_path, "wb") as f:
                for chunk in r.iter_content(chunk_size=DOWNLOAD_CHUNK):
                    if chunk:
                        f.write(chunk)
        except OSError as e:
            raise CopyFailedError(path, local_path, e) from e

    # Listing / metadata

    def list_blobs(self, prefix: str = "", delimiter: Optional[str] = None) -> BlobListing:
        """
        List blobs under ``prefix``, following continuation markers.

        Args:
            prefix: Only names starting with this prefix are returned.
            delimiter: When set, names are grouped at the first delimiter after
                the prefix and reported in ``prefixes`` instead of ``blobs``.

        Returns:
            A BlobListing with every page merged.
        """
        listing = BlobListing()
        marker = None
        while True:
            params = {"restype": "container", "comp": "list"}
            if prefix:
                params["prefix"] = prefix
            if delimiter:
                params["delimiter"] = delimiter
            if marker:
                params["marker"] = marker
            r = self._request("GET", "list", "", params=params)
            try:
                root = ET.fromstring(r.content)
            except ET.ParseError as e:
                raise RemoteProtocolError("list", r.status_code, prefix) from e

            blobs = root.find("Blobs")
            if blobs is not None:
                for blob in blobs.findall("Blob"):
                    name = blob.findtext("Name")
                    if not name:
                        continue
                    size = blob.findtext("Properties/Content-Length") or "0"
                    listing.blobs.append(BlobItem(name=name, size=int(size)))
                for blob_prefix in blobs.findall("BlobPrefix"):
                    name = blob_prefix.findtext("Name")
                    if name:
                        listing.prefixes.append(name)

            marker = (root.findtext("NextMarker") or "").strip()
            if not marker:
                return listing

    def delete(self, path: str) -> None:
        self._request("DELETE", "delete", path, ok=(200, 202))

    def exists(self, path: str) -> bool:
        """True on 200, False on 404; any other status raises RemoteProtocolError."""
        r = self._request("HEAD", "exists", path, ok=(200, 404))
        return r.status_code == 200
