from __future__ import annotations

import logging
from typing import BinaryIO, Iterator, Optional

import requests

from .backend import BlobBackend
from .digest import Digest
from .errors import NotFoundError, TransportError

logger = logging.getLogger(__name__)


class HttpBackend(BlobBackend):
    """Bazel HTTP cache protocol: blobs are GET/PUT at `<base_url>/cas/<hash>`."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: Optional[float] = 60.0,
        chunk_size: int = 64 * 1024,
        session: Optional[requests.Session] = None,
    ):
        if not base_url.startswith(("http://", "https://")):
            raise ValueError(f"remote_http_cache must be an http(s) URL: {base_url!r}")
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.chunk_size = int(chunk_size)
        self.session = session or requests.Session()

    def blob_url(self, digest: Digest) -> str:
        return f"{self.base_url}/cas/{digest.hash}"

    def close(self) -> None:
        self.session.close()

    def _read_blob(self, digest: Digest, sink: BinaryIO) -> None:
        url = self.blob_url(digest)
        try:
            r = self.session.get(url, stream=True, timeout=self.timeout_s)
        except requests.RequestException as e:
            raise TransportError(f"GET {url} failed: {e}") from e
        with r:
            if r.status_code == 404:
                raise NotFoundError(digest)
            if r.status_code < 200 or r.status_code >= 300:
                raise TransportError(f"GET {url} failed", code=str(r.status_code))
            try:
                for chunk in r.iter_content(chunk_size=self.chunk_size):
                    if chunk:
                        sink.write(chunk)
            except requests.RequestException as e:
                raise TransportError(f"GET {url} interrupted: {e}") from e
        logger.debug("read %s from %s", digest, url)

    def _write_blob(self, digest: Digest, source: BinaryIO) -> None:
        url = self.blob_url(digest)
        try:
            r = self.session.put(
                url,
                data=self._body(digest, source),
                timeout=self.timeout_s,
            )
        except requests.RequestException as e:
            raise TransportError(f"PUT {url} failed: {e}") from e
        with r:
            if r.status_code < 200 or r.status_code >= 300:
                raise TransportError(f"PUT {url} failed", code=str(r.status_code))
        logger.debug("wrote %s to %s", digest, url)

    def _body(self, digest: Digest, source: BinaryIO) -> Iterator[bytes]:
        sent = 0
        for chunk in iter(lambda: source.read(self.chunk_size), b""):
            sent += len(chunk)
            if sent > digest.size_bytes:
                raise ValueError(f"upload overruns declared size: {sent} > {digest.size_bytes}")
            yield chunk
        if sent != digest.size_bytes:
            raise ValueError(f"upload closed after {sent} of {digest.size_bytes} bytes")
