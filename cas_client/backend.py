from __future__ import annotations

import io
import logging
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, List, Protocol, Union, runtime_checkable

from .digest import Digest, DigestComputer
from .errors import IntegrityError, NotFoundError

logger = logging.getLogger(__name__)

_COPY_BLOCK = 64 * 1024


class BlobBackend(ABC):
    """Narrow transfer interface the tree and materialization code is written against.

    The empty blob always exists in a CAS, so zero-length digests are answered
    here and never reach `_read_blob` / `_write_blob`.
    """

    def download_blob(self, digest: Digest) -> bytes:
        if digest.size_bytes == 0:
            return b""
        buf = io.BytesIO()
        self._read_blob(digest, buf)
        return buf.getvalue()

    def download_blob_to(self, digest: Digest, sink: BinaryIO) -> None:
        if digest.size_bytes == 0:
            return
        self._read_blob(digest, sink)

    def download_to_path(self, digest: Digest, path: Union[str, Path]) -> None:
        with open(path, "wb") as f:
            self.download_blob_to(digest, f)

    def upload_blob(self, digest: Digest, source: BinaryIO) -> None:
        if digest.size_bytes == 0:
            return
        self._write_blob(digest, source)

    def upload_bytes(self, data: bytes, computer: DigestComputer) -> Digest:
        d = computer.compute(data)
        self.upload_blob(d, io.BytesIO(data))
        return d

    def upload_path(self, path: Union[str, Path], computer: DigestComputer) -> Digest:
        d = computer.compute_path(path)
        with open(path, "rb") as f:
            self.upload_blob(d, f)
        return d

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @abstractmethod
    def _read_blob(self, digest: Digest, sink: BinaryIO) -> None:
        """Write the blob's bytes into `sink`; raise NotFoundError on a miss."""

    @abstractmethod
    def _write_blob(self, digest: Digest, source: BinaryIO) -> None:
        """Store exactly `digest.size_bytes` bytes read from `source`."""


@runtime_checkable
class PaginatedTreeSource(Protocol):
    def get_tree_pages(self, root_digest: Digest) -> Iterator[List]:
        """Yield pages of Directory messages reachable from root_digest."""

        ...


@dataclass
class DiskBackend(BlobBackend):
    """CAS kept in a local directory.

    Layout:
      root/
        blobs/<digest_function>/<hash>
    """

    root: Path
    function: str = "sha256"

    def __post_init__(self) -> None:
        self.root = Path(self.root)
        self._computer = DigestComputer(self.function)

    @property
    def blobs_dir(self) -> Path:
        return self.root / "blobs" / self._computer.function

    def init(self) -> None:
        self.blobs_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, digest: Digest) -> Path:
        return self.blobs_dir / digest.hash

    def contains(self, digest: Digest) -> bool:
        return digest.size_bytes == 0 or self.path_for(digest).exists()

    def _read_blob(self, digest: Digest, sink: BinaryIO) -> None:
        p = self.path_for(digest)
        try:
            f = open(p, "rb")
        except FileNotFoundError:
            raise NotFoundError(digest) from None
        with f:
            for chunk in iter(lambda: f.read(_COPY_BLOCK), b""):
                sink.write(chunk)
        logger.debug("read %s from %s", digest, p)

    def _write_blob(self, digest: Digest, source: BinaryIO) -> None:
        p = self.path_for(digest)
        if p.exists():
            return
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_name(f".{p.name}.{uuid.uuid4().hex}.tmp")
        h = self._computer.hasher()
        size = 0
        try:
            with open(tmp, "wb") as out:
                for chunk in iter(lambda: source.read(_COPY_BLOCK), b""):
                    size += len(chunk)
                    if size > digest.size_bytes:
                        raise ValueError(f"upload source longer than digest size {digest}")
                    h.update(chunk)
                    out.write(chunk)
            if size != digest.size_bytes:
                raise ValueError(f"upload source produced {size} bytes, digest {digest} declares {digest.size_bytes}")
            if h.hexdigest() != digest.hash:
                raise IntegrityError(f"uploaded content hashes to {h.hexdigest()}, expected {digest}")
            os.replace(tmp, p)
        finally:
            tmp.unlink(missing_ok=True)
        logger.debug("stored %s at %s", digest, p)
