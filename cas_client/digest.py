from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Union

from . import protos

HASH_FUNCTIONS: Dict[str, Callable[[], Any]] = {
    "sha256": hashlib.sha256,
    "sha1": hashlib.sha1,
    "md5": hashlib.md5,
    "sha384": hashlib.sha384,
    "sha512": hashlib.sha512,
}

_READ_BLOCK = 1024 * 1024
_HEX_RE = re.compile(r"^[0-9a-f]+$")


@dataclass(frozen=True)
class Digest:
    """Content address of a blob: lowercase hex hash plus byte length."""

    hash: str
    size_bytes: int

    def __str__(self) -> str:
        return f"{self.hash}/{self.size_bytes}"

    def to_proto(self):
        return protos.Digest(hash=self.hash, size_bytes=self.size_bytes)

    @classmethod
    def from_proto(cls, msg) -> "Digest":
        return cls(hash=str(msg.hash), size_bytes=int(msg.size_bytes))


def parse_digest(text: str) -> Digest:
    """Parse the `<hex_hash>/<size_bytes>` form used on the command line."""
    s = (text or "").strip()
    hash_part, sep, size_part = s.partition("/")
    if not sep or not hash_part or not size_part:
        raise ValueError(f"invalid digest {text!r}: expected hex_hash/size_bytes")
    hash_part = hash_part.lower()
    if not _HEX_RE.match(hash_part):
        raise ValueError(f"invalid digest {text!r}: hash is not hex")
    try:
        size = int(size_part)
    except ValueError:
        raise ValueError(f"invalid digest {text!r}: size is not an integer") from None
    if size < 0:
        raise ValueError(f"invalid digest {text!r}: negative size")
    return Digest(hash_part, size)


def format_digest(digest: Digest) -> str:
    return str(digest)


class DigestComputer:
    """Computes digests with one configured hash function."""

    def __init__(self, function: str = "sha256"):
        name = (function or "sha256").strip().lower()
        if name not in HASH_FUNCTIONS:
            raise ValueError(f"unknown digest function: {function}")
        self.function = name
        self._new = HASH_FUNCTIONS[name]

    def hasher(self):
        return self._new()

    def compute(self, data: bytes) -> Digest:
        h = self._new()
        h.update(data)
        return Digest(h.hexdigest(), len(data))

    def compute_str(self, s: str) -> Digest:
        return self.compute(s.encode("utf-8"))

    def compute_message(self, message) -> Digest:
        """Digest of a message's canonical serialization, as the store keys it."""
        return self.compute(protos.canonical_bytes(message))

    def compute_path(self, path: Union[str, Path]) -> Digest:
        p = Path(path)
        if not p.is_file():
            raise OSError(f"can only compute the digest of a regular file: {p}")
        h = self._new()
        size = 0
        with open(p, "rb") as f:
            for chunk in iter(lambda: f.read(_READ_BLOCK), b""):
                h.update(chunk)
                size += len(chunk)
        return Digest(h.hexdigest(), size)

    @property
    def empty_digest(self) -> Digest:
        return self.compute(b"")
