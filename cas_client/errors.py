from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

from .digest import Digest


class CASError(Exception):
    """Base class for failures surfaced by the CAS client."""


class NotFoundError(CASError):
    """The remote store has no blob for the digest (cache miss)."""

    def __init__(self, digest: Digest, message: Optional[str] = None):
        self.digest = digest
        super().__init__(message or f"blob not found: {digest}")


class TransportError(CASError):
    """The transport failed for a reason other than a cache miss."""

    def __init__(self, message: str, *, code: Optional[str] = None):
        self.code = code
        super().__init__(message if code is None else f"{message} [{code}]")


class IntegrityError(CASError):
    """A blob failed to parse, or its content does not match its digest."""


class SizeMismatchError(CASError):
    """The server committed a different number of bytes than the digest declares."""

    def __init__(self, digest: Digest, committed_size: int):
        self.digest = digest
        self.committed_size = committed_size
        super().__init__(
            f"committed size of {committed_size} is different from digest size of {digest.size_bytes} ({digest})"
        )


class MissingSubdirectoryError(CASError):
    """A DirectoryNode references a Directory absent from the supplied lookup table."""

    def __init__(self, path: Union[str, Path], digest: Digest):
        self.path = Path(path)
        self.digest = digest
        super().__init__(f"could not find subdirectory {self.path} for download: digest {digest} not found")
