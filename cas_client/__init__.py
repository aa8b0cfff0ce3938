from .digest import Digest, DigestComputer, parse_digest
from .errors import (
    CASError,
    IntegrityError,
    MissingSubdirectoryError,
    NotFoundError,
    SizeMismatchError,
    TransportError,
)

__all__ = [
    "CASError",
    "Digest",
    "DigestComputer",
    "IntegrityError",
    "MissingSubdirectoryError",
    "NotFoundError",
    "SizeMismatchError",
    "TransportError",
    "parse_digest",
]
