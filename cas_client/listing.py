from __future__ import annotations

from pathlib import PurePosixPath
from typing import Dict, Optional, TextIO

from .digest import Digest
from .errors import MissingSubdirectoryError

TRUNCATED = " ... (too many files to list, some omitted)"


def list_file_nodes(path: PurePosixPath, directory, limit: int, stream: Optional[TextIO] = None) -> int:
    """Print up to `limit` files of `directory`; return how many were printed."""
    n = 0
    for node in directory.files:
        if n >= limit:
            print(TRUNCATED, file=stream)
            break
        print(f"{path / node.name} [File content digest: {Digest.from_proto(node.digest)}]", file=stream)
        n += 1
    return n


def list_directory(
    path: PurePosixPath,
    directory,
    child_map: Dict[Digest, object],
    limit: int,
    stream: Optional[TextIO] = None,
) -> int:
    """Recursively print files and subdirectories with digests, files first."""
    n = list_file_nodes(path, directory, limit, stream)
    if n >= limit:
        return n
    for node in directory.directories:
        child_path = path / node.name
        child_digest = Digest.from_proto(node.digest)
        print(f"{child_path} [Directory digest: {child_digest}]", file=stream)
        child = child_map.get(child_digest)
        if child is None:
            raise MissingSubdirectoryError(child_path, child_digest)
        n += list_directory(child_path, child, child_map, limit - n, stream)
        if n >= limit:
            return n
    return n
