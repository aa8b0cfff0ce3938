from __future__ import annotations

import logging
import os
import shutil
import stat
import uuid
from pathlib import Path, PurePosixPath
from typing import Dict, Optional, Union

from .backend import BlobBackend
from .digest import Digest, DigestComputer
from .errors import IntegrityError, MissingSubdirectoryError
from .tree import TreeFetcher, bounded_map, build_child_map, parse_tree

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _check_entry_name(parent: Path, name: str) -> Path:
    # a Directory entry is a single path component
    if not name or name in (".", "..") or "/" in name or "\\" in name or "\x00" in name:
        raise IntegrityError(f"invalid entry name {name!r} in {parent}")
    return parent / name


def set_executable(path: Path, is_executable: bool) -> None:
    """Set or clear the owner-execute bit; Windows has no such bit."""
    if os.name == "nt":
        return
    mode = stat.S_IMODE(os.stat(path).st_mode)
    if is_executable:
        mode |= stat.S_IXUSR
    else:
        mode &= ~stat.S_IXUSR
    os.chmod(path, mode)


class DirectoryMaterializer:
    """Recreates Directory trees from the CAS on the local filesystem.

    A failure aborts the whole call and leaves whatever was already written in
    place. Pass `atomic=True` to the public entry points to build into a
    sibling temporary directory that is renamed over `dest` only on success.
    """

    def __init__(
        self,
        backend: BlobBackend,
        computer: DigestComputer,
        fetcher: Optional[TreeFetcher] = None,
        *,
        max_workers: int = 1,
    ):
        self.backend = backend
        self.computer = computer
        self.fetcher = fetcher or TreeFetcher(backend, computer, max_workers=max_workers)
        self.max_workers = int(max_workers)

    # -------------------------
    # Public entry points
    # -------------------------
    def download_directory(self, dest: PathLike, root_digest: Digest, *, atomic: bool = False) -> None:
        tree = self.fetcher.get_tree(root_digest)
        child_map = build_child_map(tree.children, self.computer)
        self._materialize(Path(dest), tree.root, child_map, atomic=atomic)
        logger.info("downloaded directory %s to %s", root_digest, dest)

    def download_output_directory(self, output_dir, dest: PathLike, *, atomic: bool = False) -> None:
        tree_digest = Digest.from_proto(output_dir.tree_digest)
        tree = parse_tree(self.fetcher.fetch_verified(tree_digest), tree_digest)
        child_map = build_child_map(tree.children, self.computer)
        self._materialize(Path(dest), tree.root, child_map, atomic=atomic)
        logger.info("downloaded output directory %s (tree %s) to %s", output_dir.path, tree_digest, dest)

    def download_directory_tree(self, dest: PathLike, directory, child_map: Dict[Digest, object]) -> None:
        """Materialize `directory` at `dest`, resolving subdirectories through `child_map`."""
        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)

        def _file(node) -> None:
            self.download_file(_check_entry_name(dest, node.name), Digest.from_proto(node.digest), node.is_executable)

        bounded_map(_file, list(directory.files), self.max_workers)

        for node in directory.directories:
            child_path = _check_entry_name(dest, node.name)
            child_digest = Digest.from_proto(node.digest)
            child = child_map.get(child_digest)
            if child is None:
                raise MissingSubdirectoryError(child_path, child_digest)
            self.download_directory_tree(child_path, child, child_map)

        for link in directory.symlinks:
            self._make_symlink(dest, link)

    def download_file(self, path: PathLike, digest: Digest, is_executable: bool = False) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        if digest.size_bytes == 0:
            # the empty blob needs no round trip
            path.write_bytes(b"")
        else:
            self.backend.download_to_path(digest, path)
            received = self.computer.compute_path(path)
            if received != digest:
                raise IntegrityError(f"digest does not match for {path}: {received} != {digest}")
        set_executable(path, bool(is_executable))

    # -------------------------
    # Internals
    # -------------------------
    def _materialize(self, dest: Path, root, child_map: Dict[Digest, object], *, atomic: bool) -> None:
        if not atomic:
            self.download_directory_tree(dest, root, child_map)
            return

        if dest.exists() and (not dest.is_dir() or any(dest.iterdir())):
            raise FileExistsError(f"refusing atomic download over non-empty {dest}")
        dest.parent.mkdir(parents=True, exist_ok=True)
        staging = dest.parent / f".{dest.name}.{uuid.uuid4().hex}.partial"
        try:
            self.download_directory_tree(staging, root, child_map)
            if dest.exists():
                dest.rmdir()
            os.replace(staging, dest)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

    def _make_symlink(self, dest: Path, link) -> None:
        path = _check_entry_name(dest, link.name)
        target = PurePosixPath(link.target)
        if target.is_absolute() or ".." in target.parts:
            raise IntegrityError(f"symlink {path} points outside the tree: {link.target!r}")
        if path.is_symlink() or path.exists():
            path.unlink()
        os.symlink(str(target), path)
