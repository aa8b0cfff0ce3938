from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Sequence, TypeVar

from google.protobuf.message import DecodeError

from . import protos
from .backend import BlobBackend, PaginatedTreeSource
from .digest import Digest, DigestComputer
from .errors import IntegrityError, NotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def parse_directory(data: bytes, digest: Digest):
    d = protos.Directory()
    try:
        d.ParseFromString(data)
    except DecodeError as e:
        raise IntegrityError(f"blob {digest} is not a Directory: {e}") from e
    return d


def parse_tree(data: bytes, digest: Digest):
    t = protos.Tree()
    try:
        t.ParseFromString(data)
    except DecodeError as e:
        raise IntegrityError(f"blob {digest} is not a Tree: {e}") from e
    return t


def parse_output_directory(data: bytes, digest: Digest):
    o = protos.OutputDirectory()
    try:
        o.ParseFromString(data)
    except DecodeError as e:
        raise IntegrityError(f"blob {digest} is not an OutputDirectory: {e}") from e
    return o


def bounded_map(fn: Callable[[T], R], items: Sequence[T], max_workers: int) -> List[R]:
    """Apply fn to items, fanning out onto at most max_workers threads.

    Results keep input order; the first failure propagates.
    """
    if max_workers <= 1 or len(items) <= 1:
        return [fn(x) for x in items]
    with ThreadPoolExecutor(max_workers=min(max_workers, len(items))) as pool:
        return list(pool.map(fn, items))


def child_digests(directory) -> List[Digest]:
    return [Digest.from_proto(n.digest) for n in directory.directories]


class TreeFetcher:
    """Resolves a root Directory digest into a Tree (root + flat descendant list)."""

    def __init__(
        self,
        backend: BlobBackend,
        computer: DigestComputer,
        *,
        max_depth: int = 512,
        max_workers: int = 1,
        use_bulk: bool = True,
    ):
        self.backend = backend
        self.computer = computer
        self.max_depth = int(max_depth)
        self.max_workers = int(max_workers)
        self.use_bulk = bool(use_bulk)

    def fetch_verified(self, digest: Digest) -> bytes:
        """Download a blob and check it hashes to the digest it was requested by."""
        data = self.backend.download_blob(digest)
        seen = self.computer.compute(data)
        if seen != digest:
            raise IntegrityError(f"blob hashes to {seen}, expected {digest}")
        return data

    def fetch_directory(self, digest: Digest):
        return parse_directory(self.fetch_verified(digest), digest)

    def get_tree(self, root_digest: Digest):
        if self.use_bulk and isinstance(self.backend, PaginatedTreeSource):
            return self._get_tree_bulk(root_digest)
        return self.get_tree_by_blobs(root_digest)

    def get_tree_by_blobs(self, root_digest: Digest):
        """One blob round trip per Directory, level by level.

        A Directory referenced from several parents is fetched and listed once.
        """
        root = self.fetch_directory(root_digest)
        children = self._walk(root_digest, root, lambda ds: bounded_map(self.fetch_directory, ds, self.max_workers))
        logger.debug("fetched tree %s: %d child directories", root_digest, len(children))
        return protos.Tree(root=root, children=children)

    def _get_tree_bulk(self, root_digest: Digest):
        """GetTree pages, re-walked from the root.

        Every referenced digest must resolve among the pages; directories
        nothing references are dropped.
        """
        root = self.fetch_directory(root_digest)
        fetched: Dict[Digest, object] = {}
        pages = 0
        for page in self.backend.get_tree_pages(root_digest):  # type: ignore[attr-defined]
            pages += 1
            for d in page:
                fetched.setdefault(self.computer.compute_message(d), d)

        def _lookup(digests: List[Digest]) -> List:
            out = []
            for cd in digests:
                d = fetched.get(cd)
                if d is None:
                    raise NotFoundError(cd, f"GetTree of {root_digest} is missing directory {cd}")
                out.append(d)
            return out

        children = self._walk(root_digest, root, _lookup)
        logger.debug("fetched tree %s via GetTree: %d pages, %d child directories", root_digest, pages, len(children))
        return protos.Tree(root=root, children=children)

    def _walk(self, root_digest: Digest, root, resolve: Callable[[List[Digest]], List]) -> List:
        children: List = []
        seen = {root_digest}
        level = [root]
        depth = 0
        while level:
            pending: List[Digest] = []
            for d in level:
                for cd in child_digests(d):
                    if cd not in seen:
                        seen.add(cd)
                        pending.append(cd)
            if not pending:
                break
            depth += 1
            if depth > self.max_depth:
                raise IntegrityError(f"tree under {root_digest} is deeper than {self.max_depth} levels")
            level = resolve(pending)
            children.extend(level)
        return children

    def build_child_map(self, tree) -> Dict[Digest, object]:
        return build_child_map(tree.children, self.computer)


def build_child_map(children: Iterable, computer: DigestComputer) -> Dict[Digest, object]:
    """Key each Directory by its recomputed digest rather than a server-supplied one."""
    out: Dict[Digest, object] = {}
    for child in children:
        out[computer.compute_message(child)] = child
    return out
