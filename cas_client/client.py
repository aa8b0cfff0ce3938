from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Optional, TextIO, Union

from .backend import BlobBackend, DiskBackend
from .config import CasConfig
from .digest import Digest, DigestComputer
from .grpc_cache import GrpcBackend
from .http_cache import HttpBackend
from .listing import list_directory
from .materialize import DirectoryMaterializer
from .tree import TreeFetcher, build_child_map, parse_output_directory, parse_tree

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def open_backend(cfg: CasConfig) -> BlobBackend:
    if cfg.remote_cache:
        logger.debug("using gRPC cache %s (instance %r)", cfg.remote_cache, cfg.instance_name)
        return GrpcBackend.connect(
            cfg.remote_cache,
            instance_name=cfg.instance_name,
            timeout_s=cfg.timeout_s,
            chunk_size=cfg.chunk_size,
            page_size=cfg.get_tree_page_size,
        )
    if cfg.remote_http_cache:
        logger.debug("using HTTP cache %s", cfg.remote_http_cache)
        return HttpBackend(cfg.remote_http_cache, timeout_s=cfg.timeout_s, chunk_size=cfg.chunk_size)
    if cfg.local_cache:
        logger.debug("using local cache %s", cfg.local_cache)
        backend = DiskBackend(cfg.local_cache, function=cfg.digest_function)
        backend.init()
        return backend
    raise ValueError("invalid_config: set one of cas.remote_cache, cas.remote_http_cache, cas.local_cache")


class CasClient:
    """Composes digesting, tree fetch, materialization and transfer over one backend."""

    def __init__(
        self,
        backend: BlobBackend,
        computer: Optional[DigestComputer] = None,
        *,
        max_workers: int = 1,
        max_tree_depth: int = 512,
        use_get_tree: bool = True,
    ):
        self.backend = backend
        self.computer = computer or DigestComputer()
        self.fetcher = TreeFetcher(
            backend,
            self.computer,
            max_depth=max_tree_depth,
            max_workers=max_workers,
            use_bulk=use_get_tree,
        )
        self.materializer = DirectoryMaterializer(backend, self.computer, self.fetcher, max_workers=max_workers)

    @classmethod
    def from_config(cls, cfg: CasConfig) -> "CasClient":
        return cls(
            open_backend(cfg),
            DigestComputer(cfg.digest_function),
            max_workers=cfg.max_workers,
            max_tree_depth=cfg.max_tree_depth,
            use_get_tree=cfg.use_get_tree,
        )

    def close(self) -> None:
        self.backend.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -------------------------
    # Trees
    # -------------------------
    def get_tree(self, root_digest: Digest):
        return self.fetcher.get_tree(root_digest)

    def get_output_directory(self, digest: Digest):
        return parse_output_directory(self.fetcher.fetch_verified(digest), digest)

    def download_directory(self, dest: PathLike, root_digest: Digest, *, atomic: bool = False) -> None:
        self.materializer.download_directory(dest, root_digest, atomic=atomic)

    def download_output_directory(self, output_dir, dest: PathLike, *, atomic: bool = False) -> None:
        self.materializer.download_output_directory(output_dir, dest, atomic=atomic)

    def list_tree(self, root_digest: Digest, limit: int, stream: Optional[TextIO] = None) -> int:
        tree = self.get_tree(root_digest)
        child_map = build_child_map(tree.children, self.computer)
        return list_directory(PurePosixPath(""), tree.root, child_map, limit, stream)

    def list_output_directory(self, output_dir, limit: int, stream: Optional[TextIO] = None) -> int:
        tree_digest = Digest.from_proto(output_dir.tree_digest)
        tree = parse_tree(self.fetcher.fetch_verified(tree_digest), tree_digest)
        child_map = build_child_map(tree.children, self.computer)
        print(f"OutputDirectory rooted at {output_dir.path}:", file=stream)
        return list_directory(PurePosixPath(""), tree.root, child_map, limit, stream)

    # -------------------------
    # Blobs
    # -------------------------
    def download_blob(self, digest: Digest) -> bytes:
        return self.backend.download_blob(digest)

    def download_blob_to(self, digest: Digest, sink: BinaryIO) -> None:
        self.backend.download_blob_to(digest, sink)

    def upload_blob(self, digest: Digest, source: BinaryIO) -> None:
        self.backend.upload_blob(digest, source)

    def upload_file(self, path: PathLike) -> Digest:
        return self.backend.upload_path(path, self.computer)

    def upload_bytes(self, data: bytes) -> Digest:
        return self.backend.upload_bytes(data, self.computer)
