from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest

from cas_client import protos
from cas_client.digest import Digest, DigestComputer
from cas_client.errors import IntegrityError, MissingSubdirectoryError, NotFoundError
from cas_client.materialize import DirectoryMaterializer

from support.fakes import MemoryBackend, build_foo_tree, dir_node, file_node

posix_only = pytest.mark.skipif(os.name == "nt", reason="no owner-execute bit on Windows")


def _is_executable(p: Path) -> bool:
    return bool(os.stat(p).st_mode & stat.S_IXUSR)


def _materializer(backend: MemoryBackend, **kw) -> DirectoryMaterializer:
    return DirectoryMaterializer(backend, DigestComputer(), **kw)


def test_empty_directory_is_created(tmp_path: Path):
    backend = MemoryBackend()
    _materializer(backend).download_directory_tree(tmp_path / "out", protos.Directory(), {})
    assert (tmp_path / "out").is_dir()
    assert list((tmp_path / "out").iterdir()) == []


def test_empty_directory_by_digest_is_created(tmp_path: Path):
    backend = MemoryBackend()
    d = backend.add_message(protos.Directory())
    _materializer(backend).download_directory(tmp_path / "out", d)
    assert (tmp_path / "out").is_dir()


def test_zero_size_file_makes_no_transport_call(tmp_path: Path):
    backend = MemoryBackend()
    empty = DigestComputer().compute(b"")
    directory = protos.Directory(files=[file_node("empty", empty)])

    _materializer(backend).download_directory_tree(tmp_path / "out", directory, {})

    assert (tmp_path / "out" / "empty").read_bytes() == b""
    assert backend.calls == 0


def test_corrupted_bytes_raise_integrity_failure(tmp_path: Path):
    backend = MemoryBackend()
    good = backend.add_blob(b"hello")
    backend.corrupt[good] = b"jello"
    directory = protos.Directory(files=[file_node("a.txt", good)])

    with pytest.raises(IntegrityError) as ei:
        _materializer(backend).download_directory_tree(tmp_path / "out", directory, {})
    assert good.hash in str(ei.value)


def test_missing_child_map_entry_raises(tmp_path: Path):
    backend = MemoryBackend()
    sub = backend.add_message(protos.Directory(files=[file_node("x", backend.add_blob(b"x"))]))
    directory = protos.Directory(directories=[dir_node("sub", sub)])

    with pytest.raises(MissingSubdirectoryError) as ei:
        _materializer(backend).download_directory_tree(tmp_path / "out", directory, {})
    assert ei.value.digest == sub
    assert ei.value.path == tmp_path / "out" / "sub"


def test_missing_file_blob_propagates_not_found(tmp_path: Path):
    backend = MemoryBackend()
    ghost = Digest("0" * 64, 4)
    directory = protos.Directory(files=[file_node("ghost", ghost)])
    with pytest.raises(NotFoundError):
        _materializer(backend).download_directory_tree(tmp_path / "out", directory, {})


@posix_only
def test_scenario_foo_bar(tmp_path: Path):
    backend = MemoryBackend()
    t = build_foo_tree(backend)
    out = tmp_path / "path"

    _materializer(backend).download_directory(out, t.foo_digest)

    assert (out / "a.txt").read_bytes() == b"hello"
    assert not _is_executable(out / "a.txt")
    assert (out / "bar").is_dir()
    assert (out / "bar" / "b.txt").read_bytes() == b""
    # b.txt is never requested from the transport
    assert t.b_digest not in backend.reads
    assert sorted(str(d) for d in backend.reads) == sorted(str(d) for d in (t.foo_digest, t.bar_digest, t.a_digest))


@posix_only
def test_executable_bits_follow_file_nodes(tmp_path: Path):
    backend = MemoryBackend()
    run = backend.add_blob(b"#!/bin/sh\n")
    data = backend.add_blob(b"data")
    sub = protos.Directory(files=[file_node("tool", run, is_executable=True)])
    sub_d = backend.add_message(sub)
    root_d = backend.add_message(protos.Directory(files=[file_node("data", data)], directories=[dir_node("bin", sub_d)]))

    _materializer(backend).download_directory(tmp_path / "out", root_d)

    assert _is_executable(tmp_path / "out" / "bin" / "tool")
    assert not _is_executable(tmp_path / "out" / "data")


def test_download_output_directory_nested(tmp_path: Path):
    backend = MemoryBackend()
    c = DigestComputer()
    qux = backend.add_blob(b"qux")
    wobble = protos.Directory(files=[file_node("qux", qux, is_executable=True)])
    bar = protos.Directory(
        files=[file_node("qux", qux)],
        directories=[dir_node("wobble", c.compute_message(wobble))],
    )
    tree_d = backend.add_message(protos.Tree(root=bar, children=[wobble]))
    out_dir = protos.OutputDirectory(path="test/bar", tree_digest=tree_d.to_proto())

    _materializer(backend).download_output_directory(out_dir, tmp_path / "test" / "bar")

    assert (tmp_path / "test" / "bar" / "qux").read_bytes() == b"qux"
    assert (tmp_path / "test" / "bar" / "wobble" / "qux").is_file()


def test_download_output_directory_empty(tmp_path: Path):
    backend = MemoryBackend()
    tree_d = backend.add_message(protos.Tree(root=protos.Directory()))
    out_dir = protos.OutputDirectory(path="test/bar", tree_digest=tree_d.to_proto())

    _materializer(backend).download_output_directory(out_dir, tmp_path / "bar")

    assert (tmp_path / "bar").is_dir()


def test_output_directory_ignores_server_keys_and_rehashes_children(tmp_path: Path):
    backend = MemoryBackend()
    c = DigestComputer()
    real = protos.Directory(files=[file_node("f", backend.add_blob(b"f"))])
    # The parent references a digest no child hashes to.
    root = protos.Directory(directories=[dir_node("sub", c.compute(b"something else"))])
    tree_d = backend.add_message(protos.Tree(root=root, children=[real]))
    out_dir = protos.OutputDirectory(path="o", tree_digest=tree_d.to_proto())

    with pytest.raises(MissingSubdirectoryError):
        _materializer(backend).download_output_directory(out_dir, tmp_path / "o")


def test_unparseable_tree_blob_is_integrity_failure(tmp_path: Path):
    backend = MemoryBackend()
    tree_d = backend.add_blob(b"\x0a\xff")
    out_dir = protos.OutputDirectory(path="o", tree_digest=tree_d.to_proto())
    with pytest.raises(IntegrityError):
        _materializer(backend).download_output_directory(out_dir, tmp_path / "o")


@pytest.mark.parametrize("name", ["", ".", "..", "a/b", "..\\x"])
def test_entry_names_cannot_escape_destination(tmp_path: Path, name: str):
    backend = MemoryBackend()
    directory = protos.Directory(files=[file_node(name, backend.add_blob(b"x"))])
    with pytest.raises(IntegrityError):
        _materializer(backend).download_directory_tree(tmp_path / "out", directory, {})
    assert not (tmp_path / "x").exists()


def test_failure_leaves_partial_tree_in_place(tmp_path: Path):
    backend = MemoryBackend()
    ok = backend.add_blob(b"ok")
    bad = backend.add_blob(b"bad")
    backend.corrupt[bad] = b"BAD"
    directory = protos.Directory(files=[file_node("1-ok", ok), file_node("2-bad", bad)])

    with pytest.raises(IntegrityError):
        _materializer(backend).download_directory_tree(tmp_path / "out", directory, {})
    assert (tmp_path / "out" / "1-ok").read_bytes() == b"ok"


def test_atomic_download_leaves_nothing_on_failure(tmp_path: Path):
    backend = MemoryBackend()
    bad = backend.add_blob(b"bad")
    backend.corrupt[bad] = b"BAD"
    root_d = backend.add_message(protos.Directory(files=[file_node("bad", bad)]))

    with pytest.raises(IntegrityError):
        _materializer(backend).download_directory(tmp_path / "out", root_d, atomic=True)
    assert list(tmp_path.iterdir()) == []


def test_atomic_download_swaps_in_on_success(tmp_path: Path):
    backend = MemoryBackend()
    t = build_foo_tree(backend)
    (tmp_path / "out").mkdir()

    _materializer(backend).download_directory(tmp_path / "out", t.foo_digest, atomic=True)

    assert (tmp_path / "out" / "bar" / "b.txt").exists()
    assert sorted(p.name for p in tmp_path.iterdir()) == ["out"]


def test_atomic_download_refuses_non_empty_destination(tmp_path: Path):
    backend = MemoryBackend()
    t = build_foo_tree(backend)
    (tmp_path / "out").mkdir()
    (tmp_path / "out" / "keep").write_text("x")
    with pytest.raises(FileExistsError):
        _materializer(backend).download_directory(tmp_path / "out", t.foo_digest, atomic=True)


def test_parallel_file_downloads(tmp_path: Path):
    backend = MemoryBackend()
    files = [file_node(f"f{i}", backend.add_blob(f"content-{i}".encode())) for i in range(20)]
    root_d = backend.add_message(protos.Directory(files=files))

    _materializer(backend, max_workers=4).download_directory(tmp_path / "out", root_d)

    for i in range(20):
        assert (tmp_path / "out" / f"f{i}").read_bytes() == f"content-{i}".encode()


@posix_only
def test_relative_symlinks_are_created(tmp_path: Path):
    backend = MemoryBackend()
    root_d = backend.add_message(protos.Directory(
        files=[file_node("target", backend.add_blob(b"t"))],
        symlinks=[protos.SymlinkNode(name="link", target="target")],
    ))
    _materializer(backend).download_directory(tmp_path / "out", root_d)
    assert os.readlink(tmp_path / "out" / "link") == "target"
    assert (tmp_path / "out" / "link").read_bytes() == b"t"


def test_escaping_symlink_is_rejected(tmp_path: Path):
    backend = MemoryBackend()
    root_d = backend.add_message(protos.Directory(symlinks=[protos.SymlinkNode(name="link", target="../../etc/passwd")]))
    with pytest.raises(IntegrityError):
        _materializer(backend).download_directory(tmp_path / "out", root_d)


def test_swapped_tree_blob_is_integrity_failure(tmp_path: Path):
    backend = MemoryBackend()
    real_d = backend.add_message(protos.Tree(root=protos.Directory()))
    other = protos.Tree(root=protos.Directory(files=[file_node("evil", backend.add_blob(b"evil"))]))
    backend.corrupt[real_d] = protos.canonical_bytes(other)
    out_dir = protos.OutputDirectory(path="o", tree_digest=real_d.to_proto())

    with pytest.raises(IntegrityError):
        _materializer(backend).download_output_directory(out_dir, tmp_path / "o")
    assert not (tmp_path / "o" / "evil").exists()
