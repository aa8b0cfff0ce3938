"""Wire messages for the Remote Execution API v2 and google.bytestream.

Only the fields the client reads or writes are declared. Fields a newer server
adds (node_properties etc.) survive a parse/serialize round trip as unknown
fields, so recomputed Directory digests still match the server's.
"""

from __future__ import annotations

from typing import Iterable, Optional, Tuple

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

REAPI_PACKAGE = "build.bazel.remote.execution.v2"
BYTESTREAM_PACKAGE = "google.bytestream"

CAS_SERVICE = f"{REAPI_PACKAGE}.ContentAddressableStorage"
BYTESTREAM_SERVICE = f"{BYTESTREAM_PACKAGE}.ByteStream"

_F = descriptor_pb2.FieldDescriptorProto

# (name, number, type, repeated, message type name)
_Field = Tuple[str, int, int, bool, Optional[str]]


def _add_message(fdp: descriptor_pb2.FileDescriptorProto, name: str, fields: Iterable[_Field]) -> None:
    m = fdp.message_type.add()
    m.name = name
    for fname, number, ftype, repeated, type_name in fields:
        f = m.field.add()
        f.name = fname
        f.number = number
        f.type = ftype
        f.label = _F.LABEL_REPEATED if repeated else _F.LABEL_OPTIONAL
        if type_name:
            f.type_name = type_name


def _reapi_file() -> descriptor_pb2.FileDescriptorProto:
    fdp = descriptor_pb2.FileDescriptorProto()
    fdp.name = "build/bazel/remote/execution/v2/remote_execution.proto"
    fdp.package = REAPI_PACKAGE
    fdp.syntax = "proto3"
    digest = f".{REAPI_PACKAGE}.Digest"
    directory = f".{REAPI_PACKAGE}.Directory"
    _add_message(fdp, "Digest", [
        ("hash", 1, _F.TYPE_STRING, False, None),
        ("size_bytes", 2, _F.TYPE_INT64, False, None),
    ])
    _add_message(fdp, "FileNode", [
        ("name", 1, _F.TYPE_STRING, False, None),
        ("digest", 2, _F.TYPE_MESSAGE, False, digest),
        ("is_executable", 4, _F.TYPE_BOOL, False, None),
    ])
    _add_message(fdp, "DirectoryNode", [
        ("name", 1, _F.TYPE_STRING, False, None),
        ("digest", 2, _F.TYPE_MESSAGE, False, digest),
    ])
    _add_message(fdp, "SymlinkNode", [
        ("name", 1, _F.TYPE_STRING, False, None),
        ("target", 2, _F.TYPE_STRING, False, None),
    ])
    _add_message(fdp, "Directory", [
        ("files", 1, _F.TYPE_MESSAGE, True, f".{REAPI_PACKAGE}.FileNode"),
        ("directories", 2, _F.TYPE_MESSAGE, True, f".{REAPI_PACKAGE}.DirectoryNode"),
        ("symlinks", 3, _F.TYPE_MESSAGE, True, f".{REAPI_PACKAGE}.SymlinkNode"),
    ])
    _add_message(fdp, "Tree", [
        ("root", 1, _F.TYPE_MESSAGE, False, directory),
        ("children", 2, _F.TYPE_MESSAGE, True, directory),
    ])
    _add_message(fdp, "OutputDirectory", [
        ("path", 1, _F.TYPE_STRING, False, None),
        ("tree_digest", 3, _F.TYPE_MESSAGE, False, digest),
    ])
    _add_message(fdp, "GetTreeRequest", [
        ("instance_name", 1, _F.TYPE_STRING, False, None),
        ("root_digest", 2, _F.TYPE_MESSAGE, False, digest),
        ("page_size", 3, _F.TYPE_INT32, False, None),
        ("page_token", 4, _F.TYPE_STRING, False, None),
    ])
    _add_message(fdp, "GetTreeResponse", [
        ("directories", 1, _F.TYPE_MESSAGE, True, directory),
        ("next_page_token", 2, _F.TYPE_STRING, False, None),
    ])
    return fdp


def _bytestream_file() -> descriptor_pb2.FileDescriptorProto:
    fdp = descriptor_pb2.FileDescriptorProto()
    fdp.name = "google/bytestream/bytestream.proto"
    fdp.package = BYTESTREAM_PACKAGE
    fdp.syntax = "proto3"
    _add_message(fdp, "ReadRequest", [
        ("resource_name", 1, _F.TYPE_STRING, False, None),
        ("read_offset", 2, _F.TYPE_INT64, False, None),
        ("read_limit", 3, _F.TYPE_INT64, False, None),
    ])
    _add_message(fdp, "ReadResponse", [
        ("data", 10, _F.TYPE_BYTES, False, None),
    ])
    _add_message(fdp, "WriteRequest", [
        ("resource_name", 1, _F.TYPE_STRING, False, None),
        ("write_offset", 2, _F.TYPE_INT64, False, None),
        ("finish_write", 3, _F.TYPE_BOOL, False, None),
        ("data", 10, _F.TYPE_BYTES, False, None),
    ])
    _add_message(fdp, "WriteResponse", [
        ("committed_size", 1, _F.TYPE_INT64, False, None),
    ])
    return fdp


# A private pool keeps these definitions from clashing with generated REAPI
# modules another package may have registered in the default pool.
_POOL = descriptor_pool.DescriptorPool()
_POOL.AddSerializedFile(_reapi_file().SerializeToString())
_POOL.AddSerializedFile(_bytestream_file().SerializeToString())


def _message_class(full_name: str):
    return message_factory.GetMessageClass(_POOL.FindMessageTypeByName(full_name))


Digest = _message_class(f"{REAPI_PACKAGE}.Digest")
FileNode = _message_class(f"{REAPI_PACKAGE}.FileNode")
DirectoryNode = _message_class(f"{REAPI_PACKAGE}.DirectoryNode")
SymlinkNode = _message_class(f"{REAPI_PACKAGE}.SymlinkNode")
Directory = _message_class(f"{REAPI_PACKAGE}.Directory")
Tree = _message_class(f"{REAPI_PACKAGE}.Tree")
OutputDirectory = _message_class(f"{REAPI_PACKAGE}.OutputDirectory")
GetTreeRequest = _message_class(f"{REAPI_PACKAGE}.GetTreeRequest")
GetTreeResponse = _message_class(f"{REAPI_PACKAGE}.GetTreeResponse")

ReadRequest = _message_class(f"{BYTESTREAM_PACKAGE}.ReadRequest")
ReadResponse = _message_class(f"{BYTESTREAM_PACKAGE}.ReadResponse")
WriteRequest = _message_class(f"{BYTESTREAM_PACKAGE}.WriteRequest")
WriteResponse = _message_class(f"{BYTESTREAM_PACKAGE}.WriteResponse")


def method_path(service: str, method: str) -> str:
    return f"/{service}/{method}"


def canonical_bytes(message) -> bytes:
    """Serialized form the store hashes (deterministic map ordering)."""
    return message.SerializeToString(deterministic=True)
