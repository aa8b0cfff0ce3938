from __future__ import annotations

import logging
import queue
import uuid
from typing import BinaryIO, Iterator, List, Optional

import grpc

from . import protos
from .backend import BlobBackend
from .digest import Digest
from .errors import IntegrityError, NotFoundError, SizeMismatchError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

_END = object()


def read_resource_name(instance_name: str, digest: Digest) -> str:
    """`[instance_name/]blobs/<hash>/<size>`"""
    parts = [instance_name] if instance_name else []
    parts += ["blobs", digest.hash, str(digest.size_bytes)]
    return "/".join(parts)


def write_resource_name(instance_name: str, digest: Digest, upload_id: Optional[str] = None) -> str:
    """`[instance_name/]uploads/<uuid>/blobs/<hash>/<size>`, a fresh uuid per upload."""
    parts = [instance_name] if instance_name else []
    parts += ["uploads", upload_id or str(uuid.uuid4()), "blobs", digest.hash, str(digest.size_bytes)]
    return "/".join(parts)


def _transport_error(e: grpc.RpcError, what: str) -> TransportError:
    code = e.code() if hasattr(e, "code") else None
    details = e.details() if hasattr(e, "details") else str(e)
    return TransportError(f"{what}: {details}", code=code.name if code is not None else None)


class _UploadStream:
    """Producer side of one ByteStream.Write call.

    The caller's thread turns source bytes into offset-tagged WriteRequests and
    hands them to the call through a bounded queue; gRPC drains the queue on
    its own thread. The call future is the completion signal: it resolves with
    the server's WriteResponse, or with the RPC error.
    """

    def __init__(self, write_call, resource_name: str, size_bytes: int, *, timeout: Optional[float], depth: int = 8):
        self.resource_name = resource_name
        self.size_bytes = size_bytes
        self.offset = 0
        self._queue: "queue.Queue" = queue.Queue(maxsize=depth)
        self._future = write_call.future(iter(self._queue.get, _END), timeout=timeout)

    def write(self, data: bytes) -> None:
        if not data:
            return
        end = self.offset + len(data)
        if end > self.size_bytes:
            raise ValueError(f"upload overruns declared size: {end} > {self.size_bytes}")
        self._put(protos.WriteRequest(
            resource_name=self.resource_name,
            write_offset=self.offset,
            finish_write=end == self.size_bytes,
            data=data,
        ))
        self.offset = end

    def close(self) -> None:
        if self.offset != self.size_bytes:
            raise ValueError(f"upload closed after {self.offset} of {self.size_bytes} bytes")
        self._put(_END)

    def abort(self) -> None:
        self._future.cancel()
        try:
            self._queue.put_nowait(_END)
        except queue.Full:
            pass

    def result(self):
        return self._future.result()

    def _put(self, item) -> None:
        while not self._future.done():
            try:
                self._queue.put(item, timeout=0.05)
                return
            except queue.Full:
                continue
        # The call already finished (error, or an early commit by the server);
        # result() reports which.


class GrpcBackend(BlobBackend):
    """Blob transfer over google.bytestream plus REAPI GetTree on one channel."""

    def __init__(
        self,
        channel: grpc.Channel,
        *,
        instance_name: str = "",
        timeout_s: Optional[float] = 60.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        page_size: int = 1000,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        self.channel = channel
        self.instance_name = instance_name or ""
        self.timeout_s = timeout_s
        self.chunk_size = int(chunk_size)
        self.page_size = int(page_size)

        self._read = channel.unary_stream(
            protos.method_path(protos.BYTESTREAM_SERVICE, "Read"),
            request_serializer=protos.ReadRequest.SerializeToString,
            response_deserializer=protos.ReadResponse.FromString,
        )
        self._write = channel.stream_unary(
            protos.method_path(protos.BYTESTREAM_SERVICE, "Write"),
            request_serializer=protos.WriteRequest.SerializeToString,
            response_deserializer=protos.WriteResponse.FromString,
        )
        self._get_tree = channel.unary_stream(
            protos.method_path(protos.CAS_SERVICE, "GetTree"),
            request_serializer=protos.GetTreeRequest.SerializeToString,
            response_deserializer=protos.GetTreeResponse.FromString,
        )

    @classmethod
    def connect(cls, target: str, **kwargs) -> "GrpcBackend":
        return cls(grpc.insecure_channel(target), **kwargs)

    def close(self) -> None:
        self.channel.close()

    def _read_blob(self, digest: Digest, sink: BinaryIO) -> None:
        request = protos.ReadRequest(resource_name=read_resource_name(self.instance_name, digest))
        received = 0
        try:
            for response in self._read(request, timeout=self.timeout_s):
                sink.write(response.data)
                received += len(response.data)
        except grpc.RpcError as e:
            if e.code() == grpc.StatusCode.NOT_FOUND:
                raise NotFoundError(digest) from e
            raise _transport_error(e, f"read of {digest} failed") from e
        if received != digest.size_bytes:
            raise IntegrityError(f"read of {digest} returned {received} bytes")
        logger.debug("read %s (%d bytes) from %s", digest, received, request.resource_name)

    def _write_blob(self, digest: Digest, source: BinaryIO) -> None:
        stream = _UploadStream(
            self._write,
            write_resource_name(self.instance_name, digest),
            digest.size_bytes,
            timeout=self.timeout_s,
        )
        try:
            for chunk in iter(lambda: source.read(self.chunk_size), b""):
                stream.write(chunk)
            stream.close()
        except BaseException:
            stream.abort()
            raise

        try:
            response = stream.result()
        except grpc.RpcError as e:
            raise _transport_error(e, f"write of {digest} failed") from e

        if response.committed_size != digest.size_bytes:
            raise SizeMismatchError(digest, int(response.committed_size))
        logger.debug("wrote %s to %s", digest, stream.resource_name)

    def get_tree_pages(self, root_digest: Digest) -> Iterator[List]:
        token = ""
        while True:
            request = protos.GetTreeRequest(
                instance_name=self.instance_name,
                root_digest=root_digest.to_proto(),
                page_size=self.page_size,
                page_token=token,
            )
            next_token = ""
            try:
                for response in self._get_tree(request, timeout=self.timeout_s):
                    next_token = response.next_page_token
                    yield list(response.directories)
            except grpc.RpcError as e:
                if e.code() == grpc.StatusCode.NOT_FOUND:
                    raise NotFoundError(root_digest, f"tree not found: {root_digest} ({e.details()})") from e
                raise _transport_error(e, f"GetTree of {root_digest} failed") from e
            if not next_token:
                return
            if next_token == token:
                raise TransportError(f"GetTree of {root_digest} repeated page token {token!r}")
            token = next_token
