"""
Frame codec for the orchestrator/worker pipes.

Each frame is a fixed header followed by a body::

    +---------+----------------+----------------------+
    | version | body length    | body                 |
    | 1 byte  | 4 bytes, BE    | pickled field values |
    +---------+----------------+----------------------+

Length prefixing keeps framing independent of the payload bytes, so rows holding
CR/LF (or anything else) cannot split or merge frames. Bodies are validated back
into domain models through a discriminated union on ``kind``.

Pickle is only ever exchanged between a parent and the worker processes it spawned;
never feed this decoder bytes from an untrusted peer.
"""

from __future__ import annotations

import pickle
import struct
from typing import Annotated, Any, Dict, List, NamedTuple, Union

from pydantic import Field, TypeAdapter, ValidationError

from dbagent.domain.models import Frame, QueryRequest, ResponseFrame, WorkerInit

PROTOCOL_VERSION = 1
HEADER = struct.Struct("!BI")
MAX_FRAME_BYTES = 64 * 1024 * 1024

_FRAME_ADAPTER: TypeAdapter[Frame] = TypeAdapter(
    Annotated[Union[WorkerInit, QueryRequest, ResponseFrame], Field(discriminator="kind")]
)


class FrameDecodeError(ValueError):
    """Raised when bytes on a pipe cannot be turned into a frame."""


class RawFrame(NamedTuple):
    version: int
    body: bytes


def _field_values(frame: Frame) -> Dict[str, Any]:
    """
    Field name -> value, without serializing the values.

    ``model_dump()`` would turn dataclass or model correlation ids into dicts and
    namedtuples into plain tuples; pickling the values as-is echoes them back with
    their types intact. Such values must be importable in the worker process.
    """
    return {name: getattr(frame, name) for name in type(frame).model_fields}


def encode_frame(frame: Frame) -> bytes:
    """Serialize a frame model to header + body bytes."""
    body = pickle.dumps(_field_values(frame), protocol=pickle.HIGHEST_PROTOCOL)
    if len(body) > MAX_FRAME_BYTES:
        raise ValueError(f"Frame body of {len(body)} bytes exceeds {MAX_FRAME_BYTES}")
    return HEADER.pack(PROTOCOL_VERSION, len(body)) + body


def decode_frame(raw: RawFrame) -> Frame:
    """
    Validate one raw frame into its domain model.

    Raises
    ------
    FrameDecodeError
        On a version mismatch, an unreadable body, or a body that fails validation.
    """
    if raw.version != PROTOCOL_VERSION:
        raise FrameDecodeError(
            f"Unsupported protocol version {raw.version} (expected {PROTOCOL_VERSION})"
        )
    try:
        data = pickle.loads(raw.body)
    except Exception as exc:  # noqa: BLE001 - unpickling can raise nearly anything
        raise FrameDecodeError(f"Undecodable frame body: {exc}") from exc
    try:
        return _FRAME_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise FrameDecodeError(f"Invalid frame: {exc}") from exc


class FrameDecoder:
    """
    Incremental splitter for a byte stream of frames.

    Feed it chunks as they arrive; it returns every frame completed by the chunk and
    keeps partial data buffered for the next call.
    """

    def __init__(self, max_frame_bytes: int = MAX_FRAME_BYTES) -> None:
        self.max_frame_bytes = max_frame_bytes
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Bytes buffered but not yet part of a complete frame."""
        return len(self._buffer)

    def feed(self, data: bytes) -> List[RawFrame]:
        """
        Append ``data`` and return all complete frames.

        Raises
        ------
        FrameDecodeError
            If a header announces a body larger than ``max_frame_bytes``. The stream
            cannot be resynchronized after that, so the buffer is discarded.
        """
        self._buffer.extend(data)
        frames: List[RawFrame] = []
        while len(self._buffer) >= HEADER.size:
            version, length = HEADER.unpack_from(self._buffer)
            if length > self.max_frame_bytes:
                self._buffer.clear()
                raise FrameDecodeError(
                    f"Frame length {length} exceeds limit of {self.max_frame_bytes} bytes"
                )
            end = HEADER.size + length
            if len(self._buffer) < end:
                break
            frames.append(RawFrame(version, bytes(self._buffer[HEADER.size:end])))
            del self._buffer[:end]
        return frames


__all__ = [
    "FrameDecodeError",
    "FrameDecoder",
    "HEADER",
    "MAX_FRAME_BYTES",
    "PROTOCOL_VERSION",
    "RawFrame",
    "decode_frame",
    "encode_frame",
]
