"""
Wire protocol package for dbagent.

Framing and (de)serialization of the records exchanged over worker pipes.
"""

from dbagent.protocol.codec import (
    FrameDecodeError,
    FrameDecoder,
    RawFrame,
    decode_frame,
    encode_frame,
)

__all__ = [
    "FrameDecodeError",
    "FrameDecoder",
    "RawFrame",
    "decode_frame",
    "encode_frame",
]
