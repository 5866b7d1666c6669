"""Wire protocol: framing and message codec."""

from .codec import (
    SCHEMA_VERSION,
    AddBot,
    ControlsMessage,
    MessageType,
    RemoveBot,
    decode_controls,
    decode_message,
    decode_snapshot,
    encode_add_bot,
    encode_controls,
    encode_remove_bot,
    encode_snapshot,
)
from .framing import FrameBuffer, frame

__all__ = [
    "SCHEMA_VERSION",
    "AddBot",
    "ControlsMessage",
    "MessageType",
    "RemoveBot",
    "decode_controls",
    "decode_message",
    "decode_snapshot",
    "encode_add_bot",
    "encode_controls",
    "encode_remove_bot",
    "encode_snapshot",
    "FrameBuffer",
    "frame",
]
