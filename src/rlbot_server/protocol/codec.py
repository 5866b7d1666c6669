"""Binary codec for engine messages and controller replies.

Every payload starts with ``u8 message type, u8 schema version``. All
fields are little-endian. Newer schema versions may append fields; the
decoder reads what it knows and ignores trailing bytes, including the tail
of each car record (records carry their own stride).
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Union

from ..core.errors import DecodeError
from ..core.types import BUTTONS, AXES, CarState, ControlOutput, Physics, Snapshot


SCHEMA_VERSION = 1


class MessageType(IntEnum):
    """Payload type tags."""

    ADD_BOT = 1
    REMOVE_BOT = 2
    GAME_TICK = 3
    CONTROLS = 4


HEADER = struct.Struct("<BB")  # type, version
ADD_BOT = struct.Struct("<HBB")  # index, team, name length
REMOVE_BOT = struct.Struct("<H")  # index
TICK_HEAD = struct.Struct("<IHfB")  # frame, index, game seconds, flags
PHYSICS = struct.Struct("<12f")  # location, rotation, velocity, angular velocity
CAR_TABLE = struct.Struct("<BH")  # car count, car record stride
CAR_RECORD = struct.Struct("<12fBfB")  # physics, team, boost, flags
CONTROLS = struct.Struct("<HI5fB")  # index, frame, axes, button bits

# Snapshot flag bits
ROUND_ACTIVE = 1 << 0
KICKOFF_PAUSE = 1 << 1
MATCH_ENDED = 1 << 2

# Car flag bits
WHEEL_CONTACT = 1 << 0
JUMPED = 1 << 1
DOUBLE_JUMPED = 1 << 2
DEMOLISHED = 1 << 3
SUPER_SONIC = 1 << 4


@dataclass(frozen=True)
class AddBot:
    """Request to start controlling a player index."""

    index: int
    team: int
    bot_type: str


@dataclass(frozen=True)
class RemoveBot:
    """Request to stop controlling a player index."""

    index: int


@dataclass(frozen=True)
class ControlsMessage:
    """Controller reply for one tick."""

    index: int
    frame_number: int
    output: ControlOutput


Message = Union[AddBot, RemoveBot, Snapshot, ControlsMessage]


def _header(message_type: MessageType) -> bytes:
    return HEADER.pack(int(message_type), SCHEMA_VERSION)


def _read_header(payload: bytes) -> MessageType:
    if len(payload) < HEADER.size:
        raise DecodeError(f"Payload too short for header: {len(payload)} bytes")
    type_id, version = HEADER.unpack_from(payload)
    if version == 0:
        raise DecodeError("Schema version 0 is invalid")
    try:
        return MessageType(type_id)
    except ValueError:
        raise DecodeError(f"Unknown message type {type_id}") from None


def _unpack(layout: struct.Struct, payload: bytes, offset: int, what: str) -> tuple:
    if len(payload) < offset + layout.size:
        raise DecodeError(
            f"Truncated {what}: need {offset + layout.size} bytes, got {len(payload)}"
        )
    return layout.unpack_from(payload, offset)


# ============================================================================
# DECODING
# ============================================================================

def decode_message(payload: bytes) -> Message:
    """Decode any payload.

    Args:
        payload: One frame payload (without length prefix)

    Returns:
        AddBot, RemoveBot, Snapshot or ControlsMessage

    Raises:
        DecodeError: If the payload is truncated or invalid
    """
    message_type = _read_header(payload)

    if message_type is MessageType.GAME_TICK:
        return _decode_snapshot_body(payload, HEADER.size)

    if message_type is MessageType.ADD_BOT:
        index, team, name_length = _unpack(ADD_BOT, payload, HEADER.size, "add-bot")
        start = HEADER.size + ADD_BOT.size
        raw_name = payload[start:start + name_length]
        if len(raw_name) < name_length:
            raise DecodeError("Truncated add-bot name")
        try:
            bot_type = raw_name.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Invalid bot type name: {e}") from e
        return AddBot(index=index, team=team, bot_type=bot_type)

    if message_type is MessageType.REMOVE_BOT:
        (index,) = _unpack(REMOVE_BOT, payload, HEADER.size, "remove-bot")
        return RemoveBot(index=index)

    return _decode_controls_body(payload, HEADER.size)


def decode_snapshot(payload: bytes) -> Snapshot:
    """Decode a GAME_TICK payload.

    Raises:
        DecodeError: If the payload is not a valid game tick
    """
    message_type = _read_header(payload)
    if message_type is not MessageType.GAME_TICK:
        raise DecodeError(f"Expected GAME_TICK, got {message_type.name}")
    return _decode_snapshot_body(payload, HEADER.size)


def decode_controls(payload: bytes) -> ControlsMessage:
    """Decode a CONTROLS payload (engine side).

    Raises:
        DecodeError: If the payload is not a valid controls message
    """
    message_type = _read_header(payload)
    if message_type is not MessageType.CONTROLS:
        raise DecodeError(f"Expected CONTROLS, got {message_type.name}")
    return _decode_controls_body(payload, HEADER.size)


def _decode_snapshot_body(payload: bytes, offset: int) -> Snapshot:
    frame_number, index, game_seconds, flags = _unpack(TICK_HEAD, payload, offset, "tick header")
    offset += TICK_HEAD.size

    ball = Physics.from_flat(_unpack(PHYSICS, payload, offset, "ball physics"))
    offset += PHYSICS.size

    car_count, stride = _unpack(CAR_TABLE, payload, offset, "car table")
    offset += CAR_TABLE.size
    if car_count and stride < CAR_RECORD.size:
        raise DecodeError(f"Car record stride {stride} below minimum {CAR_RECORD.size}")
    if len(payload) < offset + car_count * stride:
        raise DecodeError(
            f"Truncated car records: {car_count} x {stride} bytes from offset {offset}, "
            f"payload is {len(payload)} bytes"
        )

    cars = []
    for _ in range(car_count):
        values = CAR_RECORD.unpack_from(payload, offset)
        car_flags = values[14]
        cars.append(CarState(
            physics=Physics.from_flat(values[:12]),
            team=values[12],
            boost=values[13],
            has_wheel_contact=bool(car_flags & WHEEL_CONTACT),
            jumped=bool(car_flags & JUMPED),
            double_jumped=bool(car_flags & DOUBLE_JUMPED),
            is_demolished=bool(car_flags & DEMOLISHED),
            is_super_sonic=bool(car_flags & SUPER_SONIC),
        ))
        offset += stride

    return Snapshot(
        frame_number=frame_number,
        player_index=index,
        game_seconds=game_seconds,
        round_active=bool(flags & ROUND_ACTIVE),
        kickoff_pause=bool(flags & KICKOFF_PAUSE),
        match_ended=bool(flags & MATCH_ENDED),
        ball=ball,
        cars=tuple(cars),
    )


def _decode_controls_body(payload: bytes, offset: int) -> ControlsMessage:
    values = _unpack(CONTROLS, payload, offset, "controls")
    index, frame_number = values[0], values[1]
    axes = dict(zip(AXES, values[2:7]))
    bits = values[7]
    buttons = {name: bool(bits & (1 << i)) for i, name in enumerate(BUTTONS)}
    return ControlsMessage(
        index=index,
        frame_number=frame_number,
        output=ControlOutput(**axes, **buttons),
    )


# ============================================================================
# ENCODING
# ============================================================================

def encode_controls(index: int, frame_number: int, output: ControlOutput) -> bytes:
    """Encode a controller reply.

    Fixed layout; total for any ControlOutput.
    """
    bits = 0
    for i, name in enumerate(BUTTONS):
        if getattr(output, name):
            bits |= 1 << i
    return _header(MessageType.CONTROLS) + CONTROLS.pack(
        index & 0xFFFF,
        frame_number & 0xFFFFFFFF,
        *(getattr(output, name) for name in AXES),
        bits,
    )


def encode_add_bot(index: int, team: int, bot_type: str) -> bytes:
    """Encode an add-bot request (engine side)."""
    name = bot_type.encode("utf-8")
    if len(name) > 255:
        raise ValueError(f"Bot type name too long: {len(name)} bytes")
    return _header(MessageType.ADD_BOT) + ADD_BOT.pack(index, team, len(name)) + name


def encode_remove_bot(index: int) -> bytes:
    """Encode a remove-bot request (engine side)."""
    return _header(MessageType.REMOVE_BOT) + REMOVE_BOT.pack(index)


def encode_snapshot(snapshot: Snapshot, car_stride: int = CAR_RECORD.size) -> bytes:
    """Encode a game tick (engine side).

    Args:
        snapshot: Snapshot to encode
        car_stride: Bytes per car record; larger values zero-pad each record
            the way a newer schema with extra car fields would
    """
    if car_stride < CAR_RECORD.size:
        raise ValueError(f"car_stride must be >= {CAR_RECORD.size}")

    flags = (
        (ROUND_ACTIVE if snapshot.round_active else 0)
        | (KICKOFF_PAUSE if snapshot.kickoff_pause else 0)
        | (MATCH_ENDED if snapshot.match_ended else 0)
    )
    parts = [
        _header(MessageType.GAME_TICK),
        TICK_HEAD.pack(snapshot.frame_number, snapshot.player_index, snapshot.game_seconds, flags),
        PHYSICS.pack(*snapshot.ball.to_flat()),
        CAR_TABLE.pack(len(snapshot.cars), car_stride),
    ]
    padding = bytes(car_stride - CAR_RECORD.size)
    for car in snapshot.cars:
        car_flags = (
            (WHEEL_CONTACT if car.has_wheel_contact else 0)
            | (JUMPED if car.jumped else 0)
            | (DOUBLE_JUMPED if car.double_jumped else 0)
            | (DEMOLISHED if car.is_demolished else 0)
            | (SUPER_SONIC if car.is_super_sonic else 0)
        )
        parts.append(CAR_RECORD.pack(*car.physics.to_flat(), car.team, car.boost, car_flags))
        parts.append(padding)
    return b"".join(parts)
