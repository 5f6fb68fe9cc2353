"""Encoding of MQTT 3.1.1 control packets sent by a client."""

from __future__ import annotations

from enum import IntEnum

PROTOCOL_NAME = b"MQTT"
PROTOCOL_LEVEL = 4

MAX_PACKET_SIZE = 256
KEEPALIVE = 15
SOCKET_TIMEOUT = 15
MAX_HEADER_SIZE = 5
MAX_REMAINING_LENGTH = 268_435_455

QOS0 = 0 << 1
QOS1 = 1 << 1
QOS2 = 2 << 1


class PacketType(IntEnum):
    """Control packet type, already shifted into the high nibble."""

    CONNECT = 1 << 4
    CONNACK = 2 << 4
    PUBLISH = 3 << 4
    PUBACK = 4 << 4
    PUBREC = 5 << 4
    PUBREL = 6 << 4
    PUBCOMP = 7 << 4
    SUBSCRIBE = 8 << 4
    SUBACK = 9 << 4
    UNSUBSCRIBE = 10 << 4
    UNSUBACK = 11 << 4
    PINGREQ = 12 << 4
    PINGRESP = 13 << 4
    DISCONNECT = 14 << 4
    RESERVED = 15 << 4


class MqttState(IntEnum):
    """Client connection state; positive values are CONNACK return codes."""

    CONNECTION_TIMEOUT = -4
    CONNECTION_LOST = -3
    CONNECT_FAILED = -2
    DISCONNECTED = -1
    CONNECTED = 0
    CONNECT_BAD_PROTOCOL = 1
    CONNECT_BAD_CLIENT_ID = 2
    CONNECT_UNAVAILABLE = 3
    CONNECT_BAD_CREDENTIALS = 4
    CONNECT_UNAUTHORIZED = 5


def _as_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


def encode_remaining_length(length: int) -> bytes:
    """Encode ``length`` as an MQTT variable-length integer."""
    if not 0 <= length <= MAX_REMAINING_LENGTH:
        raise ValueError(f"remaining length {length} out of range")
    out = bytearray()
    while True:
        digit = length & 0x7F
        length >>= 7
        if length:
            digit |= 0x80
        out.append(digit)
        if not length:
            return bytes(out)


def encode_string(text: str | bytes) -> bytes:
    """Encode ``text`` as a two-byte big-endian length followed by its bytes."""
    data = _as_bytes(text)
    if len(data) > 0xFFFF:
        raise ValueError("string longer than 65535 bytes")
    return len(data).to_bytes(2, "big") + data


def fixed_header(header: int, length: int) -> bytes:
    """Return the header byte followed by the encoded remaining length."""
    return bytes([header]) + encode_remaining_length(length)


def _packet(header: int, body: bytes) -> bytes:
    return fixed_header(header, len(body)) + body


def build_connect(
    client_id: str | bytes,
    user: str | bytes | None = None,
    password: str | bytes | None = None,
    will_topic: str | bytes | None = None,
    will_qos: int = 0,
    will_retain: bool = False,
    will_message: str | bytes | None = None,
    clean_session: bool = True,
    keep_alive: int = KEEPALIVE,
) -> bytes:
    """Build a CONNECT packet. A password is only sent along with a user."""
    if not 0 <= will_qos <= 2:
        raise ValueError(f"invalid will QoS {will_qos}")
    if not 0 <= keep_alive <= 0xFFFF:
        raise ValueError(f"invalid keep-alive {keep_alive}")

    flags = 0
    if will_topic:
        flags = 0x04 | (will_qos << 3) | (int(bool(will_retain)) << 5)
    if clean_session:
        flags |= 0x02
    if user is not None:
        flags |= 0x80
        if password is not None:
            flags |= 0x40

    body = bytearray(encode_string(PROTOCOL_NAME))
    body.append(PROTOCOL_LEVEL)
    body.append(flags)
    body += keep_alive.to_bytes(2, "big")
    body += encode_string(client_id)
    if will_topic:
        body += encode_string(will_topic)
        body += encode_string(will_message if will_message is not None else b"")
    if user is not None:
        body += encode_string(user)
        if password is not None:
            body += encode_string(password)
    return _packet(PacketType.CONNECT, bytes(body))


def build_publish(topic: str | bytes, payload: str | bytes, retained: bool = False) -> bytes:
    """Build a QoS 0 PUBLISH packet."""
    header = PacketType.PUBLISH | (1 if retained else 0)
    return _packet(header, encode_string(topic) + _as_bytes(payload))


def _check_msg_id(msg_id: int) -> None:
    if not 0 <= msg_id <= 0xFFFF:
        raise ValueError(f"invalid message id {msg_id}")


def build_subscribe(msg_id: int, topic: str | bytes, qos: int = 0) -> bytes:
    """Build a SUBSCRIBE packet for one topic; only QoS 0 and 1 are allowed."""
    if not 0 <= qos <= 1:
        raise ValueError(f"invalid subscription QoS {qos}")
    _check_msg_id(msg_id)
    body = msg_id.to_bytes(2, "big") + encode_string(topic) + bytes([qos])
    return _packet(PacketType.SUBSCRIBE | QOS1, body)


def build_unsubscribe(msg_id: int, topic: str | bytes) -> bytes:
    """Build an UNSUBSCRIBE packet for one topic."""
    _check_msg_id(msg_id)
    body = msg_id.to_bytes(2, "big") + encode_string(topic)
    return _packet(PacketType.UNSUBSCRIBE | QOS1, body)