"""A small MQTT 3.1.1 client driven by repeated calls to :meth:`MqttClient.loop`."""

from __future__ import annotations

import ipaddress
import time
from typing import Callable, Optional, Protocol, Sequence, Union

from sensorlink.mqtt_packets import (
    KEEPALIVE,
    MAX_HEADER_SIZE,
    MAX_PACKET_SIZE,
    QOS1,
    SOCKET_TIMEOUT,
    MqttState,
    PacketType,
    build_connect,
    build_publish,
    build_subscribe,
    build_unsubscribe,
    encode_string,
    fixed_header,
)

DEFAULT_PORT = 1883

MessageCallback = Callable[[str, bytes], None]
HostLike = Union[str, bytes, Sequence[int], ipaddress.IPv4Address]


class Transport(Protocol):
    """The byte connection the client talks through."""

    def connect(self, host: str, port: int) -> bool: ...

    def write(self, data: bytes) -> int: ...

    def available(self) -> int: ...

    def read(self) -> int: ...

    def flush(self) -> None: ...

    def stop(self) -> None: ...

    def connected(self) -> bool: ...


class _ByteSink(Protocol):
    def write(self, data: bytes) -> int: ...


def _host_name(host: HostLike) -> str:
    if isinstance(host, str):
        return host
    if isinstance(host, ipaddress.IPv4Address):
        return str(host)
    return str(ipaddress.IPv4Address(bytes(host)))


def _as_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


def _body_length(packet: bytes) -> int:
    index = 1
    while packet[index] & 0x80:
        index += 1
    return len(packet) - (index + 1)


class MqttClient:
    """MQTT client keeping one session over a :class:`Transport`.

    Incoming PUBLISH messages are passed to ``callback(topic, payload)``.
    When ``stream`` is given, the payload of every incoming PUBLISH is also
    written to it byte by byte, so messages larger than the buffer can be
    received whole.
    """

    def __init__(
        self,
        transport: Transport,
        host: Optional[HostLike] = None,
        port: int = DEFAULT_PORT,
        callback: Optional[MessageCallback] = None,
        stream: Optional[_ByteSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.host: Optional[str] = None
        self.port = port
        if host is not None:
            self.set_server(host, port)
        self.callback = callback
        self.stream = stream
        self._clock = clock
        self._state: int = MqttState.DISCONNECTED
        self._buffer_size = MAX_PACKET_SIZE
        self.keep_alive = KEEPALIVE
        self.socket_timeout = SOCKET_TIMEOUT
        self._next_msg_id = 1
        self._last_in = 0.0
        self._last_out = 0.0
        self._ping_outstanding = False

    @property
    def state(self) -> Union[MqttState, int]:
        """Current connection state, or the CONNACK code of a refused connect."""
        try:
            return MqttState(self._state)
        except ValueError:
            return self._state

    @property
    def buffer_size(self) -> int:
        """Largest packet the client builds or keeps in memory, in bytes."""
        return self._buffer_size

    @buffer_size.setter
    def buffer_size(self, size: int) -> None:
        if not 1 <= size <= 0xFFFF:
            raise ValueError(f"buffer size {size} out of range 1..65535")
        self._buffer_size = size

    def set_server(self, host: HostLike, port: int) -> "MqttClient":
        """Set the broker address: a host name or a four-byte IPv4 address."""
        self.host = _host_name(host)
        self.port = port
        return self

    def _send(self, packet: bytes) -> bool:
        written = self.transport.write(packet)
        self._last_out = self._clock()
        return written == len(packet)

    def connect(
        self,
        client_id: Union[str, bytes],
        user: Optional[Union[str, bytes]] = None,
        password: Optional[Union[str, bytes]] = None,
        will_topic: Optional[Union[str, bytes]] = None,
        will_qos: int = 0,
        will_retain: bool = False,
        will_message: Optional[Union[str, bytes]] = None,
        clean_session: bool = True,
    ) -> bool:
        """Open the session; return True once the broker has accepted it."""
        if self.connected():
            return True

        if self.transport.connected():
            opened = True
        else:
            if self.host is None:
                raise ValueError("no server address set")
            opened = bool(self.transport.connect(self.host, self.port))
        if not opened:
            self._state = MqttState.CONNECT_FAILED
            return False

        self._next_msg_id = 1
        packet = build_connect(
            client_id,
            user=user,
            password=password,
            will_topic=will_topic,
            will_qos=will_qos,
            will_retain=will_retain,
            will_message=will_message,
            clean_session=clean_session,
            keep_alive=self.keep_alive,
        )
        if MAX_HEADER_SIZE + _body_length(packet) > self._buffer_size:
            self.transport.stop()
            raise ValueError("CONNECT packet does not fit the buffer")

        self._send(packet)
        self._last_in = self._last_out = self._clock()

        while not self.transport.available():
            if self._clock() - self._last_in >= self.socket_timeout:
                self._state = MqttState.CONNECTION_TIMEOUT
                self.transport.stop()
                return False

        received = self._read_packet()
        if received is not None and len(received[0]) == 4:
            code = received[0][3]
            if code == 0:
                self._last_in = self._clock()
                self._ping_outstanding = False
                self._state = MqttState.CONNECTED
                return True
            self._state = code
        self.transport.stop()
        return False

    def disconnect(self) -> None:
        """Send DISCONNECT and close the transport."""
        self.transport.write(bytes([PacketType.DISCONNECT, 0]))
        self._state = MqttState.DISCONNECTED
        self.transport.flush()
        self.transport.stop()
        self._last_in = self._last_out = self._clock()

    def publish(
        self,
        topic: Union[str, bytes],
        payload: Union[str, bytes] = b"",
        retained: bool = False,
    ) -> bool:
        """Publish at QoS 0; return False when not connected or not all sent."""
        if not self.connected():
            return False
        topic_bytes = _as_bytes(topic)
        data = _as_bytes(payload)
        if MAX_HEADER_SIZE + 2 + len(topic_bytes) + len(data) > self._buffer_size:
            raise ValueError("topic and payload do not fit the buffer")
        return self._send(build_publish(topic_bytes, data, retained))

    def begin_publish(
        self, topic: Union[str, bytes], length: int, retained: bool = False
    ) -> bool:
        """Send the header of a PUBLISH whose ``length``-byte payload follows via :meth:`write`."""
        if not self.connected():
            return False
        variable = encode_string(topic)
        header = PacketType.PUBLISH | (1 if retained else 0)
        packet = fixed_header(header, length + len(variable)) + variable
        return self._send(packet)

    def write(self, data: Union[int, bytes]) -> int:
        """Write raw payload bytes after :meth:`begin_publish`; return the count written."""
        chunk = bytes([data]) if isinstance(data, int) else bytes(data)
        self._last_out = self._clock()
        return self.transport.write(chunk)

    def end_publish(self) -> bool:
        """Finish a publish started with :meth:`begin_publish`."""
        return True

    def _take_msg_id(self) -> int:
        self._next_msg_id = (self._next_msg_id + 1) & 0xFFFF or 1
        return self._next_msg_id

    def subscribe(self, topic: Union[str, bytes], qos: int = 0) -> bool:
        """Subscribe to ``topic`` at QoS 0 or 1."""
        topic_bytes = _as_bytes(topic)
        if not 0 <= qos <= 1:
            raise ValueError(f"invalid subscription QoS {qos}")
        if self._buffer_size < 9 + len(topic_bytes):
            raise ValueError("topic does not fit the buffer")
        if not self.connected():
            return False
        return self._send(build_subscribe(self._take_msg_id(), topic_bytes, qos))

    def unsubscribe(self, topic: Union[str, bytes]) -> bool:
        """Cancel the subscription to ``topic``."""
        topic_bytes = _as_bytes(topic)
        if self._buffer_size < 9 + len(topic_bytes):
            raise ValueError("topic does not fit the buffer")
        if not self.connected():
            return False
        return self._send(build_unsubscribe(self._take_msg_id(), topic_bytes))

    def _read_byte(self) -> Optional[int]:
        started = self._clock()
        while not self.transport.available():
            if self._clock() - started >= self.socket_timeout:
                return None
        return self.transport.read()

    def _read_packet(self) -> Optional[tuple[bytes, int]]:
        """Read one packet; return its kept bytes and the remaining-length size."""
        first = self._read_byte()
        if first is None:
            return None
        buf = bytearray([first])
        is_publish = (first & 0xF0) == PacketType.PUBLISH

        multiplier = 1
        length = 0
        while True:
            if len(buf) == 5:
                self._state = MqttState.DISCONNECTED
                self.transport.stop()
                return None
            digit = self._read_byte()
            if digit is None:
                return None
            buf.append(digit)
            length += (digit & 0x7F) * multiplier
            multiplier <<= 7
            if not digit & 0x80:
                break
        llen = len(buf) - 1

        skip = 0
        start = 0
        if is_publish:
            for _ in range(2):
                byte = self._read_byte()
                if byte is None:
                    return None
                buf.append(byte)
            skip = (buf[llen + 1] << 8) + buf[llen + 2]
            start = 2
            if buf[0] & QOS1:
                skip += 2

        position = len(buf)
        for _ in range(start, length):
            digit = self._read_byte()
            if digit is None:
                return None
            if self.stream is not None and is_publish and position - llen - 2 > skip:
                self.stream.write(bytes([digit]))
            if len(buf) < self._buffer_size:
                buf.append(digit)
            position += 1

        if self.stream is None and position > self._buffer_size:
            return None
        return bytes(buf), llen

    def _dispatch_publish(self, packet: bytes, llen: int, now: float) -> None:
        if self.callback is None:
            return
        topic_len = (packet[llen + 1] << 8) + packet[llen + 2]
        topic_start = llen + 3
        topic = packet[topic_start:topic_start + topic_len].decode("utf-8", errors="replace")
        rest = topic_start + topic_len
        if (packet[0] & 0x06) == QOS1:
            msg_id = (packet[rest] << 8) + packet[rest + 1]
            self.callback(topic, packet[rest + 2:])
            self.transport.write(bytes([PacketType.PUBACK, 2]) + msg_id.to_bytes(2, "big"))
            self._last_out = now
        else:
            self.callback(topic, packet[rest:])

    def loop(self) -> bool:
        """Keep the session alive and handle one incoming packet if any.

        Returns False once the connection is gone.
        """
        if not self.connected():
            return False
        now = self._clock()
        if now - self._last_in > self.keep_alive or now - self._last_out > self.keep_alive:
            if self._ping_outstanding:
                self._state = MqttState.CONNECTION_TIMEOUT
                self.transport.stop()
                return False
            self.transport.write(bytes([PacketType.PINGREQ, 0]))
            self._last_out = now
            self._last_in = now
            self._ping_outstanding = True

        if self.transport.available():
            received = self._read_packet()
            if received is not None and received[0]:
                packet, llen = received
                self._last_in = now
                kind = packet[0] & 0xF0
                if kind == PacketType.PUBLISH:
                    self._dispatch_publish(packet, llen, now)
                elif kind == PacketType.PINGREQ:
                    self.transport.write(bytes([PacketType.PINGRESP, 0]))
                elif kind == PacketType.PINGRESP:
                    self._ping_outstanding = False
            elif not self.connected():
                return False
        return True

    def connected(self) -> bool:
        """True while the transport is up and the session is established."""
        if self.transport.connected():
            return self._state == MqttState.CONNECTED
        if self._state == MqttState.CONNECTED:
            self._state = MqttState.CONNECTION_LOST
            self.transport.flush()
            self.transport.stop()
        return False