# sensorlink

Building blocks for small networked sensor devices. The package has no
third-party dependencies.

- **`sensorlink.congpacket`**: a length-prefixed framing protocol. A frame
  starts with a type byte (`MsgType.TYPE_LEN1` to `TYPE_LEN4`) that gives
  the number of little-endian length bytes that follow. The payload comes
  after the length.
- **`sensorlink.mqtt_packets`**: pure functions that encode MQTT 3.1.1
  client packets. `PacketType` and `MqttState` hold the protocol
  constants.
- **`sensorlink.mqtt_client`**: `MqttClient` is a small synchronous MQTT
  client. It works over any object that follows the `Transport` interface.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Framing

`encode_frame(payload)` builds one frame:

- Payloads under 256 bytes get a one-byte length.
- Payloads under 65536 bytes get a two-byte length.
- Larger payloads get a four-byte length.

```python
from sensorlink.congpacket import encode_frame

frame = encode_frame(b"hello")
# b"\x01\x05hello"
```

`CongPacket(stream, buffer_size)` reads frames step by step.

The stream must provide three methods:

- `available()`, which returns the number of bytes waiting.
- `read(size)`, which returns bytes.
- `write(data)`.

How to read frames:

- Call `run()` whenever data may have arrived.
- When `ready` is true, the frame body is in `payload`.
- Call `clear()` before you read the next frame.

Errors:

- `state` holds a `ReadingState`. A value of 250 or higher is an error, and `failed` then returns true.
- `UNKNOWN_TYPE` means the type byte was not valid.
- `OVER_SIZE` means the length was zero or larger than `buffer_size`.

Other methods:

- `send(payload)` frames the payload and writes it to the stream.
- `drop()` discards every byte waiting on the stream.

## MQTT packets

```python
from sensorlink.mqtt_packets import build_publish, build_subscribe

build_publish("topic", b"payload", False)
# b"\x30\x0e\x00\x05topicpayload"

build_subscribe(2, "topic", 0)
# b"\x82\x0a\x00\x02\x00\x05topic\x00"
```

The module also provides these functions:

- `build_connect` builds a CONNECT packet. It can carry a user, a password, a will, a clean-session flag and a keep-alive. The password is sent only when a user is given.
- `build_unsubscribe` builds an UNSUBSCRIBE packet.
- `encode_remaining_length` encodes a length as an MQTT variable-length integer.
- `encode_string` encodes a length-prefixed string.
- `fixed_header` builds the fixed header of a packet.

Values out of range raise `ValueError`, for example a subscription QoS above 1.

## MQTT client

```python
from sensorlink.mqtt_client import MqttClient

def on_message(topic, payload):
    print(topic, payload)

client = MqttClient(transport, "localhost", 1883, on_message)
if client.connect("client_test1"):
    client.subscribe("sensors/#")
    client.publish("sensors/temp", b"21.5")
    while client.loop():
        ...
```

### The transport

`transport` is your own object. It must provide these methods:

- `connect(host, port)`
- `write(data)`, which returns the number of bytes written.
- `available()`
- `read()`, which returns a single byte as an int.
- `flush()`
- `stop()`
- `connected()`

### The server address

The host can be:

- a host name,
- a four-byte sequence,
- an `ipaddress.IPv4Address`.

You can also change it later with `set_server(host, port)`.

### Running the client

Call `loop()` often. Each call does the following:

- It sends keep-alive pings.
- It handles one incoming packet, if one is waiting.
- It acknowledges QoS 1 publishes.
- It passes each incoming message to the callback as `(topic, payload)`.

`loop()` returns false once the connection is gone. The `state` attribute
then holds the reason as an `MqttState`. After a refused `connect`, it
holds the broker's return code instead.

### Settings

You can change these attributes:

- `keep_alive`, in seconds. The default is 15.
- `socket_timeout`, in seconds. The default is 15.
- `buffer_size`, in bytes. The default is 256. Accepted values are 1 to 65535.

### Failures

These calls return false when the client is not connected:

- `publish`
- `subscribe`
- `unsubscribe`

These calls raise `ValueError`:

- `publish`, `subscribe` or `unsubscribe` with a topic and payload that do not fit `buffer_size`.
- `subscribe` with a QoS above 1.

### Larger messages

Incoming messages larger than `buffer_size` are dropped. If you pass a
`stream` to the client, each incoming publish payload is also written to
the stream byte by byte. That way you can receive a large payload whole.

To send a large payload in pieces:

1. Call `begin_publish(topic, length, retained)`.
2. Call `write(data)` one or more times.
3. Call `end_publish()`.

## What the package does not do

- It opens no sockets itself. You supply the transport.
- It has no TLS.
- It has no command-line program.
- The MQTT client publishes only at QoS 0.
- The MQTT client subscribes only at QoS 0 or 1.
- The MQTT client keeps no messages across reconnects.