"""Length-prefixed packet framing, MQTT 3.1.1 packet encoding and a small MQTT client."""

__version__ = "0.1.0"
__all__ = ["congpacket", "mqtt_packets", "mqtt_client"]