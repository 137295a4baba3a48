import struct

# fixed header packet types (upper nibble)
CONNECT = 1
CONNACK = 2
PUBLISH = 3
PUBACK = 4
SUBSCRIBE = 8
SUBACK = 9
UNSUBSCRIBE = 10
UNSUBACK = 11
PINGREQ = 12
PINGRESP = 13
DISCONNECT = 14

PACKET_NAMES = {
    CONNECT: "CONNECT",
    CONNACK: "CONNACK",
    PUBLISH: "PUBLISH",
    PUBACK: "PUBACK",
    SUBSCRIBE: "SUBSCRIBE",
    SUBACK: "SUBACK",
    UNSUBSCRIBE: "UNSUBSCRIBE",
    UNSUBACK: "UNSUBACK",
    PINGREQ: "PINGREQ",
    PINGRESP: "PINGRESP",
    DISCONNECT: "DISCONNECT",
}

CONNACK_CODES = {
    0: "Connection accepted",
    1: "Connection refused: unacceptable protocol version",
    2: "Connection refused: identifier rejected",
    3: "Connection refused: server unavailable",
    4: "Connection refused: bad username or password",
    5: "Connection refused: not authorized",
}

SUBACK_FAILURE = 0x80
MAX_PACKET_ID = 65535


def decode_remaining_length(buf: bytearray, start_index=1):
    multiplier = 1
    value = 0
    i = start_index
    while True:
        if i >= len(buf):
            return None, None
        encoded_byte = buf[i]
        value += (encoded_byte & 127) * multiplier
        multiplier *= 128
        i += 1
        if (encoded_byte & 128) == 0:
            break
        if multiplier > 128 * 128 * 128:
            raise ValueError("Malformed Remaining Length")
    return value, i


def encode_remaining_length(length: int) -> bytes:
    if length < 0 or length > 268_435_455:
        raise ValueError(f"Remaining Length out of range: {length}")
    out = bytearray()
    while True:
        digit = length % 128
        length //= 128
        if length > 0:
            digit |= 0x80
        out.append(digit)
        if length == 0:
            break
    return bytes(out)


def read_u16(buf: bytes, i: int):
    if i + 2 > len(buf):
        raise ValueError("Truncated packet: expected 2-byte integer")
    return (buf[i] << 8) | buf[i + 1], i + 2


def read_utf8(buf: bytes, i: int):
    ln, i = read_u16(buf, i)
    if i + ln > len(buf):
        raise ValueError("Truncated packet: string runs past end of packet")
    s = buf[i:i + ln].decode("utf-8")
    return s, i + ln


def encode_utf8(value) -> bytes:
    raw = value.encode("utf-8") if isinstance(value, str) else bytes(value)
    if len(raw) > 0xFFFF:
        raise ValueError("String too long for MQTT encoding")
    return struct.pack("!H", len(raw)) + raw


def split_packets(buf: bytearray):
    """Pop every complete packet off the front of ``buf``.

    Returns a list of ``(first_byte, body)`` tuples; a trailing partial packet
    stays in the buffer for the next read.
    """
    packets = []
    while len(buf) >= 2:
        remaining_length, idx = decode_remaining_length(buf, 1)
        if remaining_length is None:
            break
        total_len = idx + remaining_length
        if len(buf) < total_len:
            break
        packets.append((buf[0], bytes(buf[idx:total_len])))
        del buf[:total_len]
    return packets


def _fixed(first_byte: int, body: bytes) -> bytes:
    return bytes([first_byte]) + encode_remaining_length(len(body)) + body


# ---------------- outbound (client -> broker) ----------------

def build_connect(client_id: str, keepalive: int = 60, username=None, password=None,
                  clean_session: bool = True):
    var_hdr = encode_utf8("MQTT") + bytes([4])
    flags = 0
    if clean_session:
        flags |= 0x02
    if username:
        flags |= 0x80
        if password:
            flags |= 0x40
    var_hdr += bytes([flags]) + struct.pack("!H", keepalive)

    payload = encode_utf8(client_id)
    if username:
        payload += encode_utf8(username)
        if password:
            payload += encode_utf8(password)
    return _fixed(CONNECT << 4, var_hdr + payload)


def publish_flags(qos: int = 0, retain: bool = False, dup: bool = False) -> int:
    flags = (qos & 0x03) << 1
    if retain:
        flags |= 0x01
    if dup:
        flags |= 0x08
    return flags


def build_publish(topic: str, payload: bytes, qos: int = 0, retain: bool = False,
                  packet_id: int = 0, dup: bool = False):
    var_hdr = encode_utf8(topic)
    if qos > 0:
        if not 0 < packet_id <= MAX_PACKET_ID:
            raise ValueError("QoS > 0 PUBLISH needs a packet id")
        var_hdr += struct.pack("!H", packet_id)
    return _fixed((PUBLISH << 4) | publish_flags(qos, retain, dup), var_hdr + bytes(payload))


def build_puback(packet_id: int):
    return bytes([PUBACK << 4, 0x02]) + struct.pack("!H", packet_id)


def build_subscribe(packet_id: int, topics):
    """``topics`` is an iterable of ``(filter, qos)`` pairs."""
    body = bytearray(struct.pack("!H", packet_id))
    for topic_filter, qos in topics:
        body += encode_utf8(topic_filter)
        body.append(qos & 0x03)
    return _fixed((SUBSCRIBE << 4) | 0x02, bytes(body))


def build_unsubscribe(packet_id: int, topics):
    body = bytearray(struct.pack("!H", packet_id))
    for topic_filter in topics:
        body += encode_utf8(topic_filter)
    return _fixed((UNSUBSCRIBE << 4) | 0x02, bytes(body))


def build_pingreq():
    return bytes([PINGREQ << 4, 0x00])


def build_disconnect():
    return bytes([DISCONNECT << 4, 0x00])


# ---------------- inbound (broker -> client) ----------------

def parse_connack(body: bytes):
    if len(body) != 2:
        raise ValueError(f"Malformed CONNACK: expected 2 bytes, got {len(body)}")
    session_present = bool(body[0] & 0x01)
    return session_present, body[1]


def parse_publish(first_byte: int, body: bytes):
    """Return ``(topic, payload, qos, retain, dup, packet_id)``."""
    qos = (first_byte >> 1) & 0x03
    if qos == 3:
        raise ValueError("Malformed PUBLISH: QoS 3")
    retain = bool(first_byte & 0x01)
    dup = bool(first_byte & 0x08)

    topic, i = read_utf8(body, 0)
    packet_id = None
    if qos > 0:
        packet_id, i = read_u16(body, i)
    return topic, body[i:], qos, retain, dup, packet_id


def parse_packet_id(body: bytes) -> int:
    packet_id, _ = read_u16(body, 0)
    return packet_id


def parse_suback(body: bytes):
    packet_id, i = read_u16(body, 0)
    return packet_id, list(body[i:])
