"""
Kafka Wire Protocol Codec (broker subset)

Pure-Python encoding and decoding for the slice of the Kafka binary wire
protocol this broker speaks: the fixed request header, ApiVersions and
DescribeTopicPartitions responses, and the minimal error frame sent for
api keys the broker does not know.

Wire conventions:
  - Every frame starts with a 4-byte big-endian length counting only the
    bytes that follow it.
  - Fixed-width integers are big-endian.
  - Compact strings and arrays carry a single length byte holding
    count + 1; a length byte of 0 means null. Counts above 254 cannot be
    expressed and are rejected rather than varint-encoded.
  - Tag buffers are a single zero byte.

The server side uses RequestParser and ResponseBuilder; RequestBuilder and
ResponseParser are the matching client side.
"""

import struct
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, Tuple, Callable, Iterable, Sequence, Union

from eventor.errors import MalformedField

# =========================================================================
#  Constants
# =========================================================================

LENGTH_PREFIX_SIZE = 4
HEADER_SIZE = 8  # api_key(2) + api_version(2) + correlation_id(4)
MAX_COMPACT_LENGTH = 254
TOPIC_ID_SIZE = 16
NULL_TOPIC_ID = bytes(TOPIC_ID_SIZE)
TAG_BUFFER = b'\x00'

_UINT_FORMATS = {1: '>B', 2: '>H', 4: '>I'}


# =========================================================================
#  Encoding Primitives
# =========================================================================

def encode_uint(value: int, width: int) -> bytes:
    """Unsigned big-endian integer of 1, 2 or 4 bytes."""
    fmt = _UINT_FORMATS.get(width)
    if fmt is None:
        raise ValueError(f"Unsupported integer width {width}; expected 1, 2 or 4")
    return struct.pack(fmt, value)

def encode_uint8(v: int) -> bytes:
    return encode_uint(v, 1)

def encode_uint16(v: int) -> bytes:
    return encode_uint(v, 2)

def encode_uint32(v: int) -> bytes:
    return encode_uint(v, 4)

def encode_int16(v: int) -> bytes:
    return struct.pack('>h', v)

def encode_int32(v: int) -> bytes:
    return struct.pack('>i', v)

def encode_bool(v: bool) -> bytes:
    return b'\x01' if v else b'\x00'

def encode_tag_buffer() -> bytes:
    return TAG_BUFFER

def _check_compact_length(length: int, what: str) -> None:
    if length > MAX_COMPACT_LENGTH:
        raise ValueError(
            f"Compact {what} length {length} exceeds {MAX_COMPACT_LENGTH}; "
            f"single-byte lengths only"
        )

def encode_compact_string(s: Optional[Union[str, bytes]]) -> bytes:
    if s is None:
        return b'\x00'
    b = s.encode('utf-8') if isinstance(s, str) else s
    _check_compact_length(len(b), "string")
    return encode_uint8(len(b) + 1) + b

def encode_compact_array(items: Optional[Sequence[Any]],
                         encode_item: Callable[[Any], bytes]) -> bytes:
    if items is None:
        return b'\x00'
    _check_compact_length(len(items), "array")
    return encode_uint8(len(items) + 1) + b''.join(encode_item(i) for i in items)

def frame(body: bytes) -> bytes:
    """Prefix a message with its 4-byte length."""
    return encode_uint32(len(body)) + body


# =========================================================================
#  Decoding Primitives
# =========================================================================

def _need(data: bytes, off: int, size: int, field: str) -> None:
    available = max(len(data) - off, 0)
    if available < size:
        raise MalformedField(field, size, available)

def decode_uint8(data: bytes, off: int, field: str = "uint8") -> Tuple[int, int]:
    _need(data, off, 1, field)
    return struct.unpack_from('>B', data, off)[0], off + 1

def decode_uint16(data: bytes, off: int, field: str = "uint16") -> Tuple[int, int]:
    _need(data, off, 2, field)
    return struct.unpack_from('>H', data, off)[0], off + 2

def decode_uint32(data: bytes, off: int, field: str = "uint32") -> Tuple[int, int]:
    _need(data, off, 4, field)
    return struct.unpack_from('>I', data, off)[0], off + 4

def decode_int16(data: bytes, off: int, field: str = "int16") -> Tuple[int, int]:
    _need(data, off, 2, field)
    return struct.unpack_from('>h', data, off)[0], off + 2

def decode_int32(data: bytes, off: int, field: str = "int32") -> Tuple[int, int]:
    _need(data, off, 4, field)
    return struct.unpack_from('>i', data, off)[0], off + 4

def decode_compact_string(data: bytes, off: int,
                          field: str = "compact_string") -> Tuple[Optional[bytes], int]:
    length, off = decode_uint8(data, off, field)
    if length == 0:
        return None, off
    _need(data, off, length - 1, field)
    return bytes(data[off:off + length - 1]), off + length - 1

def decode_compact_array_length(data: bytes, off: int,
                                field: str = "compact_array") -> Tuple[Optional[int], int]:
    length, off = decode_uint8(data, off, field)
    if length == 0:
        return None, off
    return length - 1, off


# =========================================================================
#  Error Codes and API Keys
# =========================================================================

ERROR_NONE = 0
ERROR_UNKNOWN_TOPIC_OR_PARTITION = 3
ERROR_UNSUPPORTED_VERSION = 35

KAFKA_ERRORS = {
    -1: "UNKNOWN_SERVER_ERROR", 0: "NONE", 2: "CORRUPT_MESSAGE",
    3: "UNKNOWN_TOPIC_OR_PARTITION", 35: "UNSUPPORTED_VERSION",
    42: "INVALID_REQUEST",
}

def error_name(code: int) -> str:
    return KAFKA_ERRORS.get(code, f"UNKNOWN_ERROR_{code}")


API_API_VERSIONS = 18
API_DESCRIBE_TOPIC_PARTITIONS = 75

API_NAMES = {
    18: "ApiVersions",
    75: "DescribeTopicPartitions",
}

def api_name(key: int) -> str:
    return API_NAMES.get(key, f"API_{key}")


# =========================================================================
#  Message Types
# =========================================================================

@dataclass(frozen=True)
class RequestHeader:
    """Fixed request prefix plus the unparsed request-specific body."""

    api_key: int
    api_version: int
    correlation_id: int
    body: bytes = b''

    @property
    def api_name(self) -> str:
        return api_name(self.api_key)


@dataclass(frozen=True)
class ApiDescriptor:
    api_key: int
    min_version: int
    max_version: int

    def encode(self) -> bytes:
        return (encode_uint16(self.api_key) + encode_uint16(self.min_version)
                + encode_uint16(self.max_version) + encode_tag_buffer())


@dataclass(frozen=True)
class TopicDescriptor:
    """One topic entry of a DescribeTopicPartitions response.

    `partitions` holds already-encoded partition entries; this broker never
    has any, so it is empty unless a topic lookup supplies them.
    """

    name: Optional[bytes]
    error_code: int = ERROR_UNKNOWN_TOPIC_OR_PARTITION
    topic_id: bytes = NULL_TOPIC_ID
    is_internal: bool = False
    partitions: Tuple[bytes, ...] = ()
    authorized_operations: int = 0

    def encode(self) -> bytes:
        if len(self.topic_id) != TOPIC_ID_SIZE:
            raise ValueError(f"topic_id must be {TOPIC_ID_SIZE} bytes, got {len(self.topic_id)}")
        out = encode_int16(self.error_code)
        out += encode_compact_string(self.name)
        out += self.topic_id
        out += encode_bool(self.is_internal)
        out += encode_compact_array(self.partitions, lambda p: p)
        out += encode_int32(self.authorized_operations)
        out += encode_tag_buffer()
        return out


# =========================================================================
#  Request Parsing (server side)
# =========================================================================

class RequestParser:
    """Decodes request frames received by the broker."""

    @staticmethod
    def parse_header(data: bytes) -> RequestHeader:
        """Split a frame body into its fixed header and payload."""
        if len(data) < HEADER_SIZE:
            raise MalformedField("request_header", HEADER_SIZE, len(data))
        off = 0
        api_key, off = decode_uint16(data, off, "api_key")
        api_version, off = decode_uint16(data, off, "api_version")
        correlation_id, off = decode_uint32(data, off, "correlation_id")
        return RequestHeader(api_key, api_version, correlation_id, bytes(data[off:]))

    @staticmethod
    def parse_describe_topic_partitions(payload: bytes) -> bytes:
        """Return the first requested topic name.

        Only the first topic is honoured. A payload too short to hold the
        array count or the name yields an empty name instead of an error.
        """
        try:
            _, off = decode_compact_array_length(payload, 0, "topics")
            name, off = decode_compact_string(payload, off, "topic_name")
        except MalformedField:
            return b''
        return name or b''


# =========================================================================
#  Response Building (server side)
# =========================================================================

class ResponseBuilder:
    """Encodes complete, length-prefixed broker responses."""

    @staticmethod
    def api_versions(correlation_id: int, error_code: int,
                     apis: Iterable[ApiDescriptor],
                     throttle_time_ms: int = 0) -> bytes:
        body = encode_uint32(correlation_id)
        body += encode_int16(error_code)
        body += encode_compact_array(list(apis), ApiDescriptor.encode)
        body += encode_int32(throttle_time_ms)
        body += encode_tag_buffer()
        return frame(body)

    @staticmethod
    def describe_topic_partitions(correlation_id: int,
                                  topics: Sequence[TopicDescriptor],
                                  throttle_time_ms: int = 0) -> bytes:
        # response header v1 carries its own tag buffer
        body = encode_uint32(correlation_id) + encode_tag_buffer()
        body += encode_int32(throttle_time_ms)
        body += encode_compact_array(topics, TopicDescriptor.encode)
        body += b'\x00'  # next_cursor = null
        body += encode_tag_buffer()
        return frame(body)

    @staticmethod
    def unsupported_api_key(correlation_id: int) -> bytes:
        body = encode_uint32(correlation_id)
        body += encode_int16(ERROR_UNSUPPORTED_VERSION)
        body += encode_int16(0)  # reserved
        return frame(body)


# =========================================================================
#  Request Building (client side)
# =========================================================================

class RequestBuilder:
    """Builds requests in the layout this broker parses."""

    def __init__(self, first_correlation_id: int = 0):
        self._correlation_id = first_correlation_id

    def _next_corr(self) -> int:
        self._correlation_id = (self._correlation_id + 1) & 0xFFFFFFFF
        return self._correlation_id

    def _header(self, api_key: int, api_version: int) -> Tuple[bytes, int]:
        corr = self._next_corr()
        return encode_uint16(api_key) + encode_uint16(api_version) + encode_uint32(corr), corr

    # --- ApiVersions (key 18) ---
    def api_versions(self, api_version: int = 4) -> Tuple[bytes, int]:
        hdr, corr = self._header(API_API_VERSIONS, api_version)
        return frame(hdr), corr

    # --- DescribeTopicPartitions (key 75, v0) ---
    def describe_topic_partitions(self, topics: List[str],
                                  partition_limit: int = 100) -> Tuple[bytes, int]:
        hdr, corr = self._header(API_DESCRIBE_TOPIC_PARTITIONS, 0)
        body = encode_compact_array(
            topics, lambda t: encode_compact_string(t) + encode_tag_buffer())
        body += encode_int32(partition_limit)
        body += b'\x00'  # cursor = null
        body += encode_tag_buffer()
        return frame(hdr + body), corr

    # --- Anything else ---
    def raw(self, api_key: int, api_version: int = 0, body: bytes = b'') -> Tuple[bytes, int]:
        hdr, corr = self._header(api_key, api_version)
        return frame(hdr + body), corr


# =========================================================================
#  Response Parsing (client side)
# =========================================================================

def _text(b: Optional[bytes]) -> Optional[str]:
    return None if b is None else b.decode('utf-8', errors='replace')


def _expect_end(data: bytes, off: int) -> None:
    if off != len(data):
        raise ValueError(f"Unexpected {len(data) - off} trailing bytes in response")


class ResponseParser:
    """Parses broker responses. `data` is everything after the length prefix."""

    @staticmethod
    def parse_api_versions(data: bytes) -> Dict[str, Any]:
        off = 0
        corr, off = decode_uint32(data, off)
        ec, off = decode_int16(data, off)
        count, off = decode_compact_array_length(data, off)
        apis = {}
        for _ in range(count or 0):
            key, off = decode_int16(data, off)
            min_v, off = decode_int16(data, off)
            max_v, off = decode_int16(data, off)
            _, off = decode_uint8(data, off, "tag_buffer")
            apis[key] = {"name": api_name(key), "min_version": min_v, "max_version": max_v}
        throttle, off = decode_int32(data, off)
        _, off = decode_uint8(data, off, "response_tag_buffer")
        _expect_end(data, off)
        return {
            "correlation_id": corr, "error_code": ec, "error": error_name(ec),
            "apis": apis, "throttle_time_ms": throttle,
        }

    @staticmethod
    def parse_describe_topic_partitions(data: bytes) -> Dict[str, Any]:
        """Parse a DescribeTopicPartitions response.

        Partition entries are not decoded. A topic reporting any partitions
        raises ValueError, as does trailing data after the final tag buffer.
        """
        off = 0
        corr, off = decode_uint32(data, off)
        _, off = decode_uint8(data, off, "header_tag_buffer")
        throttle, off = decode_int32(data, off)
        count, off = decode_compact_array_length(data, off)
        topics = []
        for _ in range(count or 0):
            ec, off = decode_int16(data, off)
            name, off = decode_compact_string(data, off)
            _need(data, off, TOPIC_ID_SIZE, "topic_id")
            topic_id = bytes(data[off:off + TOPIC_ID_SIZE])
            off += TOPIC_ID_SIZE
            is_internal, off = decode_uint8(data, off)
            part_count, off = decode_compact_array_length(data, off)
            if part_count:
                raise ValueError(f"Cannot parse {part_count} partition entries")
            auth_ops, off = decode_int32(data, off)
            _, off = decode_uint8(data, off, "topic_tag_buffer")
            topics.append({
                "error_code": ec, "error": error_name(ec), "name": _text(name),
                "topic_id": topic_id, "is_internal": bool(is_internal),
                "partition_count": part_count or 0,
                "authorized_operations": auth_ops,
            })
        cursor, off = decode_uint8(data, off, "next_cursor")
        _, off = decode_uint8(data, off, "response_tag_buffer")
        _expect_end(data, off)
        return {
            "correlation_id": corr, "throttle_time_ms": throttle,
            "topics": topics, "next_cursor": None if cursor == 0 else cursor,
        }

    @staticmethod
    def parse_error(data: bytes) -> Dict[str, Any]:
        off = 0
        corr, off = decode_uint32(data, off)
        ec, off = decode_int16(data, off)
        return {"correlation_id": corr, "error_code": ec, "error": error_name(ec)}
