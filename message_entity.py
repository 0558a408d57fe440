#!/usr/bin/env python3
"""
Message Entity Module

Read-only view of a retrieved email message (or one part of a multipart message):
raw header fields with case-insensitive lookup plus a body stream that can be read
exactly once. Header values are kept exactly as they arrived on the wire; decoding
RFC 2047 encoded-words for display is a separate, optional step.
"""

import email.errors
import email.header
import email.message
import email.parser
import email.policy
import io
from typing import BinaryIO, Iterator, Tuple


class BodyAlreadyConsumedError(RuntimeError):
    """Raised when a read-once body stream is read a second time"""


class BodyStream:
    """Body byte stream that can be read end-to-end only once"""

    def __init__(self, source: BinaryIO):
        self._source = source
        self.consumed = False

    @classmethod
    def from_bytes(cls, data: bytes) -> "BodyStream":
        return cls(io.BytesIO(data))

    def read_all(self) -> bytes:
        """
        Read the whole stream.

        The stream counts as consumed even when the underlying read fails, so a
        broken body is never retried.

        Returns:
            bytes: Entire body content

        Raises:
            BodyAlreadyConsumedError: If the stream has been read before
            OSError: If the underlying source fails
        """
        if self.consumed:
            raise BodyAlreadyConsumedError("Body stream has already been read")
        self.consumed = True
        return self._source.read()


class RawHeaderPolicy(email.policy.Compat32):
    """compat32 that hands header values back exactly as parsed, 8-bit bytes included"""

    def header_fetch_parse(self, name, value):
        return value


raw_header_policy = RawHeaderPolicy()


def split_header_block(raw: bytes) -> Tuple[bytes, bytes]:
    """
    Split raw message bytes into the header block and the body.

    The header block ends at the first empty line. Body bytes are returned untouched.

    Args:
        raw: Raw message or part bytes

    Returns:
        tuple: (header_bytes, body_bytes)
    """
    # A leading empty line means the entity has no header fields at all
    if raw.startswith(b"\r\n"):
        return b"", raw[2:]
    if raw.startswith(b"\n"):
        return b"", raw[1:]

    separators = []
    for separator in (b"\r\n\r\n", b"\n\n"):
        index = raw.find(separator)
        if index != -1:
            separators.append((index, len(separator)))

    if not separators:
        return raw, b""

    index, length = min(separators)
    return raw[:index + length // 2], raw[index + length:]


def parse_header_block(header_bytes: bytes) -> email.message.Message:
    """Parse a header block into a Message that keeps raw (undecoded) values"""
    parser = email.parser.BytesHeaderParser(policy=raw_header_policy)
    return parser.parsebytes(header_bytes)


def _display_value(name: str, value) -> str:
    # compat32 turns 8-bit header bytes into U+FFFD for display
    return str(email.policy.compat32.header_fetch_parse(name, value))


class MessageEntity:
    """
    Header fields plus a read-once body stream.

    Headers are expected to come from a parser running raw_header_policy, so
    get_raw() can return undamaged values.
    """

    def __init__(self, headers: email.message.Message, body: BodyStream):
        self._headers = headers
        self.body = body

    @classmethod
    def from_bytes(cls, raw: bytes) -> "MessageEntity":
        """
        Build an entity from raw RFC 5322 bytes.

        Args:
            raw: Complete message (or MIME part) bytes

        Returns:
            MessageEntity: Entity whose body stream holds everything after the header block
        """
        header_bytes, body_bytes = split_header_block(raw)
        return cls(parse_header_block(header_bytes), BodyStream.from_bytes(body_bytes))

    def get(self, name: str, default: str = "") -> str:
        """Case-insensitive lookup of the first header field called name"""
        value = self._headers.get(name)
        if value is None:
            return default
        return _display_value(name, value)

    def get_raw(self, name: str, default: str = "") -> str:
        """Like get(), but 8-bit bytes stay surrogate-escaped so they can be encoded back"""
        value = self._headers.get(name)
        if value is None:
            return default
        return value if isinstance(value, str) else str(value)

    def fields(self) -> Iterator[Tuple[str, str]]:
        """Iterate over every header field in wire order"""
        for key, value in self._headers.items():
            yield key, _display_value(key, value)

    def __contains__(self, name: str) -> bool:
        return name in self._headers


def decode_header_value(value: str) -> str:
    """
    Decode RFC 2047 encoded-words in a header value.

    Args:
        value: Raw header value

    Returns:
        str: Decoded value, or the raw value if it cannot be decoded
    """
    if not value:
        return value
    try:
        return str(email.header.make_header(email.header.decode_header(value)))
    except (email.errors.HeaderParseError, UnicodeError, LookupError):
        return value


def decode_header_field(value: str) -> str:
    """Decode a header value for the full header dump, flagging values that fail to decode"""
    if not value:
        return value
    try:
        return str(email.header.make_header(email.header.decode_header(value)))
    except (email.errors.HeaderParseError, UnicodeError, LookupError):
        return "[Decode Error] " + value
