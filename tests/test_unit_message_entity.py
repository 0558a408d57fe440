#!/usr/bin/env python3
"""
Unit tests for MessageEntity, BodyStream and header decoding helpers
"""

import os
import sys
import unittest
from unittest.mock import Mock

# Add the parent directory to the path so we can import message_entity
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from message_entity import (
    BodyAlreadyConsumedError,
    BodyStream,
    MessageEntity,
    decode_header_field,
    decode_header_value,
    split_header_block,
)


class TestBodyStream(unittest.TestCase):
    """Test cases for the read-once body stream"""

    def test_read_all_returns_content(self):
        """Test that the whole body is returned on first read"""
        stream = BodyStream.from_bytes(b"hello\r\nworld\r\n")
        self.assertFalse(stream.consumed)
        self.assertEqual(stream.read_all(), b"hello\r\nworld\r\n")
        self.assertTrue(stream.consumed)

    def test_second_read_raises(self):
        """Test that reading twice is rejected"""
        stream = BodyStream.from_bytes(b"once")
        stream.read_all()
        with self.assertRaises(BodyAlreadyConsumedError):
            stream.read_all()

    def test_failed_read_still_consumes_stream(self):
        """Test that a broken source cannot be retried"""
        source = Mock()
        source.read.side_effect = OSError("connection reset")
        stream = BodyStream(source)

        with self.assertRaises(OSError):
            stream.read_all()
        with self.assertRaises(BodyAlreadyConsumedError):
            stream.read_all()
        source.read.assert_called_once()


class TestSplitHeaderBlock(unittest.TestCase):
    """Test cases for header/body splitting"""

    def test_crlf_message(self):
        header, body = split_header_block(b"A: 1\r\nB: 2\r\n\r\nbody\r\n")
        self.assertEqual(header, b"A: 1\r\nB: 2\r\n")
        self.assertEqual(body, b"body\r\n")

    def test_lf_message(self):
        header, body = split_header_block(b"A: 1\n\nbody")
        self.assertEqual(header, b"A: 1\n")
        self.assertEqual(body, b"body")

    def test_no_blank_line_is_all_headers(self):
        header, body = split_header_block(b"A: 1\r\nB: 2\r\n")
        self.assertEqual(header, b"A: 1\r\nB: 2\r\n")
        self.assertEqual(body, b"")

    def test_leading_blank_line_means_no_headers(self):
        header, body = split_header_block(b"\r\njust a body\r\n")
        self.assertEqual(header, b"")
        self.assertEqual(body, b"just a body\r\n")

    def test_body_blank_lines_are_kept(self):
        """Test that only the first empty line separates headers from body"""
        header, body = split_header_block(b"A: 1\r\n\r\nfirst\r\n\r\nsecond")
        self.assertEqual(body, b"first\r\n\r\nsecond")


class TestMessageEntity(unittest.TestCase):
    """Test cases for MessageEntity"""

    def setUp(self):
        """Set up test fixtures"""
        self.raw = (
            b"Subject: =?UTF-8?B?7JWI64WV?=\r\n"
            b"From: Sender <sender@example.com>\r\n"
            b"Content-Type: text/plain; charset=utf-8\r\n"
            b"\r\n"
            b"Body line\r\n"
        )
        self.entity = MessageEntity.from_bytes(self.raw)

    def test_header_lookup_is_case_insensitive(self):
        self.assertEqual(self.entity.get("content-type"), "text/plain; charset=utf-8")
        self.assertEqual(self.entity.get("CONTENT-TYPE"), "text/plain; charset=utf-8")
        self.assertIn("from", self.entity)

    def test_missing_header_returns_default(self):
        self.assertEqual(self.entity.get("Date"), "")
        self.assertEqual(self.entity.get("Date", "No Date"), "No Date")

    def test_header_values_are_raw(self):
        """Test that encoded-words are not decoded by lookup"""
        self.assertEqual(self.entity.get("Subject"), "=?UTF-8?B?7JWI64WV?=")

    def test_fields_preserve_wire_order(self):
        keys = [key for key, _value in self.entity.fields()]
        self.assertEqual(keys, ["Subject", "From", "Content-Type"])

    def test_body_stream_holds_body_bytes(self):
        self.assertEqual(self.entity.body.read_all(), b"Body line\r\n")

    def test_eight_bit_header_bytes(self):
        """Test that raw lookup keeps 8-bit bytes recoverable while display lookup replaces them"""
        entity = MessageEntity.from_bytes(b"Subject: caf\xc3\xa9\r\n\r\nbody")

        raw_value = entity.get_raw("subject")
        self.assertEqual(raw_value.encode("ascii", "surrogateescape"), b"caf\xc3\xa9")
        self.assertTrue(entity.get("Subject").startswith("caf"))
        self.assertIn("�", entity.get("Subject"))
        self.assertIn("�", dict(entity.fields())["Subject"])

    def test_get_raw_missing_header(self):
        self.assertEqual(self.entity.get_raw("Date"), "")
        self.assertEqual(self.entity.get_raw("Subject"), "=?UTF-8?B?7JWI64WV?=")


class TestHeaderDecoding(unittest.TestCase):
    """Test cases for RFC 2047 header decoding"""

    def test_decode_encoded_word(self):
        self.assertEqual(decode_header_value("=?UTF-8?B?7JWI64WV?="), "안녕")

    def test_plain_value_is_unchanged(self):
        self.assertEqual(decode_header_value("Weekly report"), "Weekly report")
        self.assertEqual(decode_header_value(""), "")

    def test_decode_failure_falls_back_to_raw(self):
        raw = "=?x-unknown-charset?Q?abc?="
        self.assertEqual(decode_header_value(raw), raw)

    def test_decode_field_marks_failures(self):
        raw = "=?x-unknown-charset?Q?abc?="
        self.assertEqual(decode_header_field(raw), "[Decode Error] " + raw)

    def test_decode_field_success(self):
        self.assertEqual(decode_header_field("=?UTF-8?B?7JWI64WV?="), "안녕")


if __name__ == '__main__':
    unittest.main()
