"""Unit tests for message assembly and content decoding."""

import base64
import unittest
from datetime import datetime

from mailsift.assembler import DomainMessage, assemble_message, decode_text, decode_transfer_encoding
from mailsift.fetcher import PartRequirement
from mailsift.session import Address, Envelope, StructureRecord


def record(**overrides):
    values = dict(
        seq_num=4,
        uid=204,
        envelope=Envelope(
            date=datetime(2024, 1, 15, 10, 30),
            subject="Quarterly report",
            from_=(Address(name="Alice Smith", mailbox="alice", host="example.com"),),
            to=(Address(mailbox="bob", host="example.com"), Address(mailbox="carol", host="example.org")),
            cc=(Address(name="Dan", mailbox="dan", host="example.com"),),
        ),
        flags=("\\Seen", "$Important"),
        size=5120,
    )
    values.update(overrides)
    return StructureRecord(**values)


class TestDecoding(unittest.TestCase):

    def test_base64(self):
        self.assertEqual(decode_transfer_encoding(base64.b64encode(b"hello"), "BASE64"), b"hello")

    def test_quoted_printable(self):
        self.assertEqual(decode_transfer_encoding(b"caf=C3=A9 =\r\nlatte", "quoted-printable"), "café latte".encode())

    def test_identity_encodings(self):
        for encoding in ("7bit", "8bit", "binary", ""):
            self.assertEqual(decode_transfer_encoding(b"raw", encoding), b"raw")

    def test_invalid_base64_keeps_raw(self):
        with self.assertLogs("mailsift.assembler", level="WARNING"):
            self.assertEqual(decode_transfer_encoding(b"abc", "base64"), b"abc")

    def test_charsets(self):
        self.assertEqual(decode_text("Grüße".encode("iso-8859-1"), "ISO-8859-1"), "Grüße")
        self.assertEqual(decode_text("Grüße".encode("utf-8"), ""), "Grüße")

    def test_unknown_charset_falls_back_to_utf8(self):
        with self.assertLogs("mailsift.assembler", level="WARNING"):
            self.assertEqual(decode_text("ok ✓".encode("utf-8"), "x-unknown-charset"), "ok ✓")

    def test_invalid_bytes_are_replaced(self):
        self.assertEqual(decode_text(b"bad \xff byte", "utf-8"), "bad � byte")


class TestAssembleMessage(unittest.TestCase):
    """Test conversion of structure and content into DomainMessage."""

    def test_envelope_fields(self):
        message = assemble_message(record(), [], total_count=42)

        self.assertIsInstance(message, DomainMessage)
        self.assertEqual(message.seq_num, 4)
        self.assertEqual(message.uid, 204)
        self.assertEqual(message.subject, "Quarterly report")
        self.assertEqual(message.from_, ("Alice Smith <alice@example.com>",))
        self.assertEqual(message.to, ("bob@example.com", "carol@example.org"))
        self.assertEqual(message.cc, ("Dan <dan@example.com>",))
        self.assertEqual(message.bcc, ())
        self.assertEqual(message.date, datetime(2024, 1, 15, 10, 30))
        self.assertEqual(message.flags, frozenset({"\\Seen", "$Important"}))
        self.assertEqual(message.size, 5120)
        self.assertEqual(message.total_count, 42)
        self.assertEqual(message.mime_parts, ())

    def test_text_part(self):
        requirement = PartRequirement(path=(1,), type="text", subtype="plain", charset="utf-8", encoding="quoted-printable")
        raw = b"Hello =E2=9C=93"
        message = assemble_message(record(), [(requirement, raw)], total_count=1)

        part = message.mime_parts[0]
        self.assertEqual(part.media_type, "text/plain")
        self.assertEqual(part.content, "Hello ✓")
        self.assertEqual(part.size, len(raw))
        self.assertEqual(part.charset, "utf-8")
        self.assertEqual(part.data, b"")

    def test_binary_part_keeps_payload(self):
        payload = b"%PDF-1.4 \x00\x01"
        raw = base64.b64encode(payload)
        requirement = PartRequirement(path=(2,), type="application", subtype="pdf", filename="a.pdf", encoding="base64")
        message = assemble_message(record(), [(requirement, raw)], total_count=1)

        part = message.mime_parts[0]
        self.assertEqual(part.data, payload)
        self.assertEqual(part.content, raw.decode("ascii"))
        self.assertEqual(part.filename, "a.pdf")
        self.assertEqual(part.size, len(raw))

    def test_parts_keep_order_and_empty_content(self):
        plain = PartRequirement(path=(1,), type="text", subtype="plain")
        html = PartRequirement(path=(2,), type="text", subtype="html")
        message = assemble_message(record(), [(plain, b"text"), (html, b"")], total_count=1)

        self.assertEqual([p.subtype for p in message.mime_parts], ["plain", "html"])
        self.assertEqual(message.mime_parts[1].content, "")
        self.assertEqual(message.mime_parts[1].size, 0)

    def test_inputs_are_not_mutated(self):
        source = record()
        parts = [(PartRequirement(path=(1,), type="text", subtype="plain"), b"x")]
        assemble_message(source, parts, total_count=3)
        self.assertEqual(source, record())
        self.assertEqual(parts, [(PartRequirement(path=(1,), type="text", subtype="plain"), b"x")])


if __name__ == '__main__':
    unittest.main()
