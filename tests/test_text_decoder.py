"""
Tests for the protocol decoder: every tag, case-insensitivity, and totality
on malformed input.
"""

import unittest

from parksense_gateway.core.events import PingAck, SensorReading, SignalStrength, SlotOccupancy, Unrecognized
from parksense_gateway.processors.text_decoder import decode_line, supported_tags
from parksense_gateway.processors.text_processor import TextLineProcessor


class TestDecodeLine(unittest.TestCase):

    def test_slot_status(self):
        self.assertEqual(decode_line("SLOT:P1:occupied"), SlotOccupancy("P1", "occupied"))

    def test_status_alias(self):
        self.assertEqual(decode_line("STATUS:P2:vacant"), SlotOccupancy("P2", "vacant"))

    def test_tag_and_status_case_insensitive(self):
        self.assertEqual(decode_line("slot:P3:OVERTIME"), SlotOccupancy("P3", "overtime"))

    def test_unknown_status_forwarded(self):
        self.assertEqual(decode_line("SLOT:P1:foo"), SlotOccupancy("P1", "foo"))

    def test_sensor(self):
        self.assertEqual(decode_line("SENSOR:P4:412"), SensorReading("P4", 412))

    def test_sensor_non_integer(self):
        self.assertEqual(decode_line("SENSOR:P4:abc"), Unrecognized("SENSOR:P4:abc"))
        self.assertEqual(decode_line("SENSOR:P4:4.5"), Unrecognized("SENSOR:P4:4.5"))

    def test_pong(self):
        self.assertEqual(decode_line("PONG:P5"), PingAck("P5"))

    def test_rssi(self):
        self.assertEqual(decode_line("RSSI:-67"), SignalStrength(-67))

    def test_rssi_non_integer(self):
        self.assertIsInstance(decode_line("RSSI:strong"), Unrecognized)

    def test_missing_fields(self):
        for line in ("SLOT:P1", "SLOT::occupied", "SLOT:P1:", "SENSOR:P1", "PONG:", "RSSI:"):
            with self.subTest(line=line):
                self.assertIsInstance(decode_line(line), Unrecognized)

    def test_unknown_tag(self):
        self.assertEqual(decode_line("HELLO:world"), Unrecognized("HELLO:world"))

    def test_never_raises(self):
        for line in ("", ":", "::::", "no colons here", "\x00\x00", "SLOT:\x00:\x00", "�:�"):
            with self.subTest(line=line):
                self.assertIsInstance(
                    decode_line(line),
                    (Unrecognized, SlotOccupancy, SensorReading, PingAck, SignalStrength),
                )

    def test_non_string_input(self):
        self.assertIsInstance(decode_line(None), Unrecognized)

    def test_supported_tags(self):
        self.assertEqual(supported_tags(), ["PONG", "RSSI", "SENSOR", "SLOT", "STATUS"])


class TestTextLineProcessor(unittest.TestCase):

    def test_decode_chunk_uses_framer(self):
        processor = TextLineProcessor(TextLineProcessor.get_default_config())
        framer = processor.create_framer()
        self.assertEqual(processor.decode_chunk(framer, b"SLOT:P1:occ"), [])
        self.assertEqual(
            processor.decode_chunk(framer, b"upied\r\nPONG:P1\n"),
            [SlotOccupancy("P1", "occupied"), PingAck("P1")],
        )

    def test_framer_honours_configured_limit(self):
        processor = TextLineProcessor({"max_line_length": 32})
        self.assertEqual(processor.create_framer().max_line_length, 32)


if __name__ == "__main__":
    unittest.main()
