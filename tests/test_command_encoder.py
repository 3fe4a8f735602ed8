"""
Tests for outbound command encoding and control-payload parsing.
"""

import unittest

from parksense_gateway.core.errors import CommandValidationError
from parksense_gateway.processors.command_encoder import (
    Ping,
    RequestDistance,
    RequestSensorRead,
    SetDisplayText,
    SetEnabled,
    SetServoAngle,
    command_from_payload,
    encode,
    fit_display,
)


class TestEncode(unittest.TestCase):

    def test_ping(self):
        self.assertEqual(encode(Ping("P3")), b"PING:P3\n")

    def test_enable_disable(self):
        self.assertEqual(encode(SetEnabled("P1", True)), b"ENABLE:P1\n")
        self.assertEqual(encode(SetEnabled("P1", False)), b"DISABLE:P1\n")

    def test_read_and_distance(self):
        self.assertEqual(encode(RequestSensorRead("P2")), b"READ:P2\n")
        self.assertEqual(encode(RequestDistance()), b"READ_DIST\n")

    def test_servo(self):
        self.assertEqual(encode(SetServoAngle(0)), b"SERVO:0\n")
        self.assertEqual(encode(SetServoAngle(180)), b"SERVO:180\n")

    def test_servo_out_of_range(self):
        for angle in (-1, 181, 200):
            with self.subTest(angle=angle):
                with self.assertRaises(CommandValidationError):
                    encode(SetServoAngle(angle))

    def test_servo_rejects_non_integers(self):
        for angle in (90.0, "90", True, None):
            with self.subTest(angle=angle):
                with self.assertRaises(CommandValidationError):
                    encode(SetServoAngle(angle))

    def test_lcd_truncates_on_word_boundary(self):
        self.assertEqual(encode(SetDisplayText("this text is definitely too long")), b"LCD:this text is \n")

    def test_lcd_short_text_unchanged(self):
        self.assertEqual(encode(SetDisplayText("Welcome")), b"LCD:Welcome\n")

    def test_lcd_embedded_newline_does_not_split_command(self):
        data = encode(SetDisplayText("two\nlines"))
        self.assertEqual(data, b"LCD:two lines\n")
        self.assertEqual(data.count(b"\n"), 1)

    def test_exactly_one_trailing_newline(self):
        commands = [Ping("P1"), SetEnabled("P1", True), SetServoAngle(45), SetDisplayText("hi\n"),
                    RequestSensorRead("P1"), RequestDistance()]
        for command in commands:
            with self.subTest(command=command):
                data = encode(command)
                self.assertTrue(data.endswith(b"\n"))
                self.assertFalse(data.endswith(b"\n\n"))

    def test_invalid_slot_names(self):
        for name in ("", "   ", "P:1", "P1\n", None):
            with self.subTest(name=name):
                with self.assertRaises(CommandValidationError):
                    encode(Ping(name))

    def test_validation_error_is_value_error(self):
        with self.assertRaises(ValueError):
            encode(SetServoAngle(500))


class TestFitDisplay(unittest.TestCase):

    def test_hard_cut_without_spaces(self):
        self.assertEqual(fit_display("ABCDEFGHIJKLMNOPQRST", 16), "ABCDEFGHIJKLMNOP")

    def test_cut_on_space_keeps_window(self):
        self.assertEqual(fit_display("exactly sixteen! more", 16), "exactly sixteen!")

    def test_custom_width(self):
        self.assertEqual(fit_display("hello world", 8), "hello ")

    def test_word_cut_differs_from_plain_slice(self):
        text = "Slot P1 now reserved"
        self.assertEqual(text[:16], "Slot P1 now rese")
        self.assertEqual(fit_display(text, 16), "Slot P1 now ")


class TestCommandFromPayload(unittest.TestCase):

    def test_slot_actions_take_slot_from_topic(self):
        self.assertEqual(command_from_payload({"action": "ping"}, "P2"), Ping("P2"))
        self.assertEqual(command_from_payload({"action": "disable"}, "P2"), SetEnabled("P2", False))
        self.assertEqual(command_from_payload({"action": "READ"}, "P2"), RequestSensorRead("P2"))

    def test_device_actions(self):
        self.assertEqual(command_from_payload({"action": "servo", "angle": 90}), SetServoAngle(90))
        self.assertEqual(command_from_payload({"action": "lcd", "text": "Full"}), SetDisplayText("Full"))
        self.assertEqual(command_from_payload({"action": "read_dist"}), RequestDistance())

    def test_missing_arguments(self):
        for payload in ({"action": "servo"}, {"action": "lcd"}, {"action": "ping"}):
            with self.subTest(payload=payload):
                with self.assertRaises(CommandValidationError):
                    encode(command_from_payload(payload))

    def test_unknown_action(self):
        with self.assertRaises(CommandValidationError):
            command_from_payload({"action": "explode"})

    def test_payload_must_be_object(self):
        with self.assertRaises(CommandValidationError):
            command_from_payload(["ping"])


if __name__ == "__main__":
    unittest.main()
