"""
Tests for environment-driven gateway settings.
"""

import os
import unittest
from decimal import Decimal
from unittest.mock import patch

from pydantic import ValidationError

from parksense_gateway.config.settings import Settings


class TestSettings(unittest.TestCase):

    def load(self, **env):
        with patch.dict(os.environ, env, clear=True):
            return Settings(_env_file=None)

    def test_defaults(self):
        settings = self.load()
        self.assertEqual(settings.CONNECTION_TYPE, "serial")
        self.assertEqual(settings.REPOSITORY_TYPE, "memory")
        self.assertEqual(settings.BASE_FEE, Decimal("25"))
        self.assertEqual(settings.OVERTIME_THRESHOLD_MINUTES, 120)
        self.assertEqual(settings.COMMAND_WRITE_TIMEOUT, 5.0)
        self.assertEqual(settings.connection_config()["port"], "/dev/rfcomm0")
        self.assertEqual(settings.connection_config()["baudrate"], 9600)

    def test_tcp_connection_config(self):
        settings = self.load(CONNECTION_TYPE="tcp", TCP_HOST="10.0.0.7", TCP_PORT="7000", READ_TIMEOUT="0.5")
        config = settings.connection_config()
        self.assertEqual(config["host"], "10.0.0.7")
        self.assertEqual(config["port"], 7000)
        self.assertEqual(config["read_timeout"], 0.5)
        self.assertNotIn("baudrate", config)

    def test_fees_parse_as_decimal(self):
        settings = self.load(BILLING_POLICY="hourly", RATE_PER_HOUR="12.50")
        self.assertEqual(settings.RATE_PER_HOUR, Decimal("12.50"))

    def test_mqtt_config(self):
        config = self.load(MQTT_BROKER="mqtt.lot", MQTT_TOPIC_PREFIX="lot-a").mqtt_config()
        self.assertEqual(config["mqtt_broker"], "mqtt.lot")
        self.assertEqual(config["mqtt_topic_prefix"], "lot-a")
        self.assertIsNone(config["mqtt_username"])

    def test_invalid_values_rejected(self):
        with self.assertRaises(ValidationError):
            self.load(CONNECTION_TYPE="i2c")
        with self.assertRaises(ValidationError):
            self.load(OCCUPANCY_SOURCE="camera")
        with self.assertRaises(ValidationError):
            self.load(READ_TIMEOUT="0")
        with self.assertRaises(ValidationError):
            self.load(COMMAND_WRITE_TIMEOUT="0")


if __name__ == "__main__":
    unittest.main()
