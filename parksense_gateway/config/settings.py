# parksense_gateway/config/settings.py
from decimal import Decimal
from typing import Any, Dict, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Gateway settings, read from the environment and .env"""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Logging
    LOG_LEVEL: str = "INFO"

    # Device link
    DEVICE_ID: str = "parksense-hc05"
    CONNECTION_TYPE: Literal["serial", "tcp"] = "serial"
    SERIAL_PORT: str = "/dev/rfcomm0"
    SERIAL_BAUDRATE: int = 9600
    TCP_HOST: str = "localhost"
    TCP_PORT: int = 2000
    READ_TIMEOUT: float = Field(1.0, gt=0)
    MAX_RETRIES: int = Field(5, ge=0)
    RETRY_DELAY: float = Field(5.0, ge=0)
    MAX_LINE_LENGTH: int = Field(1024, ge=16)
    COMMAND_WRITE_TIMEOUT: float = Field(5.0, gt=0)

    # Slot repository
    REPOSITORY_TYPE: Literal["memory", "supabase"] = "memory"
    SUPABASE_URL: Optional[str] = None
    SUPABASE_KEY: Optional[str] = None
    SUBSCRIPTION_POLL_INTERVAL: float = Field(5.0, gt=0)

    # Billing
    BILLING_POLICY: Literal["flat", "hourly"] = "flat"
    BASE_FEE: Decimal = Decimal("25")
    OVERTIME_FEE: Decimal = Decimal("100")
    RATE_PER_HOUR: Decimal = Decimal("25")
    OVERTIME_RATE_PER_HOUR: Decimal = Decimal("100")
    OVERTIME_THRESHOLD_MINUTES: int = Field(120, ge=0)
    CURRENCY: str = "PHP"

    # Occupancy detection
    OCCUPANCY_SOURCE: Literal["status", "sensor"] = "status"
    SENSOR_THRESHOLD: int = 500
    OVERTIME_SOURCE: Literal["device", "elapsed"] = "device"
    OVERTIME_SWEEP_INTERVAL: float = Field(30.0, gt=0)

    # Session recording
    SESSION_RETRY_ATTEMPTS: int = Field(3, ge=1)
    SESSION_RETRY_DELAY: float = Field(1.0, ge=0)
    PERSIST_SENSOR_READINGS: bool = False

    # MQTT
    MQTT_ENABLED: bool = True
    MQTT_BROKER: str = "localhost"
    MQTT_PORT: int = 1883
    MQTT_TOPIC_PREFIX: str = "parksense"
    MQTT_USERNAME: Optional[str] = None
    MQTT_PASSWORD: Optional[str] = None

    # Slot administration
    DEFAULT_SLOT_COUNT: int = Field(5, ge=1)
    DEFAULT_ALLOWED_MINUTES: int = Field(60, ge=0)

    def connection_config(self) -> Dict[str, Any]:
        """Config dict for the selected connection type"""
        common = {
            "read_timeout": self.READ_TIMEOUT,
            "max_retries": self.MAX_RETRIES,
            "retry_delay": self.RETRY_DELAY,
        }
        if self.CONNECTION_TYPE == "tcp":
            return {**common, "host": self.TCP_HOST, "port": self.TCP_PORT}
        return {**common, "port": self.SERIAL_PORT, "baudrate": self.SERIAL_BAUDRATE}

    def mqtt_config(self) -> Dict[str, Any]:
        return {
            "mqtt_broker": self.MQTT_BROKER,
            "mqtt_port": self.MQTT_PORT,
            "mqtt_topic_prefix": self.MQTT_TOPIC_PREFIX,
            "mqtt_username": self.MQTT_USERNAME,
            "mqtt_password": self.MQTT_PASSWORD,
        }
