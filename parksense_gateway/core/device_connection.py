# parksense_gateway/core/device_connection.py
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional
import asyncio
import logging
from enum import Enum

logger = logging.getLogger(__name__)


class ConnectionStatus(Enum):
    """Link status of the sensor unit"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    RECONNECTING = "reconnecting"


class DeviceConnection(ABC):
    """
    Byte-stream link to the sensor unit

    read_chunk() returns None when nothing arrived within read_timeout, so the
    reader can poll its stop flag between reads, and raises
    ConnectionLostError on EOF or I/O failure. disconnect() may be called at
    any time, including on a link that never opened.
    """

    def __init__(self, connection_id: str, config: Dict[str, Any]):
        self.connection_id = connection_id
        self.config = config
        self.status = ConnectionStatus.DISCONNECTED
        self.last_error: Optional[str] = None

        self.read_timeout = config.get('read_timeout', 1.0)
        self.chunk_size = config.get('chunk_size', 1024)

        # Reconnect budget; reset whenever a link comes up
        self.retry_count = 0
        self.max_retries = config.get('max_retries', 3)
        self.retry_delay = config.get('retry_delay', 5.0)

    @abstractmethod
    async def connect(self) -> bool:
        """Open the link; False (with last_error set) on failure"""
        pass

    @abstractmethod
    async def disconnect(self) -> bool:
        """Close the link without waiting for pending output"""
        pass

    @abstractmethod
    async def read_chunk(self) -> Optional[bytes]:
        """Bytes received so far, None on read timeout"""
        pass

    @abstractmethod
    async def write(self, data: bytes) -> bool:
        """Write one encoded command"""
        pass

    @classmethod
    @abstractmethod
    def get_connection_info(cls) -> Dict[str, Any]:
        pass

    @classmethod
    @abstractmethod
    def get_default_config(cls) -> Dict[str, Any]:
        pass

    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries

    def mark_up(self):
        self.status = ConnectionStatus.CONNECTED
        self.last_error = None
        logger.info(f"Link up: {self.connection_id}")

    def mark_lost(self, reason: str):
        """Record a failed open or a dropped link"""
        self.status = ConnectionStatus.ERROR
        self.last_error = reason or "unknown error"

    async def reconnect(self) -> bool:
        """One reconnect attempt after retry_delay, counted against max_retries"""
        if self.retries_exhausted:
            logger.error(f"Max retries ({self.max_retries}) exceeded for {self.connection_id}")
            return False

        self.status = ConnectionStatus.RECONNECTING
        self.retry_count += 1
        logger.info(f"Reconnecting {self.connection_id} (attempt {self.retry_count}/{self.max_retries})")

        await asyncio.sleep(self.retry_delay)
        if await self.connect():
            self.reset_retries()
            return True
        return False

    def reset_retries(self):
        self.retry_count = 0
