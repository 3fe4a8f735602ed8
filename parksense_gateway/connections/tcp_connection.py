# parksense_gateway/connections/tcp_connection.py
from typing import Dict, Any, Optional
import asyncio
import logging

from ..core.device_connection import DeviceConnection, ConnectionStatus
from ..core.errors import ConnectionLostError

logger = logging.getLogger(__name__)


class TCPConnection(DeviceConnection):
    """
    Raw TCP connection to a serial bridge (ser2net, ESP-Link and similar)
    """

    def __init__(self, connection_id: str, config: Dict[str, Any]):
        super().__init__(connection_id, config)
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None

        self.host = config['host']
        self.port = config.get('port', 2000)
        self.connect_timeout = config.get('connect_timeout', 10.0)

    async def connect(self) -> bool:
        """Open the TCP stream"""
        try:
            self.status = ConnectionStatus.CONNECTING
            logger.info(f"Connecting to tcp://{self.host}:{self.port}")
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.connect_timeout,
            )
            self.mark_up()
            return True

        except (OSError, asyncio.TimeoutError) as e:
            self.mark_lost(str(e) or type(e).__name__)
            logger.error(f"Failed to connect to {self.host}:{self.port}: {self.last_error}")
            return False

    async def disconnect(self) -> bool:
        """Close the TCP stream"""
        writer, self.writer, self.reader = self.writer, None, None
        self.status = ConnectionStatus.DISCONNECTED
        if writer is None:
            return True
        try:
            writer.close()
            await writer.wait_closed()
        except (OSError, ConnectionError) as e:
            logger.debug(f"Ignoring error while closing {self.connection_id}: {e}")
        logger.info(f"TCP connection closed: {self.connection_id}")
        return True

    async def read_chunk(self) -> Optional[bytes]:
        reader = self.reader
        if self.status != ConnectionStatus.CONNECTED or reader is None:
            raise ConnectionLostError(self.connection_id, "not connected")

        try:
            data = await asyncio.wait_for(reader.read(self.chunk_size), timeout=self.read_timeout)
        except asyncio.TimeoutError:
            return None
        except (OSError, ConnectionError) as e:
            self.mark_lost(str(e))
            raise ConnectionLostError(self.connection_id, str(e)) from e

        if not data:
            self.mark_lost("EOF")
            raise ConnectionLostError(self.connection_id, "EOF")
        return data

    async def write(self, data: bytes) -> bool:
        if self.status != ConnectionStatus.CONNECTED or not self.writer:
            return False
        try:
            self.writer.write(data)
            await self.writer.drain()
            return True
        except (OSError, ConnectionError) as e:
            logger.error(f"Error writing to {self.connection_id}: {e}")
            self.mark_lost(str(e))
            return False

    @classmethod
    def get_connection_info(cls) -> Dict[str, Any]:
        return {
            "type": "tcp",
            "name": "TCP Serial Bridge",
            "description": "Serial link tunnelled over a raw TCP socket",
            "supported_interfaces": ["TCP"],
        }

    @classmethod
    def get_default_config(cls) -> Dict[str, Any]:
        return {
            "host": "localhost",
            "port": 2000,
            "connect_timeout": 10.0,
            "read_timeout": 1.0,
            "max_retries": 5,
            "retry_delay": 5.0,
        }
