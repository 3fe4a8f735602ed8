# parksense_gateway/connections/serial_connection.py
import serial_asyncio
import serial
from typing import Dict, Any, Optional
import asyncio
import logging

from ..core.device_connection import DeviceConnection, ConnectionStatus
from ..core.errors import ConnectionLostError

logger = logging.getLogger(__name__)


class SerialConnection(DeviceConnection):
    """
    Serial/UART connection implementation
    Covers Bluetooth SPP (RFCOMM ports such as /dev/rfcomm0) and USB serial adapters
    """

    def __init__(self, connection_id: str, config: Dict[str, Any]):
        super().__init__(connection_id, config)
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.write_lock = asyncio.Lock()

        # Serial-specific configuration
        self.port = config['port']  # e.g., '/dev/rfcomm0', 'COM5'
        self.baudrate = config.get('baudrate', 9600)
        self.bytesize = config.get('bytesize', serial.EIGHTBITS)
        self.parity = config.get('parity', serial.PARITY_NONE)
        self.stopbits = config.get('stopbits', serial.STOPBITS_ONE)

    async def connect(self) -> bool:
        """Establish serial connection"""
        try:
            self.status = ConnectionStatus.CONNECTING
            logger.info(f"Connecting to serial device on {self.port} at {self.baudrate} baud")

            self.reader, self.writer = await serial_asyncio.open_serial_connection(
                url=self.port,
                baudrate=self.baudrate,
                bytesize=self.bytesize,
                parity=self.parity,
                stopbits=self.stopbits,
            )

            self.mark_up()
            return True

        except (serial.SerialException, OSError) as e:
            self.mark_lost(str(e))
            logger.error(f"Failed to connect to serial device {self.port}: {e}")
            return False

    async def disconnect(self) -> bool:
        """Close serial connection without flushing pending output"""
        writer, self.writer, self.reader = self.writer, None, None
        self.status = ConnectionStatus.DISCONNECTED
        if writer is None:
            return True
        try:
            writer.transport.abort()
            logger.info(f"Serial connection closed: {self.connection_id}")
            return True
        except Exception as e:
            logger.error(f"Error closing serial connection {self.connection_id}: {e}")
            return False

    async def read_chunk(self) -> Optional[bytes]:
        """Read available bytes from the serial port"""
        reader = self.reader
        if self.status != ConnectionStatus.CONNECTED or reader is None:
            raise ConnectionLostError(self.connection_id, "not connected")

        try:
            data = await asyncio.wait_for(reader.read(self.chunk_size), timeout=self.read_timeout)
        except asyncio.TimeoutError:
            return None
        except (serial.SerialException, OSError) as e:
            self.mark_lost(str(e))
            raise ConnectionLostError(self.connection_id, str(e)) from e

        if not data:
            self.mark_lost("EOF")
            raise ConnectionLostError(self.connection_id, "EOF")
        return data

    async def write(self, data: bytes) -> bool:
        """Write raw data to serial port"""
        if self.status != ConnectionStatus.CONNECTED or not self.writer:
            return False

        try:
            async with self.write_lock:
                self.writer.write(data)
                await self.writer.drain()
                return True

        except (serial.SerialException, OSError, ConnectionError) as e:
            logger.error(f"Error writing to serial connection {self.connection_id}: {e}")
            self.mark_lost(str(e))
            return False

    @classmethod
    def get_connection_info(cls) -> Dict[str, Any]:
        """Get serial connection information"""
        return {
            "type": "serial",
            "name": "Serial/Bluetooth SPP Connection",
            "description": "HC-05 style Bluetooth serial link or USB serial",
            "supported_interfaces": ["Bluetooth SPP", "USB-Serial", "UART"],
        }

    @classmethod
    def get_default_config(cls) -> Dict[str, Any]:
        """Get default serial configuration"""
        return {
            "port": "/dev/rfcomm0",
            "baudrate": 9600,
            "read_timeout": 1.0,
            "chunk_size": 1024,
            "max_retries": 5,
            "retry_delay": 5.0,
        }
