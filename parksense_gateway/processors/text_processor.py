# parksense_gateway/processors/text_processor.py
from typing import Dict, Any
import logging

from ..core.events import DeviceEvent, Unrecognized
from ..core.message_processor import MessageProcessor
from .command_encoder import Command, encode
from .text_decoder import decode_line, supported_tags

logger = logging.getLogger(__name__)


class TextLineProcessor(MessageProcessor):
    """
    Colon-delimited ASCII line protocol spoken by the ParkSense sensor unit
    """

    def decode(self, line: str) -> DeviceEvent:
        event = decode_line(line)
        if isinstance(event, Unrecognized):
            logger.debug(f"Unrecognized device line: {event.raw!r}")
        return event

    def encode(self, command: Command) -> bytes:
        data = encode(command)
        logger.debug(f"Encoded command: {data!r}")
        return data

    @classmethod
    def get_processor_info(cls) -> Dict[str, Any]:
        return {
            "type": "text",
            "name": "ParkSense Text Protocol",
            "description": "Newline-terminated, colon-delimited ASCII lines",
            "inbound_tags": supported_tags(),
            "outbound_tags": ["PING", "ENABLE", "DISABLE", "READ", "SERVO", "LCD", "READ_DIST"],
        }

    @classmethod
    def get_default_config(cls) -> Dict[str, Any]:
        return {
            "encoding": "ascii",
            "max_line_length": 1024,
        }
