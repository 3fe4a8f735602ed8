# parksense_gateway/core/message_processor.py
from abc import ABC, abstractmethod
from typing import Dict, Any, List
import logging

from .events import DeviceEvent
from .line_framer import LineFramer

logger = logging.getLogger(__name__)


class MessageProcessor(ABC):
    """
    Abstract base class for message processing
    Converts framed protocol lines into DeviceEvents and commands into wire bytes
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config

    @abstractmethod
    def decode(self, line: str) -> DeviceEvent:
        """Decode one framed line into a DeviceEvent (must not raise)"""
        pass

    @abstractmethod
    def encode(self, command: Any) -> bytes:
        """Encode an outbound command into raw bytes"""
        pass

    @classmethod
    @abstractmethod
    def get_processor_info(cls) -> Dict[str, Any]:
        """Get information about this processor type"""
        pass

    @classmethod
    @abstractmethod
    def get_default_config(cls) -> Dict[str, Any]:
        """Get default configuration for this processor type"""
        pass

    def create_framer(self) -> LineFramer:
        """Fresh framer for a new connection"""
        return LineFramer(
            max_line_length=self.config.get("max_line_length", 1024),
            encoding=self.config.get("encoding", "ascii"),
        )

    def decode_chunk(self, framer: LineFramer, chunk: bytes) -> List[DeviceEvent]:
        """Frame a raw chunk and decode every completed line"""
        return [self.decode(line) for line in framer.feed(chunk)]
