# parksense_gateway/processors/text_decoder.py
"""
Decoder for the colon-delimited device protocol.

    SLOT:<name>:<status>     STATUS:<name>:<status>
    SENSOR:<name>:<value>    PONG:<name>
    RSSI:<dBm>

Tags match case-insensitively. decode_line() is total: anything malformed
comes back as Unrecognized so the pipeline can log it and move on.
"""
import re
from typing import Callable, Dict, List

from ..core.events import (
    DeviceEvent,
    PingAck,
    SensorReading,
    SignalStrength,
    SlotOccupancy,
    Unrecognized,
)

FIELD_SEPARATOR = ":"
_INTEGER = re.compile(r"^[+-]?\d+$")


def _parse_int(text: str):
    text = text.strip()
    if not _INTEGER.match(text):
        return None
    return int(text)


def _decode_occupancy(line: str, fields: List[str]) -> DeviceEvent:
    if len(fields) < 3:
        return Unrecognized(raw=line)
    name = fields[1].strip()
    status = fields[2].strip().lower()
    if not name or not status:
        return Unrecognized(raw=line)
    # Unknown statuses are forwarded; the state machine decides what they mean
    return SlotOccupancy(slot_name=name, raw_status=status)


def _decode_sensor(line: str, fields: List[str]) -> DeviceEvent:
    if len(fields) < 3:
        return Unrecognized(raw=line)
    name = fields[1].strip()
    value = _parse_int(fields[2])
    if not name or value is None:
        return Unrecognized(raw=line)
    return SensorReading(slot_name=name, value=value)


def _decode_pong(line: str, fields: List[str]) -> DeviceEvent:
    name = fields[1].strip()
    if not name:
        return Unrecognized(raw=line)
    return PingAck(slot_name=name)


def _decode_rssi(line: str, fields: List[str]) -> DeviceEvent:
    rssi = _parse_int(fields[1])
    if rssi is None:
        return Unrecognized(raw=line)
    return SignalStrength(rssi=rssi)


_DECODERS: Dict[str, Callable[[str, List[str]], DeviceEvent]] = {
    "SLOT": _decode_occupancy,
    "STATUS": _decode_occupancy,
    "SENSOR": _decode_sensor,
    "PONG": _decode_pong,
    "RSSI": _decode_rssi,
}


def decode_line(line: str) -> DeviceEvent:
    """Parse one protocol line into a DeviceEvent"""
    if not isinstance(line, str):
        return Unrecognized(raw=repr(line))

    text = line.strip()
    fields = text.split(FIELD_SEPARATOR)
    if len(fields) < 2:
        return Unrecognized(raw=line)

    decoder = _DECODERS.get(fields[0].strip().upper())
    if decoder is None:
        return Unrecognized(raw=line)
    return decoder(line, fields)


def supported_tags() -> List[str]:
    return sorted(_DECODERS)
