# parksense_gateway/core/events.py
"""Decoded device messages. Transient, never persisted."""
from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class SlotOccupancy:
    """SLOT:<name>:<status> or STATUS:<name>:<status>"""
    slot_name: str
    raw_status: str


@dataclass(frozen=True)
class SensorReading:
    """SENSOR:<name>:<value>"""
    slot_name: str
    value: int


@dataclass(frozen=True)
class PingAck:
    """PONG:<name>"""
    slot_name: str


@dataclass(frozen=True)
class SignalStrength:
    """RSSI:<dBm>"""
    rssi: int


@dataclass(frozen=True)
class Unrecognized:
    """Anything the decoder could not classify"""
    raw: str


DeviceEvent = Union[SlotOccupancy, SensorReading, PingAck, SignalStrength, Unrecognized]
