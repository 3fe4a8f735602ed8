# parksense_gateway/core/port_discovery.py
from dataclasses import dataclass
from typing import Tuple
import logging

logger = logging.getLogger(__name__)

BLUETOOTH_HINTS = ("rfcomm", "bluetooth", "hc-05", "hc-06", "spp")


@dataclass(frozen=True)
class PortInfo:
    """One serial port candidate"""
    device: str
    description: str
    hwid: str

    @property
    def is_bluetooth(self) -> bool:
        text = f"{self.device} {self.description} {self.hwid}".lower()
        return any(hint in text for hint in BLUETOOTH_HINTS)


class PortDiscovery:
    """
    Enumerates serial ports the sensor unit may be attached to

    Only scan() writes the port list; readers get an immutable tuple, so a
    snapshot handed out earlier never changes under its holder.
    """

    def __init__(self):
        self._ports: Tuple[PortInfo, ...] = ()

    def scan(self) -> Tuple[PortInfo, ...]:
        """Rescan the system's serial ports, Bluetooth links first"""
        import serial.tools.list_ports

        found = {}
        for port in serial.tools.list_ports.comports():
            # Same address reported twice (e.g. by two drivers) is kept once
            found.setdefault(port.device, PortInfo(
                device=port.device,
                description=port.description or "",
                hwid=port.hwid or "",
            ))

        self._ports = tuple(sorted(found.values(), key=lambda p: (not p.is_bluetooth, p.device)))
        logger.info(f"Found serial ports: {[p.device for p in self._ports]}")
        return self._ports

    def snapshot(self) -> Tuple[PortInfo, ...]:
        return self._ports

    def bluetooth_ports(self) -> Tuple[PortInfo, ...]:
        return tuple(p for p in self._ports if p.is_bluetooth)
