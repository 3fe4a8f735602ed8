# parksense_gateway/processors/command_encoder.py
"""
Outbound commands and their wire encoding.

Every command is sent as "<TAG>[:<args>]\\n" with exactly one newline.
Arguments are validated here, before anything reaches the transport.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from ..core.errors import CommandValidationError

DISPLAY_WIDTH = 16
SERVO_MIN = 0
SERVO_MAX = 180


@dataclass(frozen=True)
class Ping:
    """Flash the slot LED"""
    slot_name: str


@dataclass(frozen=True)
class SetEnabled:
    slot_name: str
    enabled: bool


@dataclass(frozen=True)
class SetServoAngle:
    degrees: int


@dataclass(frozen=True)
class SetDisplayText:
    text: str
    max_len: int = DISPLAY_WIDTH


@dataclass(frozen=True)
class RequestSensorRead:
    slot_name: str


@dataclass(frozen=True)
class RequestDistance:
    pass


Command = Union[Ping, SetEnabled, SetServoAngle, SetDisplayText, RequestSensorRead, RequestDistance]


def _slot(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise CommandValidationError("slot name must be a non-empty string")
    name = name.strip()
    if any(ch in name for ch in (":", "\n", "\r")):
        raise CommandValidationError(f"slot name {name!r} contains a reserved character")
    return name


def fit_display(text: str, max_len: int = DISPLAY_WIDTH) -> str:
    """
    Truncate text to the display width.

    A cut that would split a word drops the partial word instead, as long as
    the visible window holds at least one space; otherwise the text is
    hard-cut at max_len.

    The Android control app hard-cuts at 16 characters without looking for
    a word boundary, so the same text can show differently on the LCD
    depending on which client sent it.
    """
    text = text.replace("\r", " ").replace("\n", " ")
    if len(text) <= max_len:
        return text

    window = text[:max_len]
    if text[max_len] == " ":
        return window
    last_space = window.rfind(" ")
    if last_space == -1:
        return window
    return window[:last_space + 1]


def _body(command: Command) -> str:
    if isinstance(command, Ping):
        return f"PING:{_slot(command.slot_name)}"

    if isinstance(command, SetEnabled):
        tag = "ENABLE" if command.enabled else "DISABLE"
        return f"{tag}:{_slot(command.slot_name)}"

    if isinstance(command, RequestSensorRead):
        return f"READ:{_slot(command.slot_name)}"

    if isinstance(command, SetServoAngle):
        degrees = command.degrees
        if isinstance(degrees, bool) or not isinstance(degrees, int):
            raise CommandValidationError(f"servo angle must be an integer, got {degrees!r}")
        if not SERVO_MIN <= degrees <= SERVO_MAX:
            raise CommandValidationError(
                f"servo angle {degrees} outside {SERVO_MIN}-{SERVO_MAX}"
            )
        return f"SERVO:{degrees}"

    if isinstance(command, SetDisplayText):
        if not isinstance(command.text, str):
            raise CommandValidationError("display text must be a string")
        if command.max_len < 1:
            raise CommandValidationError("display width must be positive")
        text = command.text.rstrip("\r\n")
        return f"LCD:{fit_display(text, command.max_len)}"

    if isinstance(command, RequestDistance):
        return "READ_DIST"

    raise CommandValidationError(f"Unsupported command: {command!r}")


def encode_text(command: Command) -> str:
    """Encode a command as a newline-terminated protocol line"""
    return _body(command).rstrip("\r\n") + "\n"


def encode(command: Command) -> bytes:
    """Encode a command into wire bytes"""
    return encode_text(command).encode("ascii", errors="replace")


def command_from_payload(payload: Dict[str, Any], slot_name: Optional[str] = None) -> Command:
    """
    Build a command from a control-UI payload.

    Slot commands ({"action": "ping"|"enable"|"disable"|"read"}) take the slot
    from the topic; device commands are {"action": "servo", "angle": 90},
    {"action": "lcd", "text": "..."} and {"action": "read_dist"}.
    """
    if not isinstance(payload, dict):
        raise CommandValidationError("command payload must be an object")

    action = str(payload.get("action", "")).strip().lower()
    slot_name = slot_name or payload.get("slot_name")

    if action == "ping":
        return Ping(_slot(slot_name))
    if action in ("enable", "disable"):
        return SetEnabled(_slot(slot_name), enabled=(action == "enable"))
    if action == "read":
        return RequestSensorRead(_slot(slot_name))
    if action == "servo":
        if "angle" not in payload:
            raise CommandValidationError("servo command requires 'angle'")
        return SetServoAngle(payload["angle"])
    if action in ("lcd", "display"):
        if "text" not in payload:
            raise CommandValidationError("lcd command requires 'text'")
        return SetDisplayText(payload["text"], int(payload.get("max_len", DISPLAY_WIDTH)))
    if action == "read_dist":
        return RequestDistance()

    raise CommandValidationError(f"Unknown action: {action or '<missing>'}")
