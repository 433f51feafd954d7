"""
Anonymous client fingerprinting.

A fingerprint is a low-entropy heuristic identity for a browser, used only to
keep anonymous daily message counts. It is not a security boundary.
"""

from dataclasses import dataclass, astuple
from typing import Optional


_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True)
class ClientAttributes:
    """Stable client attributes reported by the browser."""
    user_agent: str = ""
    language: str = ""
    screen_width: int = 0
    screen_height: int = 0
    color_depth: int = 0
    timezone_offset: int = 0  # Minutes from UTC, as reported by the browser
    hardware_concurrency: int = 0
    platform: str = ""

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ClientAttributes":
        """Build attributes from a loosely-typed payload, ignoring unknown keys."""
        data = data or {}

        def _int(name: str) -> int:
            try:
                return int(data.get(name) or 0)
            except (TypeError, ValueError):
                return 0

        return cls(
            user_agent=str(data.get("user_agent") or ""),
            language=str(data.get("language") or ""),
            screen_width=_int("screen_width"),
            screen_height=_int("screen_height"),
            color_depth=_int("color_depth"),
            timezone_offset=_int("timezone_offset"),
            hardware_concurrency=_int("hardware_concurrency"),
            platform=str(data.get("platform") or ""),
        )

    def canonical(self) -> str:
        return "|".join(str(value) for value in astuple(self))


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def _rolling_hash(text: str) -> int:
    """31-multiplier rolling hash folded to a signed 32-bit int."""
    h = 0
    for ch in text:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def identify(attributes: ClientAttributes) -> str:
    """
    Derive a deterministic fingerprint id from client attributes.

    Args:
        attributes: Client attributes.

    Returns:
        Fingerprint id such as ``"fp_1x2k9a"``.
    """
    return "fp_" + _to_base36(abs(_rolling_hash(attributes.canonical())))


def fingerprints_match(stored: str, current: str, tolerance: int = 2) -> bool:
    """
    Loosely compare two fingerprints.

    Identical ids match. Otherwise ids whose lengths differ by at most
    ``tolerance`` characters are treated as the same browser, absorbing small
    environment jitter.
    """
    if stored == current:
        return True
    if not stored or not current:
        return False
    return abs(len(stored) - len(current)) <= tolerance
