"""
Laburandik Seller Ops - Scan Utilities
======================================
Barcode normalization, repeat-scan suppression and attribute helpers for
the warehouse scanner.
"""

import json
import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional

from exceptions import ValidationError

SIZE_ATTRIBUTE_NAMES = ("SIZE", "TALLE", "Talle", "Size")
COLOR_ATTRIBUTE_NAMES = ("COLOR", "Color", "Colour", "COLOUR")

# Handset feedback patterns (milliseconds on/off) returned to the client.
VIBRATION_PATTERNS = {
    "scan": [50],
    "success": [100, 50, 100],
    "error": [200, 100, 200, 100, 200],
    "click": [25],
}


def normalize_scan(raw: Optional[str]) -> str:
    """
    Reduce a raw scanner payload to a shipment id.

    Shipping-label QR codes carry a JSON object such as
    {"id": "41234567890", "t": "lm"}; plain barcodes are used as-is.
    """
    if raw is None:
        raise ValidationError("Empty scan", field="code")

    cleaned = "".join(ch for ch in raw if ch.isprintable()).strip()
    if cleaned.startswith("{"):
        try:
            payload = json.loads(cleaned)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict) and payload.get("id") is not None:
            cleaned = str(payload["id"]).strip()

    if not cleaned:
        raise ValidationError("Empty scan", field="code")
    return cleaned


class ScanDebouncer:
    """
    Suppress repeated scans of the same code by the same user.

    A camera keeps decoding the label while it stays in frame; only the
    first read inside the window is accepted.
    """

    def __init__(
        self,
        window_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 10000,
    ):
        self.window_seconds = window_seconds
        self._clock = clock
        self._max_entries = max_entries
        self._last_seen: Dict[tuple, float] = {}
        self._lock = threading.Lock()

    def accept(self, user_id: Optional[str], code: str) -> bool:
        now = self._clock()
        key = (user_id or "", code)
        with self._lock:
            last = self._last_seen.get(key)
            if last is not None and now - last < self.window_seconds:
                return False
            self._last_seen[key] = now
            if len(self._last_seen) > self._max_entries:
                self._prune(now)
        return True

    def _prune(self, now: float) -> None:
        self._last_seen = {
            k: t for k, t in self._last_seen.items() if now - t < self.window_seconds
        }

    def reset(self) -> None:
        with self._lock:
            self._last_seen.clear()


def format_variation_attributes(attributes: Any) -> str:
    """'Color: Rojo, Talle: M' from an attribute mapping or list."""
    if not attributes:
        return ""

    if isinstance(attributes, dict):
        entries = attributes.items()
    elif isinstance(attributes, list):
        entries = ((a.get("id") or a.get("name") or str(i), a) for i, a in enumerate(attributes)
                   if isinstance(a, dict))
    else:
        return ""

    parts = []
    for key, value in entries:
        if isinstance(value, dict) and value.get("value_name"):
            parts.append(f"{value.get('name') or key}: {value['value_name']}")
        else:
            parts.append(f"{key}: {value}")
    return ", ".join(parts)


def find_attribute(attributes: Any, names: Iterable[str]) -> Optional[str]:
    """value_name of the first attribute whose id or name is in `names`."""
    if not attributes:
        return None
    wanted = set(names)

    if isinstance(attributes, list):
        candidates = attributes
    elif isinstance(attributes, dict):
        candidates = list(attributes.values())
    else:
        return None

    for attr in candidates:
        if not isinstance(attr, dict):
            continue
        if (attr.get("id") in wanted or attr.get("name") in wanted) and attr.get("value_name"):
            return attr["value_name"]
    return None
