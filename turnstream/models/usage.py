"""Token usage domain model."""

from __future__ import annotations

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class Usage:
    """Token accounting reported at the end of a turn."""

    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0

    def to_dict(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "cached_input_tokens": self.cached_input_tokens,
            "output_tokens": self.output_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> Usage | None:
        if not data:
            return None
        return cls(
            input_tokens=data.get("input_tokens", 0),
            cached_input_tokens=data.get("cached_input_tokens", 0),
            output_tokens=data.get("output_tokens", 0),
        )


def _to_number(value: object) -> int | float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError:
            return None
        if not math.isfinite(parsed):
            return None
        return int(parsed) if parsed.is_integer() else parsed
    return None


def normalize_usage(value: object) -> Usage | None:
    """Coerce a loosely-typed usage record into Usage.

    Numeric strings are accepted. Returns None for non-dicts and for dicts
    carrying none of the three token fields.
    """
    if not isinstance(value, dict):
        return None

    input_tokens = _to_number(value.get("input_tokens"))
    cached_tokens = _to_number(value.get("cached_input_tokens"))
    output_tokens = _to_number(value.get("output_tokens"))

    if input_tokens is None and cached_tokens is None and output_tokens is None:
        return None

    return Usage(
        input_tokens=input_tokens or 0,
        cached_input_tokens=cached_tokens or 0,
        output_tokens=output_tokens or 0,
    )
