"""Value decoder — raw 16-bit register words to typed values.

All helpers are pure. A missing register (None) propagates as None instead
of being coerced to zero, so the snapshot shows "no data" rather than a
plausible-looking wrong value.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence

from register_table import MeasurementField


# ---------------------------------------------------------------------------
# Register block
# ---------------------------------------------------------------------------

class RegisterBlock:
    """Contiguous words read from `start`; get() outside the range -> None."""

    __slots__ = ("start", "words")

    def __init__(self, start: int, words: Sequence[int]):
        self.start = start
        self.words = tuple(int(w) & 0xFFFF for w in words)

    @property
    def end(self) -> int:
        return self.start + len(self.words)

    def get(self, address: int) -> int | None:
        idx = address - self.start
        if idx < 0 or idx >= len(self.words):
            return None
        return self.words[idx]

    def items(self):
        for idx, word in enumerate(self.words):
            yield self.start + idx, word

    def __len__(self) -> int:
        return len(self.words)

    def __repr__(self) -> str:
        return f"RegisterBlock(start={self.start}, count={len(self.words)})"


# ---------------------------------------------------------------------------
# Scalar conversions
# ---------------------------------------------------------------------------

def to_signed16(word: int | None) -> int | None:
    if word is None:
        return None
    val = word & 0xFFFF
    return val - 0x10000 if val >= 0x8000 else val


def to_unsigned32(hi: int | None, lo: int | None) -> int | None:
    """Big-endian word pair -> unsigned 32-bit."""
    if hi is None or lo is None:
        return None
    return ((hi & 0xFFFF) << 16) | (lo & 0xFFFF)


def round_half_up(value: float | int | Decimal, decimals: int = 0) -> Decimal:
    exp = Decimal(1).scaleb(-decimals)
    return Decimal(str(value)).quantize(exp, rounding=ROUND_HALF_UP)


def scaled_decimal(raw: int | None, divisor: float, decimals: int) -> float | None:
    """raw / divisor rounded half-up to `decimals` places.

    Done in Decimal so the same raw word always yields the same float
    (no binary drift from e.g. 501 / 10 * 10).
    """
    if raw is None:
        return None
    quotient = Decimal(raw) / Decimal(str(divisor))
    return float(round_half_up(quotient, decimals))


def format_version(raw: int | None) -> str | None:
    """2220 -> "2.2.20", 305 -> "0.3.05"."""
    if raw is None:
        return None
    digits = str(raw).zfill(4)
    return f"{digits[0]}.{digits[1]}.{digits[2:]}"


def to_hex16(word: int | None) -> str | None:
    if word is None:
        return None
    return f"0x{word & 0xFFFF:04X}"


# ---------------------------------------------------------------------------
# Field decode (table driven)
# ---------------------------------------------------------------------------

def decode_field(block: RegisterBlock, field: MeasurementField):
    value = _decode_number(block, field)
    if field.negate and value is not None:
        return -value
    return value


def _decode_number(block: RegisterBlock, field: MeasurementField):
    raw = block.get(field.register)

    if field.kind == "u16":
        return raw
    if field.kind == "s16":
        return to_signed16(raw)
    if field.kind == "u32":
        return to_unsigned32(raw, block.get(field.register + 1))
    if field.kind == "scaled":
        if field.signed:
            raw = to_signed16(raw)
        return scaled_decimal(raw, field.divisor, field.decimals)
    if field.kind == "version":
        return format_version(raw)
    if field.kind == "hex":
        return to_hex16(raw)
    raise ValueError(f"unsupported field kind: {field.kind}")


def decode_fields(block: RegisterBlock, fields: dict[str, MeasurementField]) -> dict:
    return {name: decode_field(block, field) for name, field in fields.items()}
