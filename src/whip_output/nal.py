"""H.264 Annex-B bitstream helpers used to recover codec parameter sets."""
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Iterable, Iterator

logger = logging.getLogger(__name__)

NAL_TYPE_MASK = 0x1F
NAL_TYPE_SPS = 7
NAL_TYPE_PPS = 8

PARAMETER_SET_TYPES: frozenset[int] = frozenset({NAL_TYPE_SPS, NAL_TYPE_PPS})
"""NAL unit types carrying decoder configuration."""


@dataclass(frozen=True, slots=True)
class NalUnit:
    """A NAL unit located inside an Annex-B buffer."""

    start: int
    end: int
    data: bytes

    @property
    def nal_type(self) -> int:
        return nal_unit_type(self.data)

    @property
    def is_parameter_set(self) -> bool:
        return self.nal_type in PARAMETER_SET_TYPES


def nal_unit_type(unit: bytes) -> int:
    """Return the NAL type from the low five bits of the header byte."""

    if not unit:
        return -1
    return unit[0] & NAL_TYPE_MASK


def _find_start_code(data: bytes, offset: int) -> tuple[int, int]:
    """Return ``(index, length)`` of the next start code at or after ``offset``."""

    index = data.find(b"\x00\x00\x01", offset)
    if index < 0:
        return -1, 0
    if index > offset and data[index - 1] == 0:
        return index - 1, 4
    return index, 3


def iter_nal_ranges(data: bytes) -> Iterator[tuple[int, int]]:
    """Yield ``(start, end)`` offsets of each start-code delimited NAL unit.

    Bytes preceding the first start code are ignored, as are empty units
    between adjacent start codes. A buffer without any start code yields
    nothing.
    """

    buffer = bytes(data)
    index, length = _find_start_code(buffer, 0)
    while index >= 0:
        start = index + length
        next_index, next_length = _find_start_code(buffer, start)
        end = next_index if next_index >= 0 else len(buffer)
        if end > start:
            yield start, end
        index, length = next_index, next_length


def split_nal_units(data: bytes) -> list[NalUnit]:
    """Return every NAL unit in ``data`` in bitstream order."""

    buffer = bytes(data)
    return [NalUnit(start, end, buffer[start:end]) for start, end in iter_nal_ranges(buffer)]


def extract_parameter_sets(data: bytes | None) -> list[NalUnit]:
    """Return the SPS and PPS units of ``data`` in encounter order."""

    if not data:
        return []
    units = [unit for unit in split_nal_units(data) if unit.is_parameter_set]
    logger.debug("Found %d parameter set NAL units", len(units))
    return units


def build_sprop_parameter_sets(units: Iterable[NalUnit]) -> str:
    """Return the ``sprop-parameter-sets`` fmtp fragment for ``units``.

    Returns an empty string when no parameter sets are available.
    """

    encoded: list[str] = []
    for unit in units:
        if not unit.is_parameter_set:
            continue
        value = base64.b64encode(unit.data).decode("ascii")
        logger.debug(
            "%s base64 encoded: %s",
            "SPS" if unit.nal_type == NAL_TYPE_SPS else "PPS",
            value,
        )
        encoded.append(value)
    if not encoded:
        return ""
    return "sprop-parameter-sets=" + ",".join(encoded) + ";"


__all__ = [
    "NAL_TYPE_PPS",
    "NAL_TYPE_SPS",
    "NalUnit",
    "build_sprop_parameter_sets",
    "extract_parameter_sets",
    "iter_nal_ranges",
    "nal_unit_type",
    "split_nal_units",
]
