"""Five-field rules, packet traces and port range to prefix expansion."""

from __future__ import annotations

import dataclasses
import itertools
from dataclasses import dataclass
from typing import Iterable, Sequence

FIELD_COUNT = 5
PORT_BITS = 16
_PORT_MAX = (1 << PORT_BITS) - 1


@dataclass(frozen=True)
class Rule:
    """A classification rule.

    ``ranges`` holds inclusive (low, high) bounds for source IP, destination
    IP, source port, destination port and protocol; ``prefix_len`` holds the
    prefix length of each field.
    """

    ranges: tuple[tuple[int, int], ...]
    prefix_len: tuple[int, ...]
    priority: int

    def __post_init__(self) -> None:
        ranges = tuple((int(low), int(high)) for low, high in self.ranges)
        prefix_len = tuple(int(length) for length in self.prefix_len)
        if len(ranges) != FIELD_COUNT or len(prefix_len) != FIELD_COUNT:
            raise ValueError(f"a rule needs {FIELD_COUNT} ranges and prefix lengths")
        object.__setattr__(self, "ranges", ranges)
        object.__setattr__(self, "prefix_len", prefix_len)

    def matches(self, trace: Trace) -> bool:
        """Whether every field of the trace lies within the rule's ranges."""
        return all(low <= key <= high for (low, high), key in zip(self.ranges, trace.key))


@dataclass(frozen=True)
class Trace:
    """A packet header: source IP, destination IP, ports and protocol."""

    key: tuple[int, ...]

    def __post_init__(self) -> None:
        key = tuple(int(value) for value in self.key)
        if len(key) != FIELD_COUNT:
            raise ValueError(f"a trace needs {FIELD_COUNT} fields")
        object.__setattr__(self, "key", key)


@dataclass(frozen=True)
class PrefixRange:
    """An aligned port block and its prefix length."""

    low: int
    high: int
    prefix_len: int


def port_mask(port_start: int, port_end: int) -> list[PrefixRange]:
    """Split an inclusive port range into the fewest aligned prefix blocks."""
    if not (0 <= port_start <= _PORT_MAX and 0 <= port_end <= _PORT_MAX):
        raise ValueError("ports must lie within 0..65535")
    prefixes: list[PrefixRange] = []
    pos = port_start
    while pos <= port_end:
        width = 0
        for bits in range(1, PORT_BITS + 1):
            end = pos + (1 << bits) - 1
            if end > port_end or (pos >> bits) != (end >> bits):
                break
            width = bits
        span = (1 << width) - 1
        prefixes.append(PrefixRange(pos, pos + span, PORT_BITS - width))
        pos += span + 1
    return prefixes


def rules_port_prefix(rules: Iterable[Rule]) -> list[Rule]:
    """Expand each rule into rules whose port ranges are prefix blocks."""
    expanded: list[Rule] = []
    for rule in rules:
        src_blocks = port_mask(*rule.ranges[2])
        dst_blocks = port_mask(*rule.ranges[3])
        for src, dst in itertools.product(src_blocks, dst_blocks):
            ranges: Sequence[tuple[int, int]] = (
                rule.ranges[0],
                rule.ranges[1],
                (src.low, src.high),
                (dst.low, dst.high),
                rule.ranges[4],
            )
            prefix_len = (
                rule.prefix_len[0],
                rule.prefix_len[1],
                src.prefix_len,
                dst.prefix_len,
                rule.prefix_len[4],
            )
            expanded.append(
                dataclasses.replace(rule, ranges=tuple(ranges), prefix_len=prefix_len)
            )
    return expanded