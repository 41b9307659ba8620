"""Choosing tuple ranges over (source, destination) prefix lengths."""

from __future__ import annotations

from typing import Iterable, Sequence

from .rules import Rule
from .tuple_costs import (
    IP_BITS,
    PrefixRule,
    SplitType,
    TupleCost,
    TupleCostTable,
    TupleRange,
)

DEFAULT_STEP = 8
_SIZE = IP_BITS + 1


def tuple_range_step(step: int) -> list[TupleRange]:
    """Cover all prefix length pairs with square blocks ``step`` lengths wide."""
    if step < 1:
        raise ValueError("step must be positive")
    return [
        TupleRange(x1, y1, min(x1 + step - 1, IP_BITS), min(y1 + step - 1, IP_BITS))
        for x1 in range(0, _SIZE, step)
        for y1 in range(0, _SIZE, step)
    ]


def _copy(target: TupleCost, source: TupleCost) -> None:
    target.cost = source.cost
    target.split_type = source.split_type
    target.split_prefix_len = source.split_prefix_len


def _entries(table: TupleCostTable) -> list[list[list[list[TupleCost]]]]:
    grids: list[list[list[list[TupleCost]]]] = []
    for x1 in range(_SIZE):
        row = []
        for y1 in range(_SIZE):
            grid: list[list] = [[None] * _SIZE for _ in range(_SIZE)]
            for x2 in range(x1, _SIZE):
                column = grid[x2]
                for y2 in range(y1, _SIZE):
                    column[y2] = table.cost(x1, y1, x2, y2)
            row.append(grid)
        grids.append(row)
    return grids


def optimize(table: TupleCostTable) -> None:
    """Replace each region's cost with its cheapest split into tuples.

    The table must have been calculated; its entries are updated in place.
    """
    c = _entries(table)
    for x1 in range(IP_BITS, -1, -1):
        for y1 in range(IP_BITS, -1, -1):
            here = c[x1][y1]
            for x2 in range(x1, _SIZE):
                for y2 in range(y1, _SIZE):
                    entry = here[x2][y2]
                    if entry.cost == 0:
                        continue
                    if c[x2][y1][x2][y2].cost == 0:
                        _copy(entry, here[x2 - 1][y2])
                        continue
                    if c[x1][y2][x2][y2].cost == 0:
                        _copy(entry, here[x2][y2 - 1])
                        continue
                    if here[x1][y2].cost == 0:
                        rest = c[x1 + 1][y1]
                        if rest[x1 + 1][y2].cost != 0:
                            entry.cost = rest[x2][y2].cost
                            entry.split_type = SplitType.SRC
                            entry.split_prefix_len = x1
                        else:
                            _copy(entry, rest[x2][y2])
                        continue
                    if here[x2][y1].cost == 0:
                        rest = c[x1][y1 + 1]
                        if rest[x2][y1 + 1].cost != 0:
                            entry.cost = rest[x2][y2].cost
                            entry.split_type = SplitType.DST
                            entry.split_prefix_len = y1
                        else:
                            _copy(entry, rest[x2][y2])
                        continue

                    for x in range(x1, x2):
                        new_cost = here[x][y2].cost + c[x + 1][y1][x2][y2].cost
                        if new_cost < entry.cost:
                            entry.cost = new_cost
                            entry.split_type = SplitType.SRC
                            entry.split_prefix_len = x
                    for y in range(y1, y2):
                        new_cost = here[x2][y].cost + c[x1][y + 1][x2][y2].cost
                        if new_cost < entry.cost:
                            entry.cost = new_cost
                            entry.split_type = SplitType.DST
                            entry.split_prefix_len = y


def _collect(
    table: TupleCostTable, x1: int, y1: int, x2: int, y2: int, out: list[TupleRange]
) -> None:
    entry = table.cost(x1, y1, x2, y2)
    if entry.split_type is SplitType.SELF:
        out.append(TupleRange(x1, y1, x2, y2))
    elif entry.split_type is SplitType.SRC:
        x = entry.split_prefix_len
        _collect(table, x1, y1, x, y2, out)
        _collect(table, x + 1, y1, x2, y2, out)
    else:
        y = entry.split_prefix_len
        _collect(table, x1, y1, x2, y, out)
        _collect(table, x1, y + 1, x2, y2, out)


def extract_ranges(
    table: TupleCostTable,
    x1: int = 0,
    y1: int = 0,
    x2: int = IP_BITS,
    y2: int = IP_BITS,
) -> list[TupleRange]:
    """The tuple ranges recorded by the splits of a region."""
    ranges: list[TupleRange] = []
    _collect(table, x1, y1, x2, y2, ranges)
    return ranges


def dynamic_tuple_ranges(
    rules: Iterable[Rule], pre_tuple_ranges: Sequence[TupleRange] = ()
) -> list[TupleRange]:
    """Partition the prefix length plane into tuples that suit ``rules``.

    ``pre_tuple_ranges`` are the ranges in use so far; they are favoured
    slightly so that a rebuild changes as little as it can.
    """
    rules = list(rules)
    if not rules:
        return tuple_range_step(DEFAULT_STEP)
    table = TupleCostTable(
        (PrefixRule.from_rule(rule) for rule in rules), pre_tuple_ranges
    )
    table.calculate(True)
    table.reduce_pre_tuple_ranges()
    optimize(table)
    return extract_ranges(table, 0, 0, IP_BITS, IP_BITS)


def format_tuple_ranges(tuple_ranges: Sequence[TupleRange]) -> str:
    """The number of ranges followed by one ``x1 y1 x2 y2`` line each."""
    lines = [str(len(tuple_ranges))]
    lines.extend(f"{r.x1} {r.y1} {r.x2} {r.y2}" for r in tuple_ranges)
    return "\n".join(lines) + "\n"