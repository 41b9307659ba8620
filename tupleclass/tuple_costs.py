"""Cost model for grouping (source, destination) prefix lengths into tuples."""

from __future__ import annotations

import enum
import itertools
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from .rules import Rule

logger = logging.getLogger(__name__)

IP_BITS = 32
CHECK_HASH_COST = 5
CHECK_GROUP_COST = 2
CHECK_RULE_COST = 3
UNREACHABLE_COST = 1_000_000_000
PRE_RANGE_DISCOUNT = 0.9
_SIZE = IP_BITS + 1
_GROUP_BUCKET_SIZE = 32
_GROUP_LOAD = 0.85
_IP_MASK = [((1 << i) - 1) << (IP_BITS - i) for i in range(_SIZE)]


def _check_length(length: int) -> None:
    if not 0 <= length <= IP_BITS:
        raise ValueError(f"prefix length {length} must lie within 0..{IP_BITS}")


@dataclass(frozen=True)
class TupleRange:
    """An inclusive block of source lengths x1..x2 and destination lengths y1..y2."""

    x1: int
    y1: int
    x2: int
    y2: int

    def __post_init__(self) -> None:
        for value in (self.x1, self.y1, self.x2, self.y2):
            _check_length(value)
        if self.x1 > self.x2 or self.y1 > self.y2:
            raise ValueError("a tuple range needs x1 <= x2 and y1 <= y2")


class SplitType(enum.Enum):
    """How a region is covered: as one tuple or split on one dimension."""

    SELF = 0
    SRC = 1
    DST = 2


@dataclass(slots=True)
class TupleCost:
    """Cost of a region and the split that achieves it."""

    cost: int = 0
    split_type: SplitType = SplitType.SELF
    split_prefix_len: int = 0


@dataclass(frozen=True)
class PrefixRule:
    """Address part of a rule; a larger priority means more important."""

    src_dst_ip: int
    src_prefix_len: int
    dst_prefix_len: int
    priority: int

    @classmethod
    def from_rule(cls, rule: Rule) -> PrefixRule:
        """Take the source and destination prefixes of a five-field rule."""
        return cls(
            src_dst_ip=(rule.ranges[0][0] << 32) | rule.ranges[1][0],
            src_prefix_len=rule.prefix_len[0],
            dst_prefix_len=rule.prefix_len[1],
            priority=rule.priority,
        )


@dataclass(slots=True)
class _RankedRule:
    src_dst_ip: int
    src_prefix_len: int
    dst_prefix_len: int
    priority: int
    reduced: int = 0
    check_num: int = 0
    first: bool = False


def _grid(value=0) -> list[list]:
    return [[value] * _SIZE for _ in range(_SIZE)]


class TupleCostTable:
    """Lookup cost of every rectangle of prefix lengths as a single tuple."""

    def __init__(
        self, rules: Iterable[PrefixRule], pre_tuple_ranges: Sequence[TupleRange] = ()
    ) -> None:
        ordered = sorted(rules, key=lambda rule: -rule.priority)
        total = len(ordered)
        self._rules: list[_RankedRule] = []
        for index, rule in enumerate(ordered):
            _check_length(rule.src_prefix_len)
            _check_length(rule.dst_prefix_len)
            self._rules.append(
                _RankedRule(
                    rule.src_dst_ip, rule.src_prefix_len, rule.dst_prefix_len, total - index
                )
            )
        self.pre_tuple_ranges = tuple(pre_tuple_ranges)

        self._ip_num = _grid()
        self._max_priority = _grid()
        for rule in self._rules:
            x, y = rule.src_prefix_len, rule.dst_prefix_len
            self._ip_num[x][y] += 1
            self._max_priority[x][y] = max(self._max_priority[x][y], rule.priority)

        self._ip_num_sum = _grid()
        for x in range(_SIZE):
            for y in range(_SIZE):
                value = self._ip_num[x][y]
                if x > 0:
                    value += self._ip_num_sum[x - 1][y]
                if y > 0:
                    value += self._ip_num_sum[x][y - 1]
                if x > 0 and y > 0:
                    value -= self._ip_num_sum[x - 1][y - 1]
                self._ip_num_sum[x][y] = value

        self._pre_prefix = {(r.x1, r.y1) for r in self.pre_tuple_ranges}
        self._entries: list[list[Optional[list[list[Optional[TupleCost]]]]]] = _grid(None)

        if logger.isEnabledFor(logging.DEBUG):
            rows = (
                " ".join(str(self._ip_num[x][y]) for x in range(_SIZE))
                for y in range(IP_BITS, -1, -1)
            )
            logger.debug("rules per prefix length pair:\n%s", "\n".join(rows))

    @staticmethod
    def _check_region(x1: int, y1: int, x2: int, y2: int) -> None:
        for value in (x1, y1, x2, y2):
            _check_length(value)
        if x1 > x2 or y1 > y2:
            raise ValueError("a region needs x1 <= x2 and y1 <= y2")

    def _sum(self, x1: int, y1: int, x2: int, y2: int) -> int:
        table = self._ip_num_sum
        total = table[x2][y2]
        if x1 > 0:
            total -= table[x1 - 1][y2]
        if y1 > 0:
            total -= table[x2][y1 - 1]
        if x1 > 0 and y1 > 0:
            total += table[x1 - 1][y1 - 1]
        return total

    def ip_num_sum(self, x1: int, y1: int, x2: int, y2: int) -> int:
        """Number of rules whose prefix lengths fall in the region."""
        self._check_region(x1, y1, x2, y2)
        return self._sum(x1, y1, x2, y2)

    def _calculate_xy(self, x1: int, y1: int, accelerate: bool) -> None:
        grid: list[list[Optional[TupleCost]]] = _grid(None)
        if accelerate and (
            self._sum(x1, y1, x1, IP_BITS) == 0 or self._sum(x1, y1, IP_BITS, y1) == 0
        ):
            for x2 in range(x1, _SIZE):
                for y2 in range(y1, _SIZE):
                    empty = self._sum(x1, y1, x2, y2) == 0
                    grid[x2][y2] = TupleCost(0 if empty else UNREACHABLE_COST)
            self._entries[x1][y1] = grid
            return

        pair_mask = (_IP_MASK[x1] << 32) | _IP_MASK[y1]
        rules = self._rules
        for rule in rules:
            rule.reduced = rule.src_dst_ip & pair_mask
        rules.sort(key=lambda rule: (rule.reduced, -rule.priority))

        check_tuple = _grid()
        for x in range(x1, _SIZE):
            for y in range(y1, _SIZE):
                best = self._max_priority[x][y]
                if x > x1:
                    best = max(best, check_tuple[x - 1][y])
                if y > y1:
                    best = max(best, check_tuple[x][y - 1])
                check_tuple[x][y] = best

        for _, run in itertools.groupby(rules, key=lambda rule: rule.reduced):
            members = list(run)
            for position, rule in enumerate(members):
                rule.check_num = len(members) - position
                rule.first = position == 0

        group_vis = _grid()
        contain = _grid()
        match = _grid()
        collide = _grid()
        check_rule = _grid()
        group_num = 0
        for rule in rules:
            if rule.first:
                group_num += 1
            px, py = rule.src_prefix_len, rule.dst_prefix_len
            if px < x1 or py < y1:
                continue
            for x in range(px, _SIZE):
                if group_vis[x][y1] == group_num:
                    break
                column = group_vis[x]
                for y in range(py, _SIZE):
                    if column[y] == group_num:
                        break
                    column[y] = group_num
                    contain[x][y] += 1
                    match[x][y] += rule.check_num
                    collide[x][y] += rule.priority - rule.check_num
            check_rule[px][py] += rule.check_num

        for x in range(x1, _SIZE):
            for y in range(y1, _SIZE):
                if x > x1:
                    check_rule[x][y] += check_rule[x - 1][y]
                if y > y1:
                    check_rule[x][y] += check_rule[x][y - 1]
                if x > x1 and y > y1:
                    check_rule[x][y] -= check_rule[x - 1][y - 1]

        for x2 in range(x1, _SIZE):
            for y2 in range(y1, _SIZE):
                bucket_size = _GROUP_BUCKET_SIZE
                while bucket_size * _GROUP_LOAD <= contain[x2][y2]:
                    bucket_size <<= 1
                collisions = collide[x2][y2] / bucket_size
                cost = (
                    check_tuple[x2][y2] * CHECK_HASH_COST
                    + (match[x2][y2] + collisions) * CHECK_GROUP_COST
                    + check_rule[x2][y2] * CHECK_RULE_COST
                )
                grid[x2][y2] = TupleCost(int(cost))
        self._entries[x1][y1] = grid

    def calculate(self, accelerate: bool = True) -> None:
        """Compute the cost of every region.

        With ``accelerate``, regions whose first row or column holds no rules
        get cost 0 when empty and an unreachable cost otherwise, unless they
        start at a previous tuple range.
        """
        for x1 in range(IP_BITS, -1, -1):
            for y1 in range(IP_BITS, -1, -1):
                self._calculate_xy(
                    x1, y1, accelerate and (x1, y1) not in self._pre_prefix
                )

    def reduce_pre_tuple_ranges(self) -> None:
        """Make previously used tuple ranges slightly cheaper to keep them stable."""
        for tuple_range in self.pre_tuple_ranges:
            entry = self.cost(tuple_range.x1, tuple_range.y1, tuple_range.x2, tuple_range.y2)
            entry.cost = int(entry.cost * PRE_RANGE_DISCOUNT)

    def cost(self, x1: int, y1: int, x2: int, y2: int) -> TupleCost:
        """The (mutable) cost entry of a region."""
        self._check_region(x1, y1, x2, y2)
        grid = self._entries[x1][y1]
        if grid is None:
            raise LookupError(f"costs from ({x1}, {y1}) have not been calculated")
        entry = grid[x2][y2]
        assert entry is not None
        return entry