"""Per-dimension prefix length grouping chosen by dynamic programming."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Sequence

from .rules import FIELD_COUNT, Rule

logger = logging.getLogger(__name__)

DIM_PREFIX_LEN = (32, 32, 16, 16, 8)
CHECK_TUPLE_COST = 5
CHECK_RULE_COST = 5
_DEFAULT_STEP = 8
_MAX_ROUNDS = 100
_INITIAL_COST = 1 << 60
_LEN_BITS = 6


class CostIncreasedError(RuntimeError):
    """Raised when an optimisation round makes the total cost worse."""

    def __init__(self, cost: int, pre_cost: int) -> None:
        super().__init__(f"cost rose from {pre_cost} to {cost}")
        self.cost = cost
        self.pre_cost = pre_cost


@dataclass(frozen=True)
class DimRange:
    """An inclusive interval of prefix lengths sharing one reduced length."""

    x1: int
    x2: int


@dataclass
class DimsRange:
    """Prefix length groups for every dimension.

    ``reduced[dim][length]`` is the length a rule of that prefix length is
    truncated to in the given dimension.
    """

    dims: list[list[DimRange]] = field(default_factory=list)
    reduced: list[list[int]] = field(default_factory=list)

    @classmethod
    def default(cls) -> DimsRange:
        """Groups of eight prefix lengths in every dimension."""
        dims: list[list[DimRange]] = []
        reduced: list[list[int]] = []
        for length in DIM_PREFIX_LEN:
            ranges: list[DimRange] = []
            table = [0] * (length + 1)
            for start in range(0, length + 1, _DEFAULT_STEP):
                end = min(start + _DEFAULT_STEP, length)
                ranges.append(DimRange(start, end))
                table[start : end + 1] = [start] * (end - start + 1)
            dims.append(ranges)
            reduced.append(table)
        return cls(dims, reduced)


def format_prefix_len(prefix_len: int) -> str:
    """Render five prefix lengths packed six bits apiece."""
    lengths = [
        (prefix_len >> (_LEN_BITS * (FIELD_COUNT - 1 - i))) & 0x3F
        for i in range(FIELD_COUNT)
    ]
    return " ".join(str(length) for length in lengths)


@dataclass
class _DimRule:
    key: tuple[int, ...]
    prefix_len: tuple[int, ...]
    priority: int


class _DimOptimizer:
    def __init__(self, rules: Sequence[Rule]) -> None:
        ordered = sorted(rules, key=lambda rule: -rule.priority)
        total = len(ordered)
        self.rules = []
        for index, rule in enumerate(ordered):
            for length, limit in zip(rule.prefix_len, DIM_PREFIX_LEN):
                if not 0 <= length <= limit:
                    raise ValueError(f"prefix length {length} exceeds {limit}")
            self.rules.append(
                _DimRule(
                    key=tuple(low for low, _ in rule.ranges),
                    prefix_len=rule.prefix_len,
                    priority=total - index,
                )
            )
        self.dims_range = DimsRange.default()

    def _packed_prefix_len(self, rule: _DimRule, except_dim: int) -> int:
        packed = 0
        for dim in range(FIELD_COUNT):
            packed <<= _LEN_BITS
            if dim != except_dim:
                packed |= self.dims_range.reduced[dim][rule.prefix_len[dim]]
        return packed

    def _reduced_key(self, rule: _DimRule, dim: int, x: int) -> tuple[int, ...]:
        key = []
        for j, (value, limit) in enumerate(zip(rule.key, DIM_PREFIX_LEN)):
            if j == dim:
                shift = limit - x
            else:
                shift = limit - self.dims_range.reduced[j][rule.prefix_len[j]]
            key.append(value >> shift << shift)
        return tuple(key)

    def _costs_from(self, dim: int, x: int) -> list[int]:
        length = DIM_PREFIX_LEN[dim]
        active = [rule for rule in self.rules if rule.prefix_len[dim] >= x]

        tuple_num = [0] * (length + 1)
        best: dict[int, int] = {}
        total = 0
        for rule in sorted(active, key=lambda rule: rule.prefix_len[dim]):
            packed = self._packed_prefix_len(rule, dim)
            previous = best.get(packed, 0)
            if rule.priority > previous:
                total += rule.priority - previous
                best[packed] = rule.priority
            tuple_num[rule.prefix_len[dim]] = total
        for i in range(x + 1, length + 1):
            tuple_num[i] = max(tuple_num[i], tuple_num[i - 1])

        rule_num = [0] * (length + 1)
        groups = [Counter() for _ in range(length + 1)]
        for rule in active:
            group = (self._packed_prefix_len(rule, dim), self._reduced_key(rule, dim, x))
            for k in range(rule.prefix_len[dim], length + 1):
                groups[k][group] += 1
                rule_num[k] += groups[k][group]

        return [
            tuple_num[i] * CHECK_TUPLE_COST + rule_num[i] * CHECK_RULE_COST if i >= x else 0
            for i in range(length + 1)
        ]

    def calculate_dim_range(self, dim: int) -> int:
        length = DIM_PREFIX_LEN[dim]
        cost_sum = [[0] * (length + 1) for _ in range(length + 1)]
        for x in range(length, -1, -1):
            cost_sum[x] = self._costs_from(dim, x)

        dp = [[0] * (length + 1) for _ in range(length + 1)]
        for span in range(length + 1):
            for i in range(length + 1 - span):
                j = i + span
                best = cost_sum[i][j]
                for k in range(i, j):
                    best = min(best, dp[i][k] + dp[k + 1][j])
                dp[i][j] = best

        segments: list[DimRange] = []
        self._assign(dp, cost_sum, 0, length, dim, segments)
        self.dims_range.dims[dim] = segments
        return dp[0][length]

    def _assign(
        self,
        dp: list[list[int]],
        cost_sum: list[list[int]],
        i: int,
        j: int,
        dim: int,
        segments: list[DimRange],
    ) -> None:
        if dp[i][j] == cost_sum[i][j]:
            self.dims_range.reduced[dim][i : j + 1] = [i] * (j - i + 1)
            segments.append(DimRange(i, j))
            return
        for k in range(i, j):
            if dp[i][j] == dp[i][k] + dp[k + 1][j]:
                self._assign(dp, cost_sum, i, k, dim, segments)
                self._assign(dp, cost_sum, k + 1, j, dim, segments)
                return


def get_dim_range(rules: Sequence[Rule], prefix_dims_num: int) -> DimsRange:
    """Choose prefix length groups for the first ``prefix_dims_num`` dimensions."""
    if not rules:
        return DimsRange.default()
    if not 0 <= prefix_dims_num <= FIELD_COUNT:
        raise ValueError(f"prefix_dims_num must lie within 0..{FIELD_COUNT}")
    optimizer = _DimOptimizer(rules)
    cost = 0
    pre_cost = _INITIAL_COST
    for round_no in range(_MAX_ROUNDS):
        for dim in range(prefix_dims_num):
            cost = optimizer.calculate_dim_range(dim)
            logger.debug(
                "round %d dim %d reduced %s",
                round_no,
                dim,
                optimizer.dims_range.reduced[dim][: DIM_PREFIX_LEN[dim]],
            )
        logger.debug("pre_cost %d cost %d", pre_cost, cost)
        if cost > pre_cost:
            raise CostIncreasedError(cost, pre_cost)
        if cost > pre_cost * 0.95:
            break
        pre_cost = cost
    return optimizer.dims_range