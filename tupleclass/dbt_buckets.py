"""Buckets, prefix tuples and port nodes of the decision-bit table."""

from __future__ import annotations

import bisect
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

from .dbt_selection import BitSelector
from .dbt_types import IP_BITS, NO_MATCH, DbtParams, DbtRule, prefix_mask
from .hashing import pext
from .tuple_costs import TupleCostTable, TupleRange
from .tuple_ranges import DEFAULT_STEP, extract_ranges, optimize, tuple_range_step

INITIAL_CAPACITY = 8
LOAD_FACTOR = 0.75
_SIZE = IP_BITS + 1


def _priority(rule: DbtRule) -> int:
    return rule.priority


def _insort(rules: list[DbtRule], rule: DbtRule) -> None:
    """Insert keeping ascending priority, after rules of equal priority."""
    bisect.insort(rules, rule, key=_priority)


def _head(rules: list[DbtRule]) -> int:
    return rules[0].priority if rules else NO_MATCH


def _exact(bounds: tuple[int, int]) -> bool:
    return bounds[0] == bounds[1]


@dataclass
class PortBucket:
    """Rules sharing the selected bits of one port, sorted by priority."""

    rules: list[DbtRule] = field(default_factory=list)

    @property
    def pri(self) -> int:
        """Best (smallest) priority held, or NO_MATCH when empty."""
        return _head(self.rules)


@dataclass
class PortNode:
    """Rules with an exact port, bucketed by chosen bits of that port."""

    kind: int
    mask: int
    buckets: list[PortBucket]

    @classmethod
    def build(
        cls,
        rules: Iterable[DbtRule],
        kind: int,
        params: Optional[DbtParams] = None,
    ) -> PortNode:
        """Select port bits for ``rules`` and distribute them into buckets."""
        params = params if params is not None else DbtParams()
        ordered = sorted(rules, key=_priority)
        mask = BitSelector(ordered, params.port_threshold, params).port_mask(kind)
        node = cls(kind, mask, [PortBucket() for _ in range(1 << mask.bit_count())])
        for rule in ordered:
            _insort(node.holder(rule), rule)
        return node

    @property
    def pri(self) -> int:
        """Best priority over all buckets."""
        return min((bucket.pri for bucket in self.buckets), default=NO_MATCH)

    def bucket_for(self, port: int) -> PortBucket:
        """The bucket a port value selects."""
        return self.buckets[pext(port, self.mask)]

    def holder(self, rule: DbtRule) -> list[DbtRule]:
        """The rule list a rule belongs in."""
        return self.bucket_for(rule.ports[self.kind][0]).rules

    def iter_rules(self) -> Iterator[DbtRule]:
        """Every rule in bucket order."""
        for bucket in self.buckets:
            yield from bucket.rules


@dataclass
class PrefixTuple:
    """Rules whose addresses agree on a tuple's prefix bits."""

    prefix: int
    rules: list[DbtRule] = field(default_factory=list)
    port_nodes: list[Optional[PortNode]] = field(default_factory=lambda: [None, None])

    @property
    def pri(self) -> int:
        """Best priority over the rule list and the port nodes."""
        return min(
            [_head(self.rules)]
            + [node.pri for node in self.port_nodes if node is not None]
        )

    def holder(self, rule: DbtRule) -> list[DbtRule]:
        """The list a rule goes to: a port bucket when its port is exact."""
        src_node, dst_node = self.port_nodes
        if dst_node is not None and _exact(rule.dst_port):
            return dst_node.holder(rule)
        if src_node is not None and _exact(rule.src_port):
            return src_node.holder(rule)
        return self.rules

    def add(self, rule: DbtRule) -> None:
        """Store a rule where lookups will look for it."""
        _insort(self.holder(rule), rule)

    def split_ports(self, params: Optional[DbtParams] = None) -> None:
        """Move rules with an exact destination or source port into port nodes."""
        groups: tuple[list[DbtRule], list[DbtRule]] = ([], [])
        rest: list[DbtRule] = []
        for rule in self.rules:
            if _exact(rule.dst_port):
                groups[1].append(rule)
            elif _exact(rule.src_port):
                groups[0].append(rule)
            else:
                rest.append(rule)
        self.rules = rest
        for kind, group in enumerate(groups):
            if not group:
                continue
            node = self.port_nodes[kind]
            if node is None:
                self.port_nodes[kind] = PortNode.build(group, kind, params)
            else:
                for rule in group:
                    _insort(node.holder(rule), rule)

    def iter_rules(self) -> Iterator[DbtRule]:
        """Every rule, port nodes included."""
        yield from self.rules
        for node in self.port_nodes:
            if node is not None:
                yield from node.iter_rules()


class TupleTable:
    """Prefix tuples keyed by the address bits under one prefix-length mask."""

    def __init__(self, key: int) -> None:
        self.key = key
        self.ptuples: dict[int, PrefixTuple] = {}
        self.capacity = INITIAL_CAPACITY

    @property
    def prefix_lengths(self) -> tuple[int, int]:
        """Source and destination prefix lengths of the key."""
        low = self.key & ((1 << IP_BITS) - 1)
        return low.bit_count(), (self.key >> IP_BITS).bit_count()

    @property
    def pri(self) -> int:
        """Best priority over all prefix tuples."""
        return min((pt.pri for pt in self.ptuples.values()), default=NO_MATCH)

    def insert(self, rule: DbtRule) -> PrefixTuple:
        """Add a rule to the prefix tuple of its masked addresses."""
        if len(self.ptuples) >= LOAD_FACTOR * self.capacity:
            self.capacity <<= 1
        prefix = rule.ip & self.key
        ptuple = self.ptuples.get(prefix)
        if ptuple is None:
            ptuple = PrefixTuple(prefix)
            self.ptuples[prefix] = ptuple
        ptuple.add(rule)
        return ptuple

    def find(self, prefix: int) -> Optional[PrefixTuple]:
        """The prefix tuple stored under ``prefix``, or None."""
        return self.ptuples.get(prefix)

    def iter_rules(self) -> Iterator[DbtRule]:
        """Every rule of every prefix tuple."""
        for ptuple in self.ptuples.values():
            yield from ptuple.iter_rules()


def _tuple_ranges(rules: list[DbtRule]) -> list[TupleRange]:
    if not rules:
        return tuple_range_step(DEFAULT_STEP)
    table = TupleCostTable([rule.to_prefix_rule() for rule in rules])
    table.calculate(True)
    table.reduce_pre_tuple_ranges()
    optimize(table)
    return extract_ranges(table, 0, 0, IP_BITS, IP_BITS)


class IpNode:
    """Rules sharing the decision bits of their addresses.

    A node holds a sorted rule list until it grows large; then its rules move
    into tuple tables grouped by ranges of prefix lengths.
    """

    def __init__(self) -> None:
        self.rules: list[DbtRule] = []
        self.tables: dict[int, TupleTable] = {}
        self.prefix_down: Optional[list[list[tuple[int, int]]]] = None

    @property
    def pri(self) -> int:
        """Best priority held anywhere in the node."""
        return min(
            [_head(self.rules)] + [table.pri for table in self.tables.values()]
        )

    def key_for(self, rule: DbtRule) -> Optional[int]:
        """The tuple key of a rule, or None before tuples are built."""
        if self.prefix_down is None:
            return None
        x, y = self.prefix_down[rule.src_len][rule.dst_len]
        return prefix_mask(x) | (prefix_mask(y) << IP_BITS)

    def add(self, rule: DbtRule) -> None:
        """Store a rule in its tuple table, or in the rule list if it has none."""
        key = self.key_for(rule)
        table = self.tables.get(key) if key is not None else None
        if table is None:
            _insort(self.rules, rule)
        else:
            table.insert(rule)

    def build_tuples(self, params: Optional[DbtParams] = None) -> list[TupleRange]:
        """Move the rule list into tuple tables; returns the ranges used."""
        if self.prefix_down is not None:
            raise RuntimeError("tuples of this node are already built")
        params = params if params is not None else DbtParams()
        ranges = _tuple_ranges(self.rules)
        grid = [[(0, 0)] * _SIZE for _ in range(_SIZE)]
        for r in ranges:
            for x in range(r.x1, r.x2 + 1):
                for y in range(r.y1, r.y2 + 1):
                    grid[x][y] = (r.x1, r.y1)
        self.prefix_down = grid

        pending, self.rules = self.rules, []
        for rule in pending:
            key = self.key_for(rule)
            assert key is not None
            table = self.tables.get(key)
            if table is None:
                table = TupleTable(key)
                self.tables[key] = table
            table.insert(rule)

        for table in self.tables.values():
            for ptuple in table.ptuples.values():
                if len(ptuple.rules) > params.ptuple_limit:
                    ptuple.split_ports(params)
        return ranges

    def iter_rules(self) -> Iterator[DbtRule]:
        """Every rule in the node."""
        yield from self.rules
        for table in self.tables.values():
            yield from table.iter_rules()