"""Dynamic tuple space classifier over five-field rules."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from .hashing import hash16
from .hashtable import RuleNotFoundError, TableStats, Tuple
from .rules import Rule, Trace
from .tuple_costs import IP_BITS, TupleRange
from .tuple_ranges import DEFAULT_STEP, dynamic_tuple_ranges, tuple_range_step

logger = logging.getLogger(__name__)

_SIZE = IP_BITS + 1
# Rough footprints used for memory estimates.
_BASE_BYTES = 8960
_POINTER_BYTES = 8
_MAP_ENTRY_BYTES = 64


@dataclass
class AccessStats:
    """Counts of structures visited by one lookup."""

    tuples: int = 0
    tables: int = 0
    nodes: int = 0
    rules: int = 0
    low_priority_matching_access: int = 0
    high_priority_matching_access: int = 0
    low_priority_collision_access: int = 0
    high_priority_collision_access: int = 0
    low_priority_rule_access: int = 0
    high_priority_rule_access: int = 0


def _scan(
    rules: Sequence[Rule],
    trace: Trace,
    priority: int,
    stats: Optional[AccessStats] = None,
    ans_rule: Optional[Rule] = None,
) -> int:
    for rule in rules:
        if priority >= rule.priority:
            break
        if stats is not None:
            stats.rules += 1
            if ans_rule is not None:
                if ans_rule.priority <= rule.priority:
                    stats.low_priority_rule_access += 1
                else:
                    stats.high_priority_rule_access += 1
        if rule.matches(trace):
            return rule.priority
    return priority


class DynamicTuple:
    """Tuple space search whose tuples group ranges of prefix lengths."""

    def __init__(self, use_port_hash_table: bool = True) -> None:
        self.use_port_hash_table = use_port_hash_table
        self.dt_time = 0.0
        self._lock = threading.RLock()
        self._set_ranges(tuple_range_step(DEFAULT_STEP))
        self._clear()

    def _clear(self) -> None:
        self.tuples: list[Tuple] = []
        self._tuples_map: dict[tuple[int, int], Tuple] = {}
        self.rules_num = 0
        self.max_priority = 0

    def _set_ranges(self, ranges: Sequence[TupleRange]) -> None:
        self.tuple_ranges = list(ranges)
        self._prefix_down = [[(0, 0)] * _SIZE for _ in range(_SIZE)]
        for r in self.tuple_ranges:
            for x in range(r.x1, r.x2 + 1):
                row = self._prefix_down[x]
                for y in range(r.y1, r.y2 + 1):
                    row[y] = (r.x1, r.y1)

    def _tuple_key(self, rule: Rule) -> tuple[int, int]:
        src, dst = rule.prefix_len[0], rule.prefix_len[1]
        if not (0 <= src <= IP_BITS and 0 <= dst <= IP_BITS):
            raise ValueError(f"prefix lengths must lie within 0..{IP_BITS}")
        return self._prefix_down[src][dst]

    def _sort_tuples(self) -> None:
        self.tuples.sort(key=lambda t: -t.max_priority)

    def create(self, rules: Iterable[Rule], insert: bool = True) -> None:
        """Choose tuple ranges for ``rules`` and optionally insert them."""
        rules = list(rules)
        with self._lock:
            start = time.perf_counter()
            ranges = dynamic_tuple_ranges(rules)
            self.dt_time = time.perf_counter() - start
            self._set_ranges(ranges)
            self._clear()
            if insert:
                for rule in rules:
                    self.insert_rule(rule)

    def insert_rule(self, rule: Rule) -> None:
        """Add a rule to the tuple its prefix lengths map to."""
        with self._lock:
            prefix_pair = self._tuple_key(rule)
            tuple_ = self._tuples_map.get(prefix_pair)
            if tuple_ is None:
                tuple_ = Tuple(prefix_pair[0], prefix_pair[1], self.use_port_hash_table)
                self.tuples.append(tuple_)
                self._tuples_map[prefix_pair] = tuple_
            tuple_.insert_rule(rule)
            self.rules_num += 1
            if rule.priority == tuple_.max_priority:
                self._sort_tuples()
            self.max_priority = max(self.max_priority, rule.priority)

    def delete_rule(self, rule: Rule) -> None:
        """Remove a rule; raise RuleNotFoundError when it is not stored."""
        with self._lock:
            prefix_pair = self._tuple_key(rule)
            tuple_ = self._tuples_map.get(prefix_pair)
            if tuple_ is None:
                raise RuleNotFoundError("no tuple holds the rule")
            tuple_.delete_rule(rule)
            self.rules_num -= 1
            if tuple_.rules_num == 0:
                self.tuples.remove(tuple_)
                del self._tuples_map[prefix_pair]
            elif rule.priority > tuple_.max_priority:
                self._sort_tuples()
            if rule.priority == self.max_priority:
                self.max_priority = self.tuples[0].max_priority if self.tuples else 0

    def lookup(self, trace: Trace, priority: int = 0) -> int:
        """The priority of the best rule matching ``trace``, or ``priority``."""
        for tuple_ in self.tuples:
            if priority >= tuple_.max_priority:
                break
            key, hash_value = tuple_.key_for(trace.key[0], trace.key[1])
            node = tuple_.hash_table.find(key, hash_value)
            if node is None or priority >= node.max_priority:
                continue
            if node.has_port_hash_table:
                for slot, table in enumerate(node.port_hash_table):
                    if table is None or priority >= table.max_priority:
                        continue
                    port = trace.key[slot + 2]
                    port_node = table.find(port, hash16(port))
                    if port_node is not None and priority < port_node.max_priority:
                        priority = _scan(port_node.rule_list, trace, priority)
            priority = _scan(node.rule_list, trace, priority)
        return priority

    def lookup_access(
        self, trace: Trace, priority: int = 0, ans_rule: Optional[Rule] = None
    ) -> tuple[int, AccessStats]:
        """Look up ``trace`` and count the structures visited on the way."""
        stats = AccessStats()
        for tuple_ in self.tuples:
            if priority >= tuple_.max_priority:
                break
            stats.tuples += 1
            key, hash_value = tuple_.key_for(trace.key[0], trace.key[1])
            stats.tables += 1
            table = tuple_.hash_table
            for node in table.buckets[hash_value & table.mask]:
                if priority >= node.max_priority:
                    break
                stats.nodes += 1
                if ans_rule is not None:
                    low = ans_rule.priority <= node.max_priority
                    if node.key == key:
                        if low:
                            stats.low_priority_matching_access += 1
                        else:
                            stats.high_priority_matching_access += 1
                    elif low:
                        stats.low_priority_collision_access += 1
                    else:
                        stats.high_priority_collision_access += 1
                if node.key != key:
                    continue
                if node.has_port_hash_table:
                    for slot, port_table in enumerate(node.port_hash_table):
                        if port_table is None or priority >= port_table.max_priority:
                            continue
                        stats.tables += 1
                        port = trace.key[slot + 2]
                        chain = port_table.buckets[hash16(port) & port_table.mask]
                        for port_node in chain:
                            if priority >= port_node.max_priority:
                                break
                            stats.nodes += 1
                            if port_node.key == port:
                                priority = _scan(port_node.rule_list, trace, priority, stats)
                                break
                priority = _scan(node.rule_list, trace, priority, stats, ans_rule)
                break
        return priority, stats

    def reconstruct(self) -> int:
        """Recompute tuple ranges and rebuild the tuples whose range changed.

        Returns the number of tuples rebuilt.
        """
        with self._lock:
            rules = self.rules()
            old_ranges = self.tuple_ranges
            start = time.perf_counter()
            new_ranges = dynamic_tuple_ranges(rules, old_ranges)
            self.dt_time = time.perf_counter() - start
            self._set_ranges(new_ranges)

            kept_ranges = set(new_ranges)
            stale = {(r.x1, r.y1) for r in old_ranges if r not in kept_ranges}
            moved: list[Rule] = []
            kept: list[Tuple] = []
            rebuilt = 0
            for tuple_ in self.tuples:
                if tuple_.prefix_len in stale:
                    moved.extend(tuple_.rules())
                    del self._tuples_map[tuple_.prefix_len]
                    rebuilt += 1
                else:
                    kept.append(tuple_)
            self.tuples = kept
            self._sort_tuples()
            self.rules_num -= len(moved)
            self.max_priority = self.tuples[0].max_priority if self.tuples else 0
            logger.info("reconstructed %d tuples holding %d rules", rebuilt, len(moved))
            for rule in moved:
                self.insert_rule(rule)
            return rebuilt

    def memory_size(self) -> int:
        """Estimated footprint in bytes."""
        size = _BASE_BYTES + (_POINTER_BYTES + _MAP_ENTRY_BYTES) * len(self.tuples)
        return size + sum(t.memory_size() for t in self.tuples)

    def rules(self) -> list[Rule]:
        """Every stored rule."""
        return [rule for tuple_ in self.tuples for rule in tuple_.rules()]

    def calculate_state(self, stats: TableStats) -> None:
        """Add this classifier's occupancy to ``stats``."""
        stats.dt_time += self.dt_time
        stats.tuples_num = len(self.tuples)
        stats.tuples_sum += len(self.tuples)
        for tuple_ in self.tuples:
            tuple_.calculate_state(stats)