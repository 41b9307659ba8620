"""Chained hash tables of rules keyed by prefixes, with port sub-tables."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .hashing import hash16, hash32_2
from .rules import Rule

HASH_TABLE_MAX = 0.85
HASH_TABLE_MIN = 0.2
INITIAL_SIZE = 32
PORT_TABLE_THRESHOLD = 7
PORT_TABLE_COLLAPSE = 3
IP_BITS = 32

_MASK32 = 0xFFFFFFFF
# Rough per-object footprints used for memory estimates.
_POINTER_BYTES = 8
_RULE_NODE_BYTES = 48
_HASH_NODE_BYTES = 64
_HASH_TABLE_BYTES = 48
_TUPLE_BYTES = 112


class RuleNotFoundError(LookupError):
    """Raised when a rule to delete is not stored in the structure."""


@dataclass
class TableStats:
    """Counters gathered over a classifier's tuples and hash tables."""

    hash_node_num: int = 0
    bucket_sum: int = 0
    bucket_use: int = 0
    next_layer_num: int = 0
    tuples_num: int = 0
    tuples_sum: int = 0
    dt_time: float = 0.0


def _insert_by_priority(rules: list[Rule], rule: Rule) -> None:
    """Insert keeping descending priority, after rules of equal priority."""
    index = next(
        (i for i, other in enumerate(rules) if rule.priority > other.priority),
        len(rules),
    )
    rules.insert(index, rule)


class HashNode:
    """All rules sharing one hash key, optionally split by exact ports."""

    def __init__(self, key: int, hash_value: int) -> None:
        self.key = key
        self.hash_value = hash_value
        self.rules_num = 0
        self.max_priority = 0
        self.rule_list: list[Rule] = []
        self.begin_port_hash_table = False
        self.has_port_hash_table = False
        self.port_hash_table: list[Optional[HashTable]] = [None, None]

    def _update_priority(self) -> None:
        candidates = [0]
        candidates.extend(t.max_priority for t in self.port_hash_table if t is not None)
        if self.rule_list:
            candidates.append(self.rule_list[0].priority)
        self.max_priority = max(candidates)

    def insert_rule(
        self, rule: Rule, is_port_hash_table: bool, use_port_hash_table: bool
    ) -> None:
        """Add a rule, moving to port sub-tables once the node grows large."""
        self.rules_num += 1
        if self.begin_port_hash_table:
            for slot in (0, 1):
                low, high = rule.ranges[slot + 2]
                if low == high:
                    table = self.port_hash_table[slot]
                    if table is None:
                        table = HashTable(INITIAL_SIZE, True, use_port_hash_table)
                        self.port_hash_table[slot] = table
                        self.has_port_hash_table = True
                    table.insert_rule(rule, low, hash16(low))
                    self._update_priority()
                    return

        _insert_by_priority(self.rule_list, rule)
        self._update_priority()

        if (
            self.rules_num >= PORT_TABLE_THRESHOLD
            and not self.begin_port_hash_table
            and not is_port_hash_table
            and use_port_hash_table
        ):
            self.begin_port_hash_table = True
            pending = self.rule_list
            self.rule_list = []
            self.rules_num = 0
            self.max_priority = 0
            for pending_rule in pending:
                self.insert_rule(pending_rule, is_port_hash_table, use_port_hash_table)

    def delete_rule(
        self, rule: Rule, is_port_hash_table: bool, use_port_hash_table: bool
    ) -> None:
        """Remove a rule; raise RuleNotFoundError when it is not here."""
        deleted = False
        if self.begin_port_hash_table:
            for slot in (0, 1):
                low, high = rule.ranges[slot + 2]
                if low == high:
                    table = self.port_hash_table[slot]
                    if table is None:
                        raise RuleNotFoundError("no port hash table holds the rule")
                    table.delete_rule(rule, low, hash16(low))
                    self._update_priority()
                    self.rules_num -= 1
                    deleted = True
                    break

        if not deleted:
            try:
                index = self.rule_list.index(rule)
            except ValueError:
                pass
            else:
                del self.rule_list[index]
                self.rules_num -= 1
                self._update_priority()
                deleted = True

        if (
            not is_port_hash_table
            and self.begin_port_hash_table
            and self.rules_num <= PORT_TABLE_COLLAPSE
        ):
            moved: list[Rule] = []
            for slot in (0, 1):
                table = self.port_hash_table[slot]
                if table is not None:
                    moved.extend(table.rules())
                    self.port_hash_table[slot] = None
            self.begin_port_hash_table = False
            self.has_port_hash_table = False
            self.rules_num -= len(moved)
            self._update_priority()
            for moved_rule in moved:
                self.insert_rule(moved_rule, is_port_hash_table, use_port_hash_table)

        if not deleted:
            raise RuleNotFoundError("rule is not stored in this hash node")

    def rules(self) -> list[Rule]:
        """Every rule held by the node and its port sub-tables."""
        collected = list(self.rule_list)
        for table in self.port_hash_table:
            if table is not None:
                collected.extend(table.rules())
        return collected

    def memory_size(self) -> int:
        """Estimated footprint in bytes."""
        size = _HASH_NODE_BYTES + _RULE_NODE_BYTES * len(self.rule_list)
        for table in self.port_hash_table:
            if table is not None:
                size += table.memory_size()
        return size


class HashTable:
    """Separate-chaining table whose chains are sorted by node priority."""

    def __init__(
        self, size: int, is_port_hash_table: bool, use_port_hash_table: bool
    ) -> None:
        if size < 1 or size & (size - 1):
            raise ValueError("hash table size must be a positive power of two")
        self.is_port_hash_table = is_port_hash_table
        self.use_port_hash_table = use_port_hash_table
        self.max_priority = 0
        self._reset(size)

    def _reset(self, size: int) -> None:
        self.hash_node_num = 0
        self.max_hash_node_num = int(size * HASH_TABLE_MAX)
        self.min_hash_node_num = int(size * HASH_TABLE_MIN)
        self.mask = size - 1
        self.buckets: list[list[HashNode]] = [[] for _ in range(size)]

    def _insert_node(self, node: HashNode) -> None:
        if self.hash_node_num == self.max_hash_node_num:
            self._resize((self.mask + 1) << 1)
        self.hash_node_num += 1
        chain = self.buckets[node.hash_value & self.mask]
        index = next(
            (i for i, other in enumerate(chain) if node.max_priority > other.max_priority),
            len(chain),
        )
        chain.insert(index, node)

    def _resize(self, size: int) -> None:
        old_buckets = self.buckets
        self._reset(size)
        for chain in old_buckets:
            for node in chain:
                self._insert_node(node)

    def _pick(self, key: int, hash_value: int) -> Optional[HashNode]:
        chain = self.buckets[hash_value & self.mask]
        for index, node in enumerate(chain):
            if node.key == key:
                del chain[index]
                self.hash_node_num -= 1
                return node
        return None

    def find(self, key: int, hash_value: int) -> Optional[HashNode]:
        """The node stored under ``key``, or None."""
        chain = self.buckets[hash_value & self.mask]
        return next((node for node in chain if node.key == key), None)

    def insert_rule(self, rule: Rule, key: int, hash_value: int) -> None:
        """Add a rule under ``key``."""
        node = self._pick(key, hash_value)
        if node is None:
            node = HashNode(key, hash_value)
        node.insert_rule(rule, self.is_port_hash_table, self.use_port_hash_table)
        self._insert_node(node)
        if rule.priority > self.max_priority:
            self.max_priority = rule.priority

    def delete_rule(self, rule: Rule, key: int, hash_value: int) -> None:
        """Remove a rule stored under ``key``."""
        node = self._pick(key, hash_value)
        if node is None:
            raise RuleNotFoundError("no hash node for the rule's key")
        try:
            node.delete_rule(rule, self.is_port_hash_table, self.use_port_hash_table)
        finally:
            if node.rules_num > 0:
                self._insert_node(node)
        if rule.priority == self.max_priority:
            self.max_priority = max(
                [0] + [chain[0].max_priority for chain in self.buckets if chain]
            )

    def rules(self) -> list[Rule]:
        """Every rule in bucket order."""
        return [rule for chain in self.buckets for node in chain for rule in node.rules()]

    def memory_size(self) -> int:
        """Estimated footprint in bytes."""
        size = _HASH_TABLE_BYTES + _POINTER_BYTES * (self.mask + 1)
        return size + sum(node.memory_size() for chain in self.buckets for node in chain)

    def calculate_state(self, stats: TableStats) -> None:
        """Add this table's occupancy to ``stats``."""
        stats.hash_node_num += self.hash_node_num
        stats.bucket_sum += self.mask + 1
        for chain in self.buckets:
            if chain:
                stats.bucket_use += 1
            stats.next_layer_num += sum(1 for node in chain if node.has_port_hash_table)


class Tuple:
    """Rules whose addresses are truncated to one (source, destination) prefix pair."""

    def __init__(self, prefix_src: int, prefix_dst: int, use_port_hash_table: bool) -> None:
        for length in (prefix_src, prefix_dst):
            if not 0 <= length <= IP_BITS:
                raise ValueError(f"prefix length {length} must lie within 0..{IP_BITS}")
        self.prefix_len = (prefix_src, prefix_dst)
        self.prefix_len_zero = (IP_BITS - prefix_src, IP_BITS - prefix_dst)
        self.max_priority = 0
        self.rules_num = 0
        self.use_port_hash_table = use_port_hash_table
        self.hash_table = HashTable(INITIAL_SIZE, False, use_port_hash_table)

    def key_for(self, src_ip: int, dst_ip: int) -> tuple[int, int]:
        """The hash key and hash value of an address pair in this tuple."""
        src = (src_ip & _MASK32) >> self.prefix_len_zero[0]
        dst = (dst_ip & _MASK32) >> self.prefix_len_zero[1]
        return (src << 32) | dst, hash32_2(src, dst)

    def insert_rule(self, rule: Rule) -> None:
        """Add a rule keyed by its truncated addresses."""
        key, hash_value = self.key_for(rule.ranges[0][0], rule.ranges[1][0])
        self.hash_table.insert_rule(rule, key, hash_value)
        self.rules_num += 1
        self.max_priority = self.hash_table.max_priority

    def delete_rule(self, rule: Rule) -> None:
        """Remove a rule; raise RuleNotFoundError when absent."""
        key, hash_value = self.key_for(rule.ranges[0][0], rule.ranges[1][0])
        self.hash_table.delete_rule(rule, key, hash_value)
        self.rules_num -= 1
        self.max_priority = self.hash_table.max_priority

    def rules(self) -> list[Rule]:
        """Every rule in the tuple."""
        return self.hash_table.rules()

    def memory_size(self) -> int:
        """Estimated footprint in bytes."""
        return _TUPLE_BYTES + self.hash_table.memory_size() - _HASH_TABLE_BYTES

    def calculate_state(self, stats: TableStats) -> None:
        """Add this tuple's occupancy to ``stats``."""
        self.hash_table.calculate_state(stats)