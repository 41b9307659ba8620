"""Lookup access counts and memory estimates of a decision-bit table."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from .dbt_buckets import PortNode, TupleTable
from .dbt_types import IP_BITS, NO_MATCH, DbtRule, Packet
from .dbtable import DBTable
from .hashing import hash32_2, pext

_MASK32 = (1 << IP_BITS) - 1
# Rough per-object footprints used for memory estimates.
_SUBSET_BYTES = 24
_IP_NODE_BYTES = 64
_TUPLE_BYTES = 32
_PREFIX_TUPLE_BYTES = 72
_PORT_NODE_BYTES = 24
_BUCKET_BYTES = 32
_PREFIX_DOWN_BYTES = (IP_BITS + 1) * (IP_BITS + 1) * 2


def _average(total: int, count: int) -> float:
    return total / count if count else 0.0


@dataclass
class AccessSummary:
    """Buckets, tuples and rules visited while classifying packets."""

    packets: int = 0
    total_buckets: int = 0
    total_tuples: int = 0
    total_rules: int = 0
    max_buckets: int = 0
    max_tuples: int = 0
    max_rules: int = 0

    @property
    def avg_buckets(self) -> float:
        """Mean buckets visited per packet."""
        return _average(self.total_buckets, self.packets)

    @property
    def avg_tuples(self) -> float:
        """Mean tuples visited per packet."""
        return _average(self.total_tuples, self.packets)

    @property
    def avg_rules(self) -> float:
        """Mean rules visited per packet."""
        return _average(self.total_rules, self.packets)

    def add(self, buckets: int, tuples: int, rules: int) -> None:
        """Record the visits of one packet."""
        self.packets += 1
        self.total_buckets += buckets
        self.total_tuples += tuples
        self.total_rules += rules
        self.max_buckets = max(self.max_buckets, buckets)
        self.max_tuples = max(self.max_tuples, tuples)
        self.max_rules = max(self.max_rules, rules)

    def format(self) -> str:
        """Averages and maxima, one line per structure."""
        return (
            f"\navg_acc_bucket: {self.avg_buckets:g} max: {self.max_buckets}\n"
            f"avg_acc_tuple: {self.avg_tuples:g} max: {self.max_tuples}\n"
            f"avg_acc_rule: {self.avg_rules:g} max: {self.max_rules}\n"
        )


def _scan(rules: Sequence[DbtRule], packet: Packet, result: int) -> tuple[int, int]:
    visited = 0
    for rule in rules:
        visited += 1
        if result < rule.priority:
            break
        if rule.matches(packet):
            return rule.priority, visited
    return result, visited


def _require(table: DBTable) -> None:
    if not table.constructed:
        raise RuntimeError("table has not been constructed")


def search_with_log(table: DBTable, packets: Iterable[Packet]) -> AccessSummary:
    """Classify ``packets`` and count the structures each lookup visits.

    Tuple tables of a bucket are searched only when its rule list is empty.
    """
    _require(table)
    summary = AccessSummary()
    for packet in packets:
        buckets = tuples = rules = 0
        result = NO_MATCH
        ip = packet.ip
        for node in (table.nodes[pext(ip, table.mask)], table.nodes[-1]):
            if result <= node.pri:
                continue
            buckets += 1
            if node.rules:
                result, visited = _scan(node.rules, packet, result)
                rules += visited
                continue
            for tuple_table in node.tables.values():
                if tuple_table.pri > result:
                    continue
                tuples += 1
                ptuple = tuple_table.find(ip & tuple_table.key)
                if ptuple is None or ptuple.pri > result:
                    continue
                if ptuple.rules:
                    result, visited = _scan(ptuple.rules, packet, result)
                    rules += visited
                for port_node in ptuple.port_nodes:
                    if port_node is None or port_node.pri > result:
                        continue
                    bucket = port_node.bucket_for(packet.ports[port_node.kind])
                    if result > bucket.pri:
                        result, visited = _scan(bucket.rules, packet, result)
                        rules += visited
        summary.add(buckets, tuples, rules)
    return summary


def _port_node_memory(node: PortNode) -> int:
    return _PORT_NODE_BYTES + len(node.buckets) * _BUCKET_BYTES


def _tuple_memory(table: TupleTable) -> int:
    slots = {
        hash32_2(prefix & _MASK32, prefix >> IP_BITS) & (table.capacity - 1)
        for prefix in table.ptuples
    }
    size = (table.capacity - len(slots)) * _PREFIX_TUPLE_BYTES
    for ptuple in table.ptuples.values():
        size += _PREFIX_TUPLE_BYTES
        size += sum(_port_node_memory(n) for n in ptuple.port_nodes if n is not None)
    return size


def memory_usage(table: DBTable) -> int:
    """Estimated bytes of the table's index structures, rules excluded."""
    _require(table)
    size = _SUBSET_BYTES + len(table.nodes) * _IP_NODE_BYTES
    for node in table.nodes:
        if node.pri != NO_MATCH:
            size += len(node.tables) * _TUPLE_BYTES
            size += sum(_tuple_memory(t) for t in node.tables.values())
        if node.prefix_down is not None:
            size += _PREFIX_DOWN_BYTES
    return size