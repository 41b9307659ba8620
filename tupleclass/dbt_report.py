"""Occupancy report of a constructed decision-bit table."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Sequence

from .dbt_buckets import IpNode, PrefixTuple, TupleTable
from .dbt_types import IP_BITS, NO_MATCH, DbtRule
from .dbtable import DBTable
from .hashing import hash32_2

_MASK32 = (1 << IP_BITS) - 1
_HEADER = (
    "Nodes Information [SID SIZE SIG PN_SIZE PT_SIZE]  (SIG={[0, 0], (0, 10], "
    "(10, 50], (50, 100], (100, +)})\n"
    "                  |- RULE\n"
    "                  |- ...\n"
)
_SMALL_BOUND = 11
_MID_BOUND = 51
_BIG_BOUND = 101

_BUCKET = "bucket"
_TUPLES = "tuples"
_PTUPLE = "ptuple"
_PORT = "port"


def _ratio(part: float, whole: float) -> float:
    return part / whole if whole else 0.0


@dataclass
class NodeSummary:
    """Counts of buckets, tuples and rules over the whole table."""

    total_buckets: int = 0
    used_buckets: int = 0
    max_bucket_size: int = 0
    target_buckets: int = 0
    small_buckets: int = 0
    mid_buckets: int = 0
    big_buckets: int = 0
    rules_in_bucket: int = 0
    rules_in_tuple: int = 0
    tuple_spaces: int = 0
    used_tuples: int = 0
    max_tuples: int = 0
    rule_total: int = 0

    @property
    def avg_tuples(self) -> float:
        """Mean number of tuple tables per node that has any."""
        return _ratio(self.used_tuples, self.tuple_spaces)

    def format(self) -> str:
        """Human-readable summary lines."""
        used = self.used_buckets
        lines = [
            f"in_bucket {self.rules_in_bucket} "
            f"{_ratio(self.rules_in_bucket, self.rule_total):g}",
            f"in_tuple {self.rules_in_tuple} "
            f"{_ratio(self.rules_in_tuple, self.rule_total):g}",
            f"total buckets  : {self.total_buckets}",
            f"used buckets   : {used} "
            f"{_ratio(used, self.total_buckets) * 100:g}%",
            f"max bucket size: {self.max_bucket_size}",
            f"target buckets : {self.target_buckets} "
            f"{_ratio(self.target_buckets, used) * 100:g}%",
            f"(10,50]        : {self.small_buckets} "
            f"{_ratio(self.small_buckets, used) * 100:g}%",
            f"(50,100]       : {self.mid_buckets} "
            f"{_ratio(self.mid_buckets, used) * 100:g}%",
            f"big cell       : {self.big_buckets} "
            f"{_ratio(self.big_buckets, used) * 100:g}%",
            f"tuple spaces   : {self.tuple_spaces}",
            f"avg tuples     : {self.avg_tuples:g}",
            f"max tuples     : {self.max_tuples}",
        ]
        return "\n".join(lines) + "\n"


def _size_class(size: int) -> tuple[str, int]:
    if size < _SMALL_BOUND:
        return "(0, 10]", 0
    if size < _MID_BOUND:
        return "(10, 50]", 1
    if size < _BIG_BOUND:
        return "(50, 100]", 2
    return "(100, +)", 3


def _dotted(address: int) -> str:
    return ".".join(str((address >> shift) & 0xFF) for shift in (24, 16, 8, 0))


def _rule_line(rule: DbtRule) -> str:
    return (
        f"|- {rule.priority}\t{_dotted(rule.src_ip)}/{rule.src_len}"
        f"\t\t{_dotted(rule.dst_ip)}/{rule.dst_len}"
        f"\t\t{rule.src_port[0]}:{rule.src_port[1]}"
        f"\t\t{rule.dst_port[0]}:{rule.dst_port[1]}"
        f"\t\t{rule.protocol}\n"
    )


def _slot(table: TupleTable, prefix: int) -> int:
    return hash32_2(prefix & _MASK32, prefix >> IP_BITS) & (table.capacity - 1)


def _ordered_ptuples(table: TupleTable) -> list[tuple[int, PrefixTuple]]:
    slotted = [(_slot(table, pt.prefix), pt) for pt in table.ptuples.values()]
    slotted.sort(key=lambda item: (item[0], item[1].pri))
    return slotted


def _sections(node: IpNode) -> Iterator[tuple[str, str, Sequence[DbtRule]]]:
    """Labelled rule lists of a node in report order."""
    if node.rules:
        yield _BUCKET, f"SIZE= {len(node.rules)} ", node.rules
    if not node.tables:
        return
    yield _TUPLES, f"USED_TUPLES {len(node.tables)}", ()
    for table in node.tables.values():
        src_len, dst_len = table.prefix_lengths
        for slot, ptuple in _ordered_ptuples(table):
            if ptuple.rules:
                yield (
                    _PTUPLE,
                    f"PT_SIZE= {len(ptuple.rules)} TUPLE ({src_len},{dst_len}) "
                    f"HASH {slot} ",
                    ptuple.rules,
                )
            for port_node in ptuple.port_nodes:
                if port_node is None:
                    continue
                for bucket in port_node.buckets:
                    if bucket.pri != NO_MATCH:
                        yield _PORT, f"PN_SIZE= {len(bucket.rules)} ", bucket.rules


def _require(table: DBTable) -> None:
    if not table.constructed:
        raise RuntimeError("table has not been constructed")


def node_report(table: DBTable) -> NodeSummary:
    """Gather bucket, tuple and rule counts of a constructed table."""
    _require(table)
    summary = NodeSummary(total_buckets=len(table.nodes), rule_total=len(table.rules))
    rule_count = 0
    for node in table.nodes:
        if node.pri == NO_MATCH:
            continue
        summary.used_buckets += 1
        if node.tables:
            summary.tuple_spaces += 1
            summary.used_tuples += len(node.tables)
            summary.max_tuples = max(summary.max_tuples, len(node.tables))
            for tuple_table in node.tables.values():
                summary.total_buckets += tuple_table.capacity
                summary.used_buckets += len(tuple_table.ptuples)
                for ptuple in tuple_table.ptuples.values():
                    for port_node in ptuple.port_nodes:
                        if port_node is not None:
                            summary.total_buckets += len(port_node.buckets)
        for kind, _, rules in _sections(node):
            if kind == _TUPLES:
                continue
            size = len(rules)
            if kind == _PORT:
                summary.used_buckets += 1
            if size < table.threshold:
                summary.target_buckets += 1
            summary.max_bucket_size = max(summary.max_bucket_size, size)
            _, klass = _size_class(size)
            if klass == 1:
                summary.small_buckets += 1
            elif klass == 2:
                summary.mid_buckets += 1
            elif klass == 3:
                summary.big_buckets += 1
            rule_count += size
            if kind == _BUCKET:
                summary.rules_in_bucket += size
    summary.rules_in_tuple = rule_count - summary.rules_in_bucket
    return summary


def format_nodes(table: DBTable) -> str:
    """Every bucket of the table with its size class and rules."""
    _require(table)
    parts = [_HEADER]
    for node in table.nodes:
        if node.pri == NO_MATCH:
            continue
        for kind, label, rules in _sections(node):
            if kind == _TUPLES:
                parts.append(f"\n{label}")
                continue
            klass, _ = _size_class(len(rules))
            parts.append(f"\n{label}{klass}\n")
            parts.extend(_rule_line(rule) for rule in rules)
    return "".join(parts)