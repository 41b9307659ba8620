"""Decision-bit table: bit-selected buckets refined by tuples and port nodes."""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from .dbt_buckets import IpNode
from .dbt_selection import BitSelector
from .dbt_types import NO_MATCH, DbtParams, DbtRule, Packet
from .hashing import pext
from .hashtable import RuleNotFoundError


def _scan(rules: Sequence[DbtRule], packet: Packet, result: int) -> int:
    for rule in rules:
        if result < rule.priority:
            break
        if rule.matches(packet):
            return rule.priority
    return result


class DBTable:
    """Packet classifier; ``search`` returns the smallest matching priority."""

    def __init__(
        self,
        rules: Iterable[DbtRule],
        threshold: Optional[int] = None,
        params: Optional[DbtParams] = None,
    ) -> None:
        self.params = params if params is not None else DbtParams()
        self.threshold = self.params.binth if threshold is None else threshold
        self.rules = sorted(rules, key=lambda rule: rule.priority)
        self.mask = 0
        self.selected_bits = 0
        self.nodes: list[IpNode] = []

    @property
    def constructed(self) -> bool:
        """Whether :meth:`construct` has run."""
        return bool(self.nodes)

    def _require(self) -> None:
        if not self.nodes:
            raise RuntimeError("table has not been constructed")

    def construct(self) -> None:
        """Choose decision bits, fill the buckets and build large buckets' tuples."""
        if not self.rules:
            raise ValueError("a table needs at least one rule")
        selector = BitSelector(self.rules, self.threshold, self.params)
        self.mask = selector.ip_mask()
        self.selected_bits = selector.selected_bits
        self.nodes = [IpNode() for _ in range((1 << self.mask.bit_count()) + 1)]
        for rule in self.rules:
            self.nodes[self.node_index(rule)].add(rule)
        for node in self.nodes:
            if len(node.rules) > self.params.c_bound:
                node.build_tuples(self.params)

    def node_index(self, rule: DbtRule) -> int:
        """The bucket of a rule; rules not covering every decision bit go last."""
        self._require()
        mask = rule.mask
        if mask & self.mask == self.mask:
            return pext(rule.ip & mask, self.mask)
        return len(self.nodes) - 1

    def search(self, packet: Packet) -> int:
        """The best matching priority, or NO_MATCH."""
        self._require()
        result = NO_MATCH
        ip = packet.ip
        for node in (self.nodes[pext(ip, self.mask)], self.nodes[-1]):
            if result <= node.pri:
                continue
            result = _scan(node.rules, packet, result)
            for table in node.tables.values():
                if table.pri > result:
                    continue
                ptuple = table.find(ip & table.key)
                if ptuple is None or ptuple.pri > result:
                    continue
                result = _scan(ptuple.rules, packet, result)
                for port_node in ptuple.port_nodes:
                    if port_node is None or port_node.pri > result:
                        continue
                    bucket = port_node.bucket_for(packet.ports[port_node.kind])
                    if result > bucket.pri:
                        result = _scan(bucket.rules, packet, result)
        return result

    def insert(self, rule: DbtRule) -> None:
        """Add a rule to a constructed table."""
        self._require()
        self.nodes[self.node_index(rule)].add(rule)

    def remove(self, rule: DbtRule) -> None:
        """Remove the stored rule with ``rule``'s priority from its bucket."""
        self._require()
        node = self.nodes[self.node_index(rule)]
        key = node.key_for(rule)
        table = node.tables.get(key) if key is not None else None
        if table is None:
            holder = node.rules
        else:
            ptuple = table.find(rule.ip & table.key)
            if ptuple is None:
                raise RuleNotFoundError("no prefix tuple holds the rule")
            holder = ptuple.holder(rule)
        index = next(
            (i for i, stored in enumerate(holder) if stored.priority == rule.priority),
            None,
        )
        if index is None:
            raise RuleNotFoundError("rule is not stored in its bucket")
        del holder[index]