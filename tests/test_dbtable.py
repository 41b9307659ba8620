import random

import pytest

from tupleclass.dbt_types import NO_MATCH, DbtParams, DbtRule, Packet, prefix_mask
from tupleclass.dbtable import DBTable
from tupleclass.hashtable import RuleNotFoundError

PORT_POOL = (22, 53, 80, 443)
ANY = (0, 65535)


def _port(rng):
    kind = rng.randrange(3)
    if kind == 0:
        return ANY
    low = rng.choice(PORT_POOL)
    return (low, low) if kind == 1 else (low, low + 1000)


def make_rules(seed, count, first_priority=10):
    rng = random.Random(seed)
    rules = []
    for i in range(count):
        src_len = rng.choice((0, 8, 16))
        dst_len = rng.choice((0, 8, 16))
        if i % 3 == 0:
            src_len = dst_len = 0
        proto, proto_mask = rng.choice(((0, 0), (6, 0xFF), (17, 0xFF)))
        rules.append(
            DbtRule(
                first_priority + i,
                rng.choice((10, 11, 12)) << 24 | rng.getrandbits(24) & prefix_mask(src_len),
                rng.choice((20, 21)) << 24 | rng.getrandbits(24) & prefix_mask(dst_len),
                src_len,
                dst_len,
                _port(rng),
                _port(rng),
                proto,
                proto_mask,
            )
        )
    return [
        DbtRule(
            r.priority,
            r.src_ip & prefix_mask(r.src_len),
            r.dst_ip & prefix_mask(r.dst_len),
            r.src_len,
            r.dst_len,
            r.src_port,
            r.dst_port,
            r.protocol,
            r.protocol_mask,
        )
        for r in rules
    ]


def make_packets(rules, seed, count):
    rng = random.Random(seed)
    packets = []
    for _ in range(count):
        r = rng.choice(rules)
        host_src = rng.getrandbits(32) & ~prefix_mask(r.src_len) & 0xFFFFFFFF
        host_dst = rng.getrandbits(32) & ~prefix_mask(r.dst_len) & 0xFFFFFFFF
        packets.append(
            Packet(
                r.src_ip | host_src,
                r.dst_ip | host_dst,
                rng.randint(*r.src_port),
                rng.randint(*r.dst_port),
                r.protocol if r.protocol_mask else rng.choice((6, 17)),
            )
        )
        packets.append(
            Packet(rng.getrandbits(32), rng.getrandbits(32), rng.choice(PORT_POOL), 80, 6)
        )
    return packets


def best(rules, packet):
    return min((r.priority for r in rules if r.matches(packet)), default=NO_MATCH)


@pytest.fixture(scope="module")
def plain():
    rules = make_rules(1, 30)
    table = DBTable(rules)
    table.construct()
    return table, rules


@pytest.fixture(scope="module")
def tupled():
    rules = make_rules(2, 36)
    table = DBTable(rules, params=DbtParams(c_bound=4, ptuple_limit=4))
    table.construct()
    return table, rules


def test_node_count_follows_mask(plain):
    table, _ = plain
    assert len(table.nodes) == (1 << table.mask.bit_count()) + 1


def test_every_rule_stored_in_its_node(plain):
    table, rules = plain
    for r in rules:
        assert r in list(table.nodes[table.node_index(r)].iter_rules())
    assert sum(len(list(n.iter_rules())) for n in table.nodes) == len(rules)


def test_search_matches_linear_scan(plain):
    table, rules = plain
    for packet in make_packets(rules, 3, 100):
        assert table.search(packet) == best(rules, packet)


def test_tupled_table_uses_tuples_and_port_nodes(tupled):
    table, _ = tupled
    assert any(node.tables for node in table.nodes)
    assert any(
        pn is not None
        for node in table.nodes
        for t in node.tables.values()
        for pt in t.ptuples.values()
        for pn in pt.port_nodes
    )


def test_tupled_search_matches_linear_scan(tupled):
    table, rules = tupled
    for packet in make_packets(rules, 4, 100):
        assert table.search(packet) == best(rules, packet)


def test_insert_and_remove_on_tupled_table(tupled):
    table, rules = tupled
    packets = make_packets(rules, 5, 60)
    new_rules = [
        DbtRule(1, 0, 0, 0, 0, ANY, (80, 80)),
        DbtRule(2, 10 << 24, 0, 8, 0, (22, 22), ANY),
    ]
    for r in new_rules:
        table.insert(r)
    try:
        for packet in packets:
            assert table.search(packet) == best(rules + new_rules, packet)
    finally:
        for r in new_rules:
            table.remove(r)
    for packet in packets:
        assert table.search(packet) == best(rules, packet)


def test_remove_stored_rule_then_restore(tupled):
    table, rules = tupled
    victim = next(r for r in rules if r.src_len == r.dst_len == 0 and r.dst_port[0] == r.dst_port[1])
    remaining = [r for r in rules if r is not victim]
    packets = make_packets(rules, 6, 60)
    table.remove(victim)
    try:
        for packet in packets:
            assert table.search(packet) == best(remaining, packet)
    finally:
        table.insert(victim)
    for packet in packets:
        assert table.search(packet) == best(rules, packet)


def test_insert_into_plain_table():
    rules = make_rules(7, 12)
    table = DBTable(rules)
    table.construct()
    extra = DbtRule(0, 0, 0, 0, 0)
    table.insert(extra)
    packet = Packet(1, 2, 3, 4, 5)
    assert table.search(packet) == 0
    table.remove(extra)
    assert table.search(packet) == best(rules, packet)


def test_remove_missing_rule_raises(plain):
    table, _ = plain
    with pytest.raises(RuleNotFoundError):
        table.remove(DbtRule(9999, 0, 0, 0, 0))


def test_search_before_construct_raises():
    table = DBTable(make_rules(8, 5))
    assert not table.constructed
    with pytest.raises(RuntimeError):
        table.search(Packet(0, 0))


def test_construct_without_rules_raises():
    with pytest.raises(ValueError):
        DBTable([]).construct()


def test_no_match_returns_sentinel():
    table = DBTable([DbtRule(3, 10 << 24, 20 << 24, 8, 8)])
    table.construct()
    assert table.search(Packet(99 << 24, 20 << 24)) == NO_MATCH
    assert table.search(Packet(10 << 24 | 5, 20 << 24 | 7)) == 3