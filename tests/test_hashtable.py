import pytest

from tupleclass.hashing import hash32_2
from tupleclass.hashtable import (
    HashNode,
    HashTable,
    RuleNotFoundError,
    TableStats,
    Tuple,
)
from tupleclass.rules import Rule


def ip_range(addr, length):
    mask = (0xFFFFFFFF << (32 - length)) & 0xFFFFFFFF
    low = addr & mask
    return (low, low | (~mask & 0xFFFFFFFF))


def make_rule(src, dst, priority, sport=None, dport=None, src_len=32, dst_len=32):
    sp = (sport, sport) if sport is not None else (0, 65535)
    dp = (dport, dport) if dport is not None else (0, 65535)
    return Rule(
        ranges=(ip_range(src, src_len), ip_range(dst, dst_len), sp, dp, (0, 255)),
        prefix_len=(
            src_len,
            dst_len,
            16 if sport is not None else 0,
            16 if dport is not None else 0,
            0,
        ),
        priority=priority,
    )


def test_node_keeps_rules_sorted_by_priority():
    node = HashNode(1, 1)
    for priority in (3, 7, 5):
        node.insert_rule(make_rule(priority, 1, priority), False, False)
    assert [rule.priority for rule in node.rule_list] == [7, 5, 3]
    assert node.max_priority == 7
    assert node.rules_num == 3


def test_equal_priorities_keep_insertion_order():
    node = HashNode(1, 1)
    first = make_rule(1, 1, 5)
    second = make_rule(2, 2, 5)
    node.insert_rule(first, False, False)
    node.insert_rule(second, False, False)
    assert node.rule_list == [first, second]


def test_node_moves_exact_ports_into_port_tables():
    node = HashNode(1, 1)
    rules = [make_rule(1, 1, p, dport=1000 + p) for p in range(1, 8)]
    for rule in rules:
        node.insert_rule(rule, False, True)
    assert node.has_port_hash_table
    assert node.rule_list == []
    assert node.port_hash_table[0] is None
    assert node.port_hash_table[1] is not None
    assert set(node.rules()) == set(rules)
    assert node.max_priority == max(rule.priority for rule in rules)


def test_rules_without_exact_ports_stay_in_list():
    node = HashNode(1, 1)
    rules = [make_rule(p, 1, p) for p in range(1, 8)]
    for rule in rules:
        node.insert_rule(rule, False, True)
    assert node.begin_port_hash_table
    assert not node.has_port_hash_table
    assert len(node.rule_list) == len(rules)


def test_port_table_node_never_splits():
    node = HashNode(1, 1)
    for p in range(1, 10):
        node.insert_rule(make_rule(1, 1, p, dport=p), True, True)
    assert not node.begin_port_hash_table
    assert len(node.rule_list) == node.rules_num


def test_delete_collapses_port_tables():
    node = HashNode(1, 1)
    rules = [make_rule(1, 1, p, dport=1000 + p) for p in range(1, 8)]
    for rule in rules:
        node.insert_rule(rule, False, True)
    for rule in rules[:4]:
        node.delete_rule(rule, False, True)
    assert node.rules_num == 3
    assert not node.has_port_hash_table
    assert node.port_hash_table == [None, None]
    priorities = [rule.priority for rule in node.rule_list]
    assert priorities == sorted(priorities, reverse=True)
    assert set(node.rules()) == set(rules[4:])


def test_delete_missing_rule_raises():
    node = HashNode(1, 1)
    node.insert_rule(make_rule(1, 1, 1), False, False)
    with pytest.raises(RuleNotFoundError):
        node.delete_rule(make_rule(2, 2, 2), False, False)
    assert node.rules_num == 1


def test_table_grows_and_finds_every_key():
    table = HashTable(32, False, False)
    rules = [make_rule(i, i, i + 1) for i in range(40)]
    for rule in rules:
        table.insert_rule(rule, rule.ranges[0][0], rule.ranges[0][0] * 7)
    assert table.mask > 31
    assert table.hash_node_num == len(rules)
    assert len(table.rules()) == len(rules)
    for rule in rules:
        node = table.find(rule.ranges[0][0], rule.ranges[0][0] * 7)
        assert node is not None and node.rule_list == [rule]


def test_chains_sorted_by_priority():
    table = HashTable(4, False, False)
    for i in range(30):
        table.insert_rule(make_rule(i, 0, (i * 13) % 17), i, i % 3)
    for chain in table.buckets:
        priorities = [node.max_priority for node in chain]
        assert priorities == sorted(priorities, reverse=True)


def test_table_delete_updates_priority_and_drops_empty_nodes():
    table = HashTable(32, False, False)
    low = make_rule(1, 1, 4)
    high = make_rule(2, 2, 9)
    table.insert_rule(low, 1, 1)
    table.insert_rule(high, 2, 2)
    assert table.max_priority == high.priority
    table.delete_rule(high, 2, 2)
    assert table.max_priority == low.priority
    assert table.find(2, 2) is None
    assert table.hash_node_num == 1


def test_table_delete_unknown_key_raises():
    table = HashTable(32, False, False)
    with pytest.raises(RuleNotFoundError):
        table.delete_rule(make_rule(1, 1, 1), 5, 5)


def test_table_rejects_bad_size():
    with pytest.raises(ValueError):
        HashTable(24, False, False)


def test_tuple_key_truncates_addresses():
    tup = Tuple(8, 16, False)
    key, hash_value = tup.key_for(0x0A0B0C0D, 0xC0A80101)
    assert key == 0x0A0000C0A8
    assert hash_value == hash32_2(0x0A, 0xC0A8)


def test_tuple_groups_rules_with_same_prefix():
    tup = Tuple(8, 8, False)
    a = make_rule(0x0A010101, 0x14000001, 1)
    b = make_rule(0x0A020202, 0x14FFFFFF, 2)
    tup.insert_rule(a)
    tup.insert_rule(b)
    assert tup.hash_table.hash_node_num == 1
    assert set(tup.rules()) == {a, b}


def test_tuple_insert_delete_tracks_counts():
    tup = Tuple(32, 32, True)
    rules = [make_rule(i, i + 100, i) for i in range(1, 6)]
    for rule in rules:
        tup.insert_rule(rule)
    assert tup.rules_num == len(rules)
    assert tup.max_priority == max(rule.priority for rule in rules)
    tup.delete_rule(rules[-1])
    assert tup.rules_num == len(rules) - 1
    assert tup.max_priority == rules[-2].priority
    with pytest.raises(RuleNotFoundError):
        tup.delete_rule(rules[-1])


def test_tuple_rejects_bad_prefix():
    with pytest.raises(ValueError):
        Tuple(33, 0, False)


def test_calculate_state_counts_nodes_and_buckets():
    tup = Tuple(32, 32, False)
    for i in range(5):
        tup.insert_rule(make_rule(i, i, i + 1))
    stats = TableStats()
    tup.calculate_state(stats)
    assert stats.hash_node_num == 5
    assert stats.bucket_sum == tup.hash_table.mask + 1
    assert 1 <= stats.bucket_use <= stats.hash_node_num
    assert stats.next_layer_num == 0


def test_memory_size_grows_with_rules():
    tup = Tuple(32, 32, False)
    empty = tup.memory_size()
    tup.insert_rule(make_rule(1, 1, 1))
    assert tup.memory_size() > empty