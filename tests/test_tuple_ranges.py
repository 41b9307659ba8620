from collections import Counter

import pytest

from tupleclass.rules import Rule
from tupleclass.tuple_costs import IP_BITS, PrefixRule, SplitType, TupleCostTable, TupleRange
from tupleclass.tuple_ranges import (
    dynamic_tuple_ranges,
    extract_ranges,
    format_tuple_ranges,
    optimize,
    tuple_range_step,
)


def ip(a, b, c, d):
    return int.from_bytes(bytes([a, b, c, d]), "big")


def block(addr, length):
    span = (1 << (32 - length)) - 1
    low = addr & ~span & 0xFFFFFFFF
    return (low, low | span)


def prefix_rule(sip, slen, dip, dlen, priority):
    return Rule(
        ranges=(block(sip, slen), block(dip, dlen), (0, 65535), (0, 65535), (0, 255)),
        prefix_len=(slen, dlen, 0, 0, 0),
        priority=priority,
    )


RULES = [
    prefix_rule(ip(10, 0, 0, 0), 24, ip(20, 0, 0, 0), 24, 1),
    prefix_rule(ip(10, 0, 1, 0), 24, ip(20, 0, 1, 0), 24, 2),
    prefix_rule(ip(10, 0, 1, 5), 32, ip(20, 0, 1, 9), 32, 3),
    prefix_rule(ip(192, 168, 0, 0), 16, ip(1, 2, 3, 4), 32, 4),
]


def coverage(ranges):
    return Counter(
        (x, y)
        for r in ranges
        for x in range(r.x1, r.x2 + 1)
        for y in range(r.y1, r.y2 + 1)
    )


def assert_partition(ranges):
    counts = coverage(ranges)
    assert len(counts) == (IP_BITS + 1) ** 2
    assert set(counts.values()) == {1}


@pytest.fixture(scope="module")
def computed_ranges():
    return dynamic_tuple_ranges(RULES)


def test_step_ranges_partition_plane():
    ranges = tuple_range_step(8)
    assert_partition(ranges)
    assert ranges[0] == TupleRange(0, 0, 7, 7)
    assert ranges[-1] == TupleRange(32, 32, 32, 32)


def test_step_wider_than_plane_gives_single_range():
    assert tuple_range_step(40) == [TupleRange(0, 0, 32, 32)]


def test_step_must_be_positive():
    with pytest.raises(ValueError):
        tuple_range_step(0)


def test_no_rules_give_default_step():
    assert dynamic_tuple_ranges([]) == tuple_range_step(8)


def test_computed_ranges_partition_plane(computed_ranges):
    assert_partition(computed_ranges)


def test_every_rule_cell_is_covered(computed_ranges):
    counts = coverage(computed_ranges)
    for rule in RULES:
        assert counts[(rule.prefix_len[0], rule.prefix_len[1])] == 1


def test_previous_ranges_still_give_partition(computed_ranges):
    again = dynamic_tuple_ranges(RULES, computed_ranges)
    assert_partition(again)


def test_unoptimized_table_extracts_whole_plane():
    table = TupleCostTable([PrefixRule.from_rule(r) for r in RULES])
    table.calculate(True)
    assert extract_ranges(table, 0, 0, IP_BITS, IP_BITS) == [TupleRange(0, 0, 32, 32)]


def test_optimize_never_raises_total_cost():
    table = TupleCostTable([PrefixRule.from_rule(r) for r in RULES])
    table.calculate(True)
    before = table.cost(0, 0, IP_BITS, IP_BITS).cost
    optimize(table)
    after = table.cost(0, 0, IP_BITS, IP_BITS)
    assert after.cost <= before
    if after.cost < before:
        assert after.split_type is not SplitType.SELF
    assert_partition(extract_ranges(table))


def test_format_tuple_ranges():
    text = format_tuple_ranges([TupleRange(0, 0, 7, 7), TupleRange(8, 0, 32, 32)])
    assert text == "2\n0 0 7 7\n8 0 32 32\n"


def test_format_empty():
    assert format_tuple_ranges([]) == "0\n"