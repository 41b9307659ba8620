# tupleclass

Packet classification with tuple-space search. The package builds lookup
structures over five-field rules (source/destination IP prefix,
source/destination port range, protocol) and answers "which rule with the
best priority matches this packet?".

It has no runtime dependencies.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## The dynamic tuple classifier

`tupleclass.dynamictuple.DynamicTuple` groups rules into tuples by their
(source, destination) prefix lengths. Which prefix lengths share a tuple is
chosen by a cost model (`tupleclass.tuple_costs.TupleCostTable`) and a
dynamic program (`tupleclass.tuple_ranges.dynamic_tuple_ranges`). Each tuple
is a chained hash table (`tupleclass.hashtable`); a hash node that collects
seven or more rules moves the rules with an exact source or destination port
into per-port hash tables, and folds them back when it shrinks to three.

Rules and packets use `tupleclass.rules`. Here a **larger** priority wins:

```python
from tupleclass.rules import Rule, Trace
from tupleclass.dynamictuple import DynamicTuple

rule = Rule(
    ranges=((0x0A000000, 0x0AFFFFFF), (0, 0xFFFFFFFF),
            (0, 65535), (80, 80), (6, 6)),
    prefix_len=(8, 0, 0, 16, 8),
    priority=10,
)
classifier = DynamicTuple(use_port_hash_table=True)
classifier.create([rule], insert=True)

best = classifier.lookup(Trace((0x0A010203, 0x01020304, 1234, 80, 6)), 0)
# best == 10; with no match the starting priority (0) comes back
```

- `insert_rule(rule)` and `delete_rule(rule)` update the classifier;
  deleting a rule that is not stored raises
  `tupleclass.hashtable.RuleNotFoundError`.
- `lookup_access(trace, priority, ans_rule)` returns the priority together
  with an `AccessStats` counting the tuples, tables, nodes and rules visited.
- `reconstruct()` re-plans the tuple ranges for the current rules, rebuilds
  only the tuples whose range changed, and returns how many were rebuilt.
- `memory_size()` gives a byte estimate; `calculate_state(stats)` adds
  occupancy counts to a `tupleclass.hashtable.TableStats`.

Related helpers:

- `tupleclass.rules.port_mask(start, end)` splits a port range into aligned
  prefix blocks, and `rules_port_prefix(rules)` expands rules accordingly.
- `tupleclass.dims.get_dim_range(rules, prefix_dims_num)` chooses, per
  dimension, how prefix lengths are grouped; it raises
  `CostIncreasedError` if an optimisation round makes the cost worse.
- `tupleclass.tuple_ranges.format_tuple_ranges(ranges)` renders ranges as
  text.

## The bit-selecting decision table

`tupleclass.dbtable.DBTable` picks a set of discriminating address bits
(`tupleclass.dbt_selection.BitSelector`), spreads the rules into buckets by
those bits, and turns buckets holding more than `c_bound` rules into prefix
tuples; prefix tuples above `ptuple_limit` rules move rules with an exact
port into port nodes (`tupleclass.dbt_buckets`). Tuning values live in
`tupleclass.dbt_types.DbtParams`.

Rules are `tupleclass.dbt_types.DbtRule`, where a **smaller** priority wins,
and address bits beyond the prefix must be zero:

```python
from tupleclass.dbt_types import DbtRule, DbtParams, Packet, NO_MATCH
from tupleclass.dbtable import DBTable

rules = [
    DbtRule(priority=0, src_ip=0x0A000000, dst_ip=0, src_len=8, dst_len=0,
            dst_port=(80, 80), protocol=6, protocol_mask=0xFF),
    DbtRule(priority=1, src_ip=0, dst_ip=0, src_len=0, dst_len=0),
]
table = DBTable(rules, threshold=4, params=DbtParams())
table.construct()
table.search(Packet(0x0A000001, 0x01020304, 1234, 80, 6))   # 0
```

`search` returns `NO_MATCH` when nothing matches. `insert(rule)` and
`remove(rule)` update a constructed table; `remove` finds the stored rule by
priority and raises `RuleNotFoundError` if it is absent.

Reporting:

- `tupleclass.dbt_report.node_report(table)` returns a `NodeSummary` of bucket,
  tuple and rule counts (`summary.format()` renders it), and
  `format_nodes(table)` lists every bucket with its size class and rules.
- `tupleclass.dbt_stats.search_with_log(table, packets)` classifies packets and
  returns an `AccessSummary` of buckets, tuples and rules visited;
  `memory_usage(table)` estimates the bytes of the index structures.

## Trace tools

`tupleclass.traces`:

- `pcap_to_5tuple(pcap_file, output_file)` reads a classic pcap capture with
  Ethernet framing and writes one tab-separated line per IPv4 TCP/UDP packet:
  source IP, destination IP, source port, destination port and protocol as
  integers, then two zero columns. It returns the number of lines written.
  `iter_pcap_5tuples(stream)` yields the same tuples from an open binary file.
- `append_rows(source_file, target_file, start_row, end_row)` appends lines
  `start_row` to `end_row` (counted from 1) of one file to another and
  returns how many were appended; an invalid range raises `ValueError`.

The converter is also a command:

```
tupleclass-traces input.pcap output.txt
```

## What it does not do

- There is no reader for rule-set files and no benchmark command: rules,
  traces and packets are built in Python and passed to the classifiers.
- The pcap reader handles the classic pcap format only, not pcapng, and
  skips packets of any link type other than Ethernet.
- Diagnostic output goes through the `logging` module; reports are returned
  as values and strings rather than written to files.