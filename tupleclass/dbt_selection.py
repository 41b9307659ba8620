"""Greedy choice of decision bits that split rules into small buckets."""

from __future__ import annotations

import itertools
import logging
from typing import Callable, Iterable, Optional, Sequence

from .dbt_types import IP_BITS, PORT_BITS, DbtParams, DbtRule

logger = logging.getLogger(__name__)

_WILDCARD = 2

Bucket = list[DbtRule]


def _ip_field(rule: DbtRule, bit_id: int) -> tuple[int, int, int]:
    """Address, prefix length and in-field bit index of a 64-wide bit id."""
    if bit_id < IP_BITS:
        return rule.src_ip, rule.src_len, bit_id
    return rule.dst_ip, rule.dst_len, bit_id - IP_BITS


def _ip_fetch_bit(rule: DbtRule, bit_id: int) -> int:
    address, length, bit = _ip_field(rule, bit_id)
    if bit >= length:
        return _WILDCARD
    return (address >> (IP_BITS - 1 - bit)) & 1


def _ip_ranks(bucket: Sequence[DbtRule]) -> list[float]:
    size = len(bucket)
    ranks = []
    for bit_id in range(2 * IP_BITS):
        counts = [0, 0, 0]
        for rule in bucket:
            counts[_ip_fetch_bit(rule, bit_id)] += 1
        ranks.append((abs(counts[0] - counts[1]) + counts[2]) / size)
    return ranks


def _port_fetch_bit(rule: DbtRule, kind: int, bit_id: int) -> int:
    return (rule.ports[kind][0] >> (PORT_BITS - 1 - bit_id)) & 1


def _port_ranks(bucket: Sequence[DbtRule], kind: int) -> list[float]:
    size = len(bucket)
    ranks = []
    for bit_id in range(PORT_BITS):
        ones = sum(_port_fetch_bit(rule, kind, bit_id) for rule in bucket)
        ranks.append(abs(size - 2 * ones) / size)
    return ranks


class BitSelector:
    """Pick address or port bits whose values spread rules across buckets.

    Each round every bucket votes for its ``top_k`` most balanced bits; the
    bit with the most votes splits every bucket. Rounds stop when a bit no
    longer splits anything or when enough buckets hold fewer rules than
    ``threshold``. The bucket statistics of the last selection stay on the
    instance.
    """

    def __init__(
        self,
        rules: Iterable[DbtRule],
        threshold: int,
        params: Optional[DbtParams] = None,
    ) -> None:
        self.rules = list(rules)
        if not self.rules:
            raise ValueError("bit selection needs at least one rule")
        self.threshold = threshold
        self.params = params if params is not None else DbtParams()
        self.bucket_num = 0
        self.max_bucket_size = 0
        self.target_bucket_num = 0
        self.selected_bits = 0

    def _stats(self) -> tuple[int, int, int]:
        return self.target_bucket_num, self.max_bucket_size, self.bucket_num

    def _partition(
        self, buckets: list[Bucket], fetch: Callable[[DbtRule], int]
    ) -> list[Bucket]:
        split: list[Bucket] = []
        for bucket in buckets:
            ordered = sorted(bucket, key=lambda rule: (fetch(rule), rule.priority))
            split.extend(list(run) for _, run in itertools.groupby(ordered, key=fetch))
        self.bucket_num = len(split)
        self.max_bucket_size = max(len(bucket) for bucket in split)
        self.target_bucket_num = sum(1 for bucket in split if len(bucket) < self.threshold)
        return split

    def _select(
        self,
        width: int,
        ranks_of: Callable[[Sequence[DbtRule]], list[float]],
        fetch_of: Callable[[DbtRule, int], int],
    ) -> list[int]:
        self.bucket_num = self.max_bucket_size = self.target_bucket_num = 0
        buckets: list[Bucket] = [list(self.rules)]
        chosen: list[int] = []
        top_k = self.params.top_k
        while True:
            counts = [0] * width
            rank_sums = [0.0] * width
            for bucket in buckets:
                ranks = ranks_of(bucket)
                for bit_id in sorted(range(width), key=ranks.__getitem__)[:top_k]:
                    counts[bit_id] += len(bucket)
                    rank_sums[bit_id] += ranks[bit_id]
            best = min(range(width), key=lambda i: (-counts[i], rank_sums[i]))
            before = self._stats()
            buckets = self._partition(buckets, lambda rule: fetch_of(rule, best))
            if self._stats() == before:
                break
            chosen.append(best)
            if self.target_bucket_num / self.bucket_num > self.params.end_bound:
                break
        self.selected_bits = len(chosen)
        return chosen

    def ip_mask(self) -> int:
        """A 64-bit mask of chosen address bits, source in the low word."""
        mask = 0
        for bit_id in self._select(2 * IP_BITS, _ip_ranks, _ip_fetch_bit):
            if bit_id < IP_BITS:
                mask |= 1 << (IP_BITS - 1 - bit_id)
            else:
                mask |= 1 << (2 * IP_BITS - 1 - (bit_id - IP_BITS))
        logger.debug("decision bits selected: %d", self.selected_bits)
        return mask

    def port_mask(self, kind: int) -> int:
        """A 16-bit mask over the low bound of the source (0) or destination (1) port."""
        if kind not in (0, 1):
            raise ValueError("kind must be 0 (source port) or 1 (destination port)")
        chosen = self._select(
            PORT_BITS,
            lambda bucket: _port_ranks(bucket, kind),
            lambda rule, bit_id: _port_fetch_bit(rule, kind, bit_id),
        )
        mask = 0
        for bit_id in chosen:
            mask |= 1 << (PORT_BITS - 1 - bit_id)
        return mask