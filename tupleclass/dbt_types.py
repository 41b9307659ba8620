"""Rules, packets and tuning parameters of the decision-bit table classifier.

Addresses are combined into one 64-bit word with the source address in the
low 32 bits and the destination address in the high 32 bits. Bit masks over
addresses use the same layout.
"""

from __future__ import annotations

from dataclasses import dataclass

from .tuple_costs import PrefixRule

IP_BITS = 32
PORT_BITS = 16
NO_MATCH = 0xFFFFFFFF
_IP_MAX = (1 << IP_BITS) - 1
_PORT_MAX = (1 << PORT_BITS) - 1
_PROTOCOL_MAX = 0xFF


def prefix_mask(length: int) -> int:
    """The 32-bit network mask of a prefix of ``length`` bits."""
    if not 0 <= length <= IP_BITS:
        raise ValueError(f"prefix length {length} must lie within 0..{IP_BITS}")
    return ((1 << length) - 1) << (IP_BITS - length)


def _check_ip(value: int, name: str) -> None:
    if not 0 <= value <= _IP_MAX:
        raise ValueError(f"{name} must be a 32-bit address")


def _check_port(value: int, name: str) -> None:
    if not 0 <= value <= _PORT_MAX:
        raise ValueError(f"{name} must lie within 0..{_PORT_MAX}")


def _check_protocol(value: int, name: str) -> None:
    if not 0 <= value <= _PROTOCOL_MAX:
        raise ValueError(f"{name} must lie within 0..{_PROTOCOL_MAX}")


@dataclass(frozen=True)
class Packet:
    """Header fields looked up against the rules."""

    src_ip: int
    dst_ip: int
    src_port: int = 0
    dst_port: int = 0
    protocol: int = 0

    def __post_init__(self) -> None:
        _check_ip(self.src_ip, "src_ip")
        _check_ip(self.dst_ip, "dst_ip")
        _check_port(self.src_port, "src_port")
        _check_port(self.dst_port, "dst_port")
        _check_protocol(self.protocol, "protocol")

    @property
    def ip(self) -> int:
        """Source address in the low word, destination in the high word."""
        return self.src_ip | (self.dst_ip << IP_BITS)

    @property
    def ports(self) -> tuple[int, int]:
        """Source and destination port."""
        return self.src_port, self.dst_port


@dataclass(frozen=True)
class DbtRule:
    """A five-field rule; a smaller ``priority`` value wins."""

    priority: int
    src_ip: int
    dst_ip: int
    src_len: int
    dst_len: int
    src_port: tuple[int, int] = (0, _PORT_MAX)
    dst_port: tuple[int, int] = (0, _PORT_MAX)
    protocol: int = 0
    protocol_mask: int = 0

    def __post_init__(self) -> None:
        if not 0 <= self.priority < NO_MATCH:
            raise ValueError(f"priority must lie within 0..{NO_MATCH - 1}")
        _check_ip(self.src_ip, "src_ip")
        _check_ip(self.dst_ip, "dst_ip")
        prefix_mask(self.src_len)
        prefix_mask(self.dst_len)
        src_port = tuple(int(v) for v in self.src_port)
        dst_port = tuple(int(v) for v in self.dst_port)
        for name, (low, high) in (("src_port", src_port), ("dst_port", dst_port)):
            _check_port(low, name)
            _check_port(high, name)
            if low > high:
                raise ValueError(f"{name} range is empty")
        _check_protocol(self.protocol, "protocol")
        _check_protocol(self.protocol_mask, "protocol_mask")
        object.__setattr__(self, "src_port", src_port)
        object.__setattr__(self, "dst_port", dst_port)

    @property
    def ip(self) -> int:
        """Source address in the low word, destination in the high word."""
        return self.src_ip | (self.dst_ip << IP_BITS)

    @property
    def mask(self) -> int:
        """Prefix masks laid out like :attr:`ip`."""
        return prefix_mask(self.src_len) | (prefix_mask(self.dst_len) << IP_BITS)

    @property
    def ports(self) -> tuple[tuple[int, int], tuple[int, int]]:
        """Source and destination port ranges."""
        return self.src_port, self.dst_port

    def matches(self, packet: Packet) -> bool:
        """Whether the packet falls within every field of the rule.

        The rule's addresses are compared as stored, so bits beyond the
        prefix must be zero for a rule to match anything.
        """
        if self.ip ^ (packet.ip & self.mask):
            return False
        if (self.protocol & self.protocol_mask) != (packet.protocol & self.protocol_mask):
            return False
        return (
            self.src_port[0] <= packet.src_port <= self.src_port[1]
            and self.dst_port[0] <= packet.dst_port <= self.dst_port[1]
        )

    def to_prefix_rule(self) -> PrefixRule:
        """The address part for the tuple cost model.

        The cost model ranks larger priorities first, so the order is flipped.
        """
        src = self.src_ip & prefix_mask(self.src_len)
        dst = self.dst_ip & prefix_mask(self.dst_len)
        return PrefixRule(
            src_dst_ip=(src << IP_BITS) | dst,
            src_prefix_len=self.src_len,
            dst_prefix_len=self.dst_len,
            priority=NO_MATCH - self.priority,
        )


@dataclass(frozen=True)
class DbtParams:
    """Tuning knobs of the classifier.

    ``top_k`` bits per bucket vote for the next decision bit; bit selection
    stops once the share of buckets under the threshold exceeds
    ``end_bound``. Buckets above ``c_bound`` rules are split into tuples,
    prefix tuples above ``ptuple_limit`` rules into port nodes whose bit
    selection uses ``port_threshold``.
    """

    top_k: int = 4
    end_bound: float = 0.8
    c_bound: int = 32
    binth: int = 4
    port_threshold: int = 4
    ptuple_limit: int = 8

    def __post_init__(self) -> None:
        if not 1 <= self.top_k <= PORT_BITS:
            raise ValueError(f"top_k must lie within 1..{PORT_BITS}")
        if not 0.0 <= self.end_bound <= 1.0:
            raise ValueError("end_bound must lie within 0..1")
        for name in ("c_bound", "binth", "port_threshold", "ptuple_limit"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")