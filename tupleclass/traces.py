"""Trace file helpers: row slicing and pcap to five-tuple export."""

from __future__ import annotations

import logging
import struct
import sys
from itertools import islice
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Sequence, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

LINKTYPE_ETHERNET = 1
ETHERNET_HEADER_LEN = 14
IPPROTO_TCP = 6
IPPROTO_UDP = 17
_IPV4_MIN_HEADER = 20
_PCAP_MAGIC = {
    b"\xd4\xc3\xb2\xa1": "<",
    b"\xa1\xb2\xc3\xd4": ">",
    b"\x4d\x3c\xb2\xa1": "<",
    b"\xa1\xb2\x3c\x4d": ">",
}


def append_rows(
    source_file: PathLike, target_file: PathLike, start_row: int, end_row: int
) -> int:
    """Append lines ``start_row``..``end_row`` (1-based) of one file to another.

    Returns the number of lines appended.
    """
    if start_row > end_row or start_row < 1:
        raise ValueError("invalid row range")
    with open(source_file, "rb") as src:
        head = list(islice(src, end_row))
    if len(head) < start_row:
        raise ValueError("start row exceeds total line count")
    selected = [line.rstrip(b"\n") + b"\n" for line in head[start_row - 1 :]]
    with open(target_file, "ab") as tgt:
        tgt.writelines(selected)
    return len(selected)


def iter_pcap_5tuples(stream: BinaryIO) -> Iterator[tuple[int, int, int, int, int]]:
    """Yield (src_ip, dst_ip, src_port, dst_port, protocol) of TCP/UDP over IPv4."""
    header = stream.read(24)
    if len(header) < 24 or header[:4] not in _PCAP_MAGIC:
        raise ValueError("not a pcap capture file")
    order = _PCAP_MAGIC[header[:4]]
    (link_type,) = struct.unpack(order + "I", header[20:24])
    warned = False
    while True:
        record = stream.read(16)
        if len(record) < 16:
            return
        _, _, incl_len, _ = struct.unpack(order + "IIII", record)
        data = stream.read(incl_len)
        if len(data) < incl_len:
            return
        if link_type != LINKTYPE_ETHERNET:
            if not warned:
                logger.warning("unsupported link type: %d", link_type)
                warned = True
            continue
        packet = data[ETHERNET_HEADER_LEN:]
        if len(packet) < _IPV4_MIN_HEADER or packet[0] >> 4 != 4:
            continue
        header_len = (packet[0] & 0x0F) * 4
        protocol = packet[9]
        if protocol not in (IPPROTO_TCP, IPPROTO_UDP):
            continue
        src_ip, dst_ip = struct.unpack(">II", packet[12:20])
        ports = packet[header_len : header_len + 4]
        if len(ports) < 4:
            continue
        src_port, dst_port = struct.unpack(">HH", ports)
        yield src_ip, dst_ip, src_port, dst_port, protocol


def pcap_to_5tuple(pcap_file: PathLike, output_file: PathLike) -> int:
    """Write one tab-separated seven-column line per TCP/UDP packet.

    Returns the number of lines written.
    """
    count = 0
    with open(pcap_file, "rb") as src, open(output_file, "w", encoding="ascii") as out:
        for src_ip, dst_ip, src_port, dst_port, protocol in iter_pcap_5tuples(src):
            out.write(f"{src_ip}\t{dst_ip}\t{src_port}\t{dst_port}\t{protocol}\t0\t0\n")
            count += 1
    return count


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Convert a pcap capture into a five-tuple trace file."""
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) != 2:
        print("Usage: pcap_to_5tuple input.pcap output.txt", file=sys.stderr)
        return 1
    try:
        pcap_to_5tuple(args[0], args[1])
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"Export done: {args[1]}")
    return 0


if __name__ == "__main__":
    sys.exit(main())