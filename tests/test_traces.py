import io
import struct

import pytest

from tupleclass.traces import append_rows, iter_pcap_5tuples, main, pcap_to_5tuple


def global_header(order="<", link_type=1):
    return struct.pack(order + "IHHiIII", 0xA1B2C3D4, 2, 4, 0, 0, 65535, link_type)


def ipv4_packet(src, dst, proto, sport, dport, version=4, options=b""):
    ihl = (20 + len(options)) // 4
    ip = bytes([(version << 4) | ihl, 0, 0, 40, 0, 0, 0, 0, 64, proto, 0, 0])
    ip += src.to_bytes(4, "big") + dst.to_bytes(4, "big") + options
    transport = struct.pack(">HH", sport, dport) + b"\x00" * 16
    eth = b"\x00" * 12 + b"\x08\x00"
    return eth + ip + transport


def capture(packets, order="<", link_type=1):
    body = global_header(order, link_type)
    for packet in packets:
        body += struct.pack(order + "IIII", 0, 0, len(packet), len(packet)) + packet
    return body


def test_tcp_and_udp_packets_are_extracted():
    data = capture(
        [
            ipv4_packet(0x0A000001, 0x0A000002, 6, 1234, 80),
            ipv4_packet(0xC0A80001, 0x08080808, 17, 5353, 53),
        ]
    )
    result = list(iter_pcap_5tuples(io.BytesIO(data)))
    assert result == [
        (0x0A000001, 0x0A000002, 1234, 80, 6),
        (0xC0A80001, 0x08080808, 5353, 53, 17),
    ]


def test_other_protocols_and_versions_skipped():
    data = capture(
        [
            ipv4_packet(1, 2, 1, 0, 0),
            ipv4_packet(1, 2, 6, 10, 20, version=6),
            ipv4_packet(3, 4, 6, 30, 40),
        ]
    )
    assert list(iter_pcap_5tuples(io.BytesIO(data))) == [(3, 4, 30, 40, 6)]


def test_ip_options_shift_transport_header():
    packet = ipv4_packet(5, 6, 17, 111, 222, options=b"\x01\x01\x01\x00")
    assert list(iter_pcap_5tuples(io.BytesIO(capture([packet])))) == [(5, 6, 111, 222, 17)]


def test_big_endian_capture():
    data = capture([ipv4_packet(7, 8, 6, 9, 10)], order=">")
    assert list(iter_pcap_5tuples(io.BytesIO(data))) == [(7, 8, 9, 10, 6)]


def test_non_ethernet_link_type_yields_nothing():
    data = capture([ipv4_packet(7, 8, 6, 9, 10)], link_type=101)
    assert list(iter_pcap_5tuples(io.BytesIO(data))) == []


def test_bad_magic_raises():
    with pytest.raises(ValueError):
        list(iter_pcap_5tuples(io.BytesIO(b"\x00" * 24)))


def test_truncated_record_stops():
    data = capture([ipv4_packet(7, 8, 6, 9, 10)])
    assert list(iter_pcap_5tuples(io.BytesIO(data[:-5]))) == []


def test_pcap_to_5tuple_writes_lines(tmp_path):
    src = tmp_path / "in.pcap"
    out = tmp_path / "out.txt"
    src.write_bytes(capture([ipv4_packet(100, 200, 6, 1234, 80)]))
    assert pcap_to_5tuple(src, out) == 1
    assert out.read_text() == "100\t200\t1234\t80\t6\t0\t0\n"


def test_main_success_and_usage(tmp_path, capsys):
    src = tmp_path / "in.pcap"
    out = tmp_path / "out.txt"
    src.write_bytes(capture([ipv4_packet(1, 2, 17, 3, 4)]))
    assert main([str(src), str(out)]) == 0
    assert out.read_text() == "1\t2\t3\t4\t17\t0\t0\n"
    assert main([str(src)]) == 1
    assert "Usage" in capsys.readouterr().err


def test_main_reports_missing_input(tmp_path):
    assert main([str(tmp_path / "missing.pcap"), str(tmp_path / "out.txt")]) == 1


def test_append_rows_appends_selected_lines(tmp_path):
    source = tmp_path / "source.txt"
    target = tmp_path / "target.txt"
    source.write_bytes(b"a\nb\nc\nd\ne")
    target.write_bytes(b"x\n")
    assert append_rows(source, target, 2, 4) == 3
    assert target.read_bytes() == b"x\nb\nc\nd\n"


def test_append_rows_past_end_takes_what_exists(tmp_path):
    source = tmp_path / "source.txt"
    target = tmp_path / "target.txt"
    source.write_bytes(b"a\nb\nc")
    assert append_rows(source, target, 2, 9) == 2
    assert target.read_bytes() == b"b\nc\n"


@pytest.mark.parametrize("start,end", [(0, 3), (4, 2)])
def test_append_rows_invalid_range(tmp_path, start, end):
    source = tmp_path / "source.txt"
    source.write_bytes(b"a\nb\nc\nd\n")
    with pytest.raises(ValueError):
        append_rows(source, tmp_path / "target.txt", start, end)


def test_append_rows_start_beyond_file(tmp_path):
    source = tmp_path / "source.txt"
    source.write_bytes(b"a\nb\n")
    with pytest.raises(ValueError):
        append_rows(source, tmp_path / "target.txt", 5, 7)


def test_append_rows_missing_source(tmp_path):
    with pytest.raises(FileNotFoundError):
        append_rows(tmp_path / "nope.txt", tmp_path / "target.txt", 1, 2)