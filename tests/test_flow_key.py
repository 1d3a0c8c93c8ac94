import pytest

from ryu.lib.packet import arp
from ryu.lib.packet import ethernet
from ryu.lib.packet import ether_types
from ryu.lib.packet import in_proto
from ryu.lib.packet import packet

from conftest import VIP, build_packet
from flow_key import FlowKey, decode_flow_key
from lb_errors import MalformedHeader


def test_decode_tcp():
    key = decode_flow_key(build_packet("tcp", src="10.0.0.1", sport=40000, dport=80))
    assert key == FlowKey(in_proto.IPPROTO_TCP, "10.0.0.1", VIP, 40000, 80)
    assert key.client == "10.0.0.1"


def test_decode_udp():
    key = decode_flow_key(build_packet("udp", src="10.0.0.9", sport=5353, dport=53))
    assert key == FlowKey(in_proto.IPPROTO_UDP, "10.0.0.9", VIP, 5353, 53)


def test_decode_icmp_has_no_ports():
    key = decode_flow_key(build_packet("icmp", src="10.0.0.2"))
    assert key == FlowKey(in_proto.IPPROTO_ICMP, "10.0.0.2", VIP)
    assert (key.src_port, key.dst_port) == (0, 0)
    assert str(key) == f"icmp 10.0.0.2 -> {VIP}"


def test_same_packet_same_key():
    data = build_packet("tcp", sport=40001)
    assert decode_flow_key(data) == decode_flow_key(bytearray(data))
    assert hash(decode_flow_key(data)) == hash(decode_flow_key(data))


def test_reversed_swaps_endpoints():
    key = FlowKey(in_proto.IPPROTO_TCP, "10.0.0.1", VIP, 40000, 80)
    rev = key.reversed()
    assert rev == FlowKey(in_proto.IPPROTO_TCP, VIP, "10.0.0.1", 80, 40000)
    assert rev.reversed() == key


def test_empty_buffer():
    with pytest.raises(MalformedHeader):
        decode_flow_key(b"")


def test_too_short_for_ethernet():
    with pytest.raises(MalformedHeader):
        decode_flow_key(b"\x00\x01\x02\x03\x04")


@pytest.mark.parametrize("cut", [14 + 10, 14 + 20 + 8])
def test_truncated_tcp_headers(cut):
    data = build_packet("tcp")
    with pytest.raises(MalformedHeader):
        decode_flow_key(data[:cut])


def test_truncated_udp_header():
    data = build_packet("udp")
    with pytest.raises(MalformedHeader):
        decode_flow_key(data[:14 + 20 + 4])


def test_unsupported_ip_protocol():
    with pytest.raises(MalformedHeader, match="unsupported ip protocol 253"):
        decode_flow_key(build_packet(proto="other", ip_proto=253))


def test_non_ipv4_frame():
    pkt = packet.Packet()
    pkt.add_protocol(ethernet.ethernet(ethertype=ether_types.ETH_TYPE_ARP))
    pkt.add_protocol(arp.arp(src_ip="10.0.0.1", dst_ip=VIP))
    pkt.serialize()
    with pytest.raises(MalformedHeader, match="no IPv4 header"):
        decode_flow_key(bytes(pkt.data))
