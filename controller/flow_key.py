# controller/flow_key.py

"""
Flow key codec: raw packet bytes (as carried by an OFPPacketIn) -> FlowKey.

Direction policy:
- Keys are DIRECTIONAL and client-origin: (client addr/port) -> (VIP addr/port).
- Return traffic never reaches the controller: the reverse (server -> client)
  rule is installed together with the forward rule, built from
  FlowKey.reversed() with the VIP replaced by the bound server address.

Supported: Ethernet (optionally VLAN-tagged) + IPv4 + TCP/UDP/ICMP.
Anything else raises MalformedHeader.
"""

from __future__ import annotations

from dataclasses import dataclass

from ryu.lib.packet import packet
from ryu.lib.packet import ethernet
from ryu.lib.packet import ipv4
from ryu.lib.packet import tcp
from ryu.lib.packet import udp
from ryu.lib.packet import icmp
from ryu.lib.packet import in_proto

from lb_errors import MalformedHeader


PROTOCOL_NAMES = {
    in_proto.IPPROTO_TCP: "tcp",
    in_proto.IPPROTO_UDP: "udp",
    in_proto.IPPROTO_ICMP: "icmp",
}


@dataclass(frozen=True)
class FlowKey:
    protocol: int
    src: str
    dst: str
    src_port: int = 0
    dst_port: int = 0

    @property
    def client(self) -> str:
        return self.src

    def reversed(self) -> "FlowKey":
        return FlowKey(self.protocol, self.dst, self.src, self.dst_port, self.src_port)

    def __str__(self):
        name = PROTOCOL_NAMES.get(self.protocol, str(self.protocol))
        if self.protocol == in_proto.IPPROTO_ICMP:
            return f"{name} {self.src} -> {self.dst}"
        return f"{name} {self.src}:{self.src_port} -> {self.dst}:{self.dst_port}"


def decode_flow_key(data) -> FlowKey:
    """
    Parse raw packet bytes into a FlowKey.

    Raises MalformedHeader when a header is truncated or the packet is not
    IPv4 TCP/UDP/ICMP.
    """
    if not data:
        raise MalformedHeader("empty packet buffer")

    try:
        pkt = packet.Packet(bytes(data))
    except Exception as e:
        raise MalformedHeader(f"unparseable packet: {e}") from e

    eth = pkt.get_protocol(ethernet.ethernet)
    if eth is None:
        raise MalformedHeader(f"buffer too short for ethernet ({len(data)} bytes)")

    ip_pkt = pkt.get_protocol(ipv4.ipv4)
    if ip_pkt is None:
        raise MalformedHeader(f"no IPv4 header (ethertype=0x{eth.ethertype:04x}, {len(data)} bytes)")

    proto = ip_pkt.proto
    if proto == in_proto.IPPROTO_TCP:
        l4 = pkt.get_protocol(tcp.tcp)
    elif proto == in_proto.IPPROTO_UDP:
        l4 = pkt.get_protocol(udp.udp)
    elif proto == in_proto.IPPROTO_ICMP:
        if pkt.get_protocol(icmp.icmp) is None:
            raise MalformedHeader("buffer too short for icmp header")
        return FlowKey(proto, ip_pkt.src, ip_pkt.dst)
    else:
        raise MalformedHeader(f"unsupported ip protocol {proto}")

    if l4 is None:
        raise MalformedHeader(f"buffer too short for {PROTOCOL_NAMES[proto]} header")

    return FlowKey(proto, ip_pkt.src, ip_pkt.dst, int(l4.src_port), int(l4.dst_port))
