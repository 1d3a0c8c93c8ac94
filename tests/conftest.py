import itertools

import pytest

from ryu.ofproto import ofproto_v1_3
from ryu.ofproto import ofproto_v1_3_parser
from ryu.lib.packet import packet
from ryu.lib.packet import ethernet
from ryu.lib.packet import ether_types
from ryu.lib.packet import ipv4
from ryu.lib.packet import tcp
from ryu.lib.packet import udp
from ryu.lib.packet import icmp
from ryu.lib.packet import in_proto

from lb_config import load_config
from lb_core import LoadBalancerCore, NewFlow, SwitchAdapter
from lb_errors import SwitchCommandFailed


VIP = "10.1.1.100"
CLIENT_MAC = "00:00:00:00:02:01"


# -------------------------------------------------------------------
# Packets
# -------------------------------------------------------------------
def build_packet(proto="tcp", src="10.0.0.1", dst=VIP, sport=40000, dport=80, ip_proto=None):
    pkt = packet.Packet()
    pkt.add_protocol(ethernet.ethernet(ethertype=ether_types.ETH_TYPE_IP, src=CLIENT_MAC, dst="02:00:00:00:01:64"))

    if proto == "tcp":
        pkt.add_protocol(ipv4.ipv4(src=src, dst=dst, proto=in_proto.IPPROTO_TCP))
        pkt.add_protocol(tcp.tcp(src_port=sport, dst_port=dport, bits=tcp.TCP_SYN))
    elif proto == "udp":
        pkt.add_protocol(ipv4.ipv4(src=src, dst=dst, proto=in_proto.IPPROTO_UDP))
        pkt.add_protocol(udp.udp(src_port=sport, dst_port=dport))
        pkt.add_protocol(b"hello")
    elif proto == "icmp":
        pkt.add_protocol(ipv4.ipv4(src=src, dst=dst, proto=in_proto.IPPROTO_ICMP))
        pkt.add_protocol(icmp.icmp(type_=icmp.ICMP_ECHO_REQUEST, code=0, csum=0,
                                   data=icmp.echo(id_=1, seq=1, data=b"ping")))
    else:
        pkt.add_protocol(ipv4.ipv4(src=src, dst=dst, proto=ip_proto))
        pkt.add_protocol(b"\x01\x02\x03\x04opaque")

    pkt.serialize()
    return bytes(pkt.data)


def new_flow(src="10.0.0.1", sport=40000, dport=80, proto="tcp", dpid=1, in_port=5, buffer_id=None):
    return NewFlow(
        dpid=dpid,
        in_port=in_port,
        data=build_packet(proto=proto, src=src, sport=sport, dport=dport),
        buffer_id=buffer_id,
        eth_src=CLIENT_MAC,
    )


# -------------------------------------------------------------------
# Fake switch adapter: records every command emitted by the core
# -------------------------------------------------------------------
class FakeAdapter(SwitchAdapter):
    def __init__(self):
        self.installs = []
        self.deletes = []
        self.forwards = []
        self._xid = itertools.count(1)
        # Remaining send-time failures per command kind
        self.fail_next = {"install": 0, "delete": 0}
        # When False, install/delete return None (no acknowledgement channel)
        self.with_xid = True

    def _maybe_fail(self, kind):
        if self.fail_next[kind] > 0:
            self.fail_next[kind] -= 1
            raise SwitchCommandFailed(kind, None, "datapath not connected")

    def install_rule(self, binding, idle_timeout, hard_timeout, buffer_id=None, data=None):
        self._maybe_fail("install")
        xid = next(self._xid) if self.with_xid else None
        self.installs.append((xid, binding.key, binding.server.address, idle_timeout))
        return xid

    def delete_rule(self, dpid, rule_handle):
        self._maybe_fail("delete")
        xid = next(self._xid) if self.with_xid else None
        self.deletes.append((xid, rule_handle))
        return xid

    def forward_packet(self, binding, in_port, buffer_id=None, data=None):
        self.forwards.append((binding.key, binding.server.address, in_port))

    @property
    def commands(self):
        return len(self.installs) + len(self.deletes) + len(self.forwards)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


# -------------------------------------------------------------------
# Fake datapath: Ryu's OpenFlow 1.3 parser, messages recorded
# -------------------------------------------------------------------
class FakeDatapath:
    def __init__(self, dpid=1):
        self.id = dpid
        self.ofproto = ofproto_v1_3
        self.ofproto_parser = ofproto_v1_3_parser
        self.sent = []
        self.connected = True
        self._xid = itertools.count(100)

    def set_xid(self, msg):
        msg.set_xid(next(self._xid))
        return msg.xid

    def send_msg(self, msg):
        if not self.connected:
            return False
        if msg.xid is None:
            self.set_xid(msg)
        self.sent.append(msg)
        return True


# -------------------------------------------------------------------
# Fixtures
# -------------------------------------------------------------------
def make_config(**overrides):
    base = {"workers": 0, "random_seed": 7}
    base.update(overrides)
    return load_config(overrides=base, environ={})


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_core(adapter, clock):
    def _make(**overrides):
        policy = overrides.pop("policy_obj", None)
        conf = make_config(**overrides)
        return LoadBalancerCore(conf, adapter, policy=policy, clock=clock)

    return _make


@pytest.fixture
def datapath():
    return FakeDatapath()
