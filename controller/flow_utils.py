# controller/flow_utils.py

"""
Utility functions for building OpenFlow matches/actions and installing/removing flows.

Architecture:
- Every rule enforcing a flow binding carries the binding's rule handle as
  its cookie; forward and reverse rules of one binding share the cookie.
- Deletion is always by cookie, so we only ever remove our own rules.
- All messages that make up one command share one xid, so an OFPErrorMsg
  and the closing OFPBarrierReply both point back at the command.

Design goals:
- Keep matching consistent with flow_key.FlowKey.
- Avoid silent behavior: if you forget a cookie, fail fast.
"""

from typing import Optional

from ryu.lib.packet import in_proto

from lb_errors import SwitchCommandFailed


IPV4_ETH_TYPE = 0x0800
COOKIE_MASK_ALL = 0xFFFFFFFFFFFFFFFF


def _send(datapath, msg, xid: Optional[int] = None):
    if xid is not None:
        msg.set_xid(int(xid))
    if datapath.send_msg(msg) is False:
        raise SwitchCommandFailed(type(msg).__name__, msg.xid, f"datapath {datapath.id} is terminating")
    return msg


# -------------------------------------------------------------------
# Match builders
# -------------------------------------------------------------------
def _l4_fields(protocol: int, src_port: int, dst_port: int):
    if protocol == in_proto.IPPROTO_TCP:
        return {"tcp_src": int(src_port), "tcp_dst": int(dst_port)}
    if protocol == in_proto.IPPROTO_UDP:
        return {"udp_src": int(src_port), "udp_dst": int(dst_port)}
    return {}


def build_forward_match(parser, key):
    """
    Build the FORWARD match for a flow (client -> VIP), exactly the FlowKey.
    """
    kwargs = {
        "eth_type": IPV4_ETH_TYPE,
        "ipv4_src": key.src,
        "ipv4_dst": key.dst,
        "ip_proto": int(key.protocol),
    }
    kwargs.update(_l4_fields(key.protocol, key.src_port, key.dst_port))
    return parser.OFPMatch(**kwargs)


def build_reverse_match(parser, key, server_ip: str):
    """
    Build the REVERSE match for a flow (server -> client).

    Reverse logic:
      - the source is the bound server, not the VIP (the server answers with
        its own address; the reverse rule rewrites it back)
      - ports swapped
    """
    kwargs = {
        "eth_type": IPV4_ETH_TYPE,
        "ipv4_src": str(server_ip),
        "ipv4_dst": key.src,
        "ip_proto": int(key.protocol),
    }
    kwargs.update(_l4_fields(key.protocol, key.dst_port, key.src_port))
    return parser.OFPMatch(**kwargs)


# -------------------------------------------------------------------
# Action builders
# -------------------------------------------------------------------
def build_forward_actions(parser, server):
    """
    DNAT VIP -> server, then output on the server's switch port.
    """
    assert server.port is not None, f"server {server.address} has no switch port"

    actions = [parser.OFPActionSetField(ipv4_dst=server.address)]
    if server.mac:
        actions.append(parser.OFPActionSetField(eth_dst=server.mac))
    actions.append(parser.OFPActionOutput(int(server.port)))
    return actions


def build_reverse_actions(parser, vip_ip: str, vip_mac: str, out_port: int, client_mac: Optional[str] = None):
    """
    SNAT server -> VIP, then output toward the client.
    """
    assert out_port is not None, "out_port must not be None"

    actions = [
        parser.OFPActionSetField(ipv4_src=vip_ip),
        parser.OFPActionSetField(eth_src=vip_mac),
    ]
    if client_mac:
        actions.append(parser.OFPActionSetField(eth_dst=client_mac))
    actions.append(parser.OFPActionOutput(int(out_port)))
    return actions


# -------------------------------------------------------------------
# Flow programming helpers
# -------------------------------------------------------------------
def add_flow(
    datapath,
    priority: int,
    match,
    actions,
    idle_timeout: int = 0,
    hard_timeout: int = 0,
    cookie: Optional[int] = None,
    flags: int = 0,
    buffer_id: Optional[int] = None,
    xid: Optional[int] = None,
):
    """
    Add a flow entry with APPLY_ACTIONS instruction; return the sent FlowMod.

    Cookie policy:
      - cookie MUST be provided (non-None) so flows can be removed deterministically.
    """
    assert cookie is not None, "add_flow: cookie must be provided (do not rely on cookie=0)"

    ofproto = datapath.ofproto
    parser = datapath.ofproto_parser

    inst = [parser.OFPInstructionActions(ofproto.OFPIT_APPLY_ACTIONS, actions)]

    kwargs = dict(
        datapath=datapath,
        cookie=int(cookie),
        priority=int(priority),
        match=match,
        instructions=inst,
        idle_timeout=int(idle_timeout),
        hard_timeout=int(hard_timeout),
        flags=int(flags),
    )
    if buffer_id is not None:
        kwargs["buffer_id"] = int(buffer_id)

    return _send(datapath, parser.OFPFlowMod(**kwargs), xid)


def delete_flows_for_cookie(datapath, cookie: int, cookie_mask: int = COOKIE_MASK_ALL,
                            table_id: Optional[int] = None, xid: Optional[int] = None):
    """
    Delete flows that match the given cookie (masked).

    table_id:
      - if None: applies to all tables
      - else: restrict deletion to a specific table
    """
    ofproto = datapath.ofproto
    parser = datapath.ofproto_parser

    kwargs = dict(
        datapath=datapath,
        command=ofproto.OFPFC_DELETE,
        out_port=ofproto.OFPP_ANY,
        out_group=ofproto.OFPG_ANY,
        cookie=int(cookie),
        cookie_mask=int(cookie_mask),
        match=parser.OFPMatch(),
    )

    kwargs["table_id"] = ofproto.OFPTT_ALL if table_id is None else int(table_id)

    return _send(datapath, parser.OFPFlowMod(**kwargs), xid)


def send_packet_out(datapath, actions, in_port: int, buffer_id: Optional[int] = None,
                    data: Optional[bytes] = None, xid: Optional[int] = None):
    """
    Packet-out either a switch-buffered packet (buffer_id) or raw bytes (data).
    """
    ofproto = datapath.ofproto
    parser = datapath.ofproto_parser

    if buffer_id is None or buffer_id == ofproto.OFP_NO_BUFFER:
        assert data, "send_packet_out: data is required when the packet is not buffered"
        buffer_id = ofproto.OFP_NO_BUFFER
    else:
        data = None

    out = parser.OFPPacketOut(
        datapath=datapath,
        buffer_id=int(buffer_id),
        in_port=int(in_port),
        actions=actions,
        data=data,
    )
    return _send(datapath, out, xid)


def send_barrier(datapath, xid: Optional[int] = None):
    parser = datapath.ofproto_parser
    return _send(datapath, parser.OFPBarrierRequest(datapath), xid)


def request_flow_stats(datapath, cookie: int, cookie_mask: int):
    """Request statistics for the flows tagged with (cookie, cookie_mask)."""
    ofproto = datapath.ofproto
    parser = datapath.ofproto_parser
    req = parser.OFPFlowStatsRequest(
        datapath,
        0,
        ofproto.OFPTT_ALL,
        ofproto.OFPP_ANY,
        ofproto.OFPG_ANY,
        int(cookie),
        int(cookie_mask),
        parser.OFPMatch(),
    )
    return _send(datapath, req)
