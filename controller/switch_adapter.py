# controller/switch_adapter.py

"""
RyuSwitchAdapter: LoadBalancerCore commands -> OpenFlow 1.3 messages.

One command = one xid:
  InstallRule   forward FlowMod (SEND_FLOW_REM, idle timeout)
                + reverse FlowMod (no idle timeout, removed by cookie)
                + PacketOut of the triggering packet when it is not buffered
                + BarrierRequest
  DeleteRule    FlowMod DELETE by cookie + BarrierRequest
  ForwardPacket PacketOut (best effort, no acknowledgement)

The OFPBarrierReply / OFPErrorMsg carrying that xid is fed back to the core by
the RyuApp.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from flow_utils import (
    add_flow,
    build_forward_actions,
    build_forward_match,
    build_reverse_actions,
    build_reverse_match,
    delete_flows_for_cookie,
    send_barrier,
    send_packet_out,
)
from lb_core import SwitchAdapter
from lb_errors import SwitchCommandFailed


class RyuSwitchAdapter(SwitchAdapter):
    def __init__(self, *, datapaths: Dict[int, Any], vip_ip: str, vip_mac: str, flow_priority: int, logger):
        self.datapaths = datapaths
        self.vip_ip = str(vip_ip)
        self.vip_mac = str(vip_mac)
        self.flow_priority = int(flow_priority)
        self.logger = logger

    def _datapath(self, command: str, dpid):
        dp = self.datapaths.get(dpid)
        if dp is None:
            raise SwitchCommandFailed(command, None, f"datapath {dpid} not connected")
        return dp

    def install_rule(self, binding, idle_timeout, hard_timeout, buffer_id=None, data=None) -> Optional[int]:
        dp = self._datapath("install", binding.dpid)
        ofproto = dp.ofproto
        parser = dp.ofproto_parser

        key = binding.key
        server = binding.server
        buffered = buffer_id is not None and buffer_id != ofproto.OFP_NO_BUFFER

        fwd_actions = build_forward_actions(parser, server)
        mod = add_flow(
            dp,
            priority=self.flow_priority,
            match=build_forward_match(parser, key),
            actions=fwd_actions,
            idle_timeout=idle_timeout,
            hard_timeout=hard_timeout,
            cookie=binding.rule_handle,
            flags=ofproto.OFPFF_SEND_FLOW_REM,
            buffer_id=buffer_id if buffered else None,
        )
        xid = mod.xid

        rev_actions = build_reverse_actions(
            parser, self.vip_ip, self.vip_mac, out_port=binding.in_port, client_mac=binding.client_mac
        )
        add_flow(
            dp,
            priority=self.flow_priority,
            match=build_reverse_match(parser, key, server.address),
            actions=rev_actions,
            idle_timeout=0,
            hard_timeout=hard_timeout,
            cookie=binding.rule_handle,
            xid=xid,
        )

        if not buffered and data:
            send_packet_out(dp, fwd_actions, in_port=binding.in_port, data=data, xid=xid)

        send_barrier(dp, xid=xid)
        self.logger.debug("Install %s -> %s port %s (cookie=0x%x xid=%s)",
                          key, server.address, server.port, binding.rule_handle, xid)
        return xid

    def delete_rule(self, dpid, rule_handle) -> Optional[int]:
        dp = self._datapath("delete", dpid)
        mod = delete_flows_for_cookie(dp, cookie=rule_handle)
        send_barrier(dp, xid=mod.xid)
        self.logger.debug("Delete rules with cookie=0x%x on dpid=%s (xid=%s)", rule_handle, dpid, mod.xid)
        return mod.xid

    def forward_packet(self, binding, in_port, buffer_id=None, data=None):
        dp = self._datapath("forward", binding.dpid)
        actions = build_forward_actions(dp.ofproto_parser, binding.server)
        send_packet_out(dp, actions, in_port=in_port, buffer_id=buffer_id, data=data)
