# controller/lb_app.py

"""
LoadBalancerApp: the ONLY RyuApp loaded by ryu-manager.

Responsibilities:
- Own the datapath registry and the Ryu-facing timers (idle sweep, flow stats).
- Translate OpenFlow events into LoadBalancerCore events:
    PacketIn (to VIP)   -> NewFlow
    FlowRemoved         -> FlowRemoved
    PortStatus          -> PortStatus
    BarrierReply        -> command acknowledged
    ErrorMsg            -> command failed
    FlowStatsReply      -> binding activity refresh
- Answer ARP for the VIP.
- Delegate every load-balancing decision to the core (plain Python module).

Usage:
    OFLB_TYPE=round-robin OFLB_SERVER_NUMBER=4 ryu-manager controller/lb_app.py
"""

from __future__ import annotations

import logging

from ryu.base import app_manager
from ryu.controller import ofp_event
from ryu.controller.handler import MAIN_DISPATCHER, DEAD_DISPATCHER, CONFIG_DISPATCHER, set_ev_cls
from ryu.ofproto import ofproto_v1_3
from ryu.lib import hub
from ryu.lib.packet import packet
from ryu.lib.packet import ethernet
from ryu.lib.packet import ether_types
from ryu.lib.packet import arp
from ryu.lib.packet import ipv4

from event_dispatcher import EventDispatcher
from flow_table import COOKIE_TAG, COOKIE_TAG_MASK
from flow_utils import add_flow, request_flow_stats, send_packet_out
from lb_config import load_config
from lb_core import FlowRemoved, LoadBalancerCore, NewFlow, PortStatus
from lb_errors import ConfigurationInvalid
from switch_adapter import RyuSwitchAdapter


class LoadBalancerApp(app_manager.RyuApp):
    """
    LoadBalancerApp orchestrator.

    Key idea:
      - Unmatched packets reach the controller through a table-miss rule.
      - The first packet of a client flow to the VIP installs a per-flow
        forward (DNAT) + reverse (SNAT) rule pair; later packets stay in the
        datapath until the rule idles out.
    """

    OFP_VERSIONS = [ofproto_v1_3.OFP_VERSION]

    def __init__(self, *args, **kwargs):
        super(LoadBalancerApp, self).__init__(*args, **kwargs)

        try:
            self.conf = load_config()
        except ConfigurationInvalid as e:
            self.logger.error("Refusing to start load balancer: %s", e)
            raise

        logging.getLogger().setLevel(logging.WARNING)
        self.logger.setLevel(logging.INFO if self.conf.verbose else logging.WARNING)

        self.datapaths = {}

        adapter = RyuSwitchAdapter(
            datapaths=self.datapaths,
            vip_ip=self.conf.vip_ip,
            vip_mac=self.conf.vip_mac,
            flow_priority=self.conf.flow_priority,
            logger=self.logger,
        )
        dispatcher = EventDispatcher(
            self.conf.workers,
            spawn=hub.spawn,
            queue_factory=hub.Queue,
            logger=self.logger,
        )
        self.core = LoadBalancerCore(self.conf, adapter, dispatcher=dispatcher, logger=self.logger)
        self.core.start()

        self._running = True
        self.sweep_thread = hub.spawn(self._sweeper)
        self.stats_thread = hub.spawn(self._stats_poller)

        self.logger.info(
            "LoadBalancerApp initialized: policy=%s vip=%s servers=%s",
            self.conf.policy, self.conf.vip_ip, [s.address for s in self.conf.servers],
        )

    def close(self):
        self._running = False
        for t in (self.sweep_thread, self.stats_thread):
            if t is not None:
                hub.kill(t)
        self.core.stop()
        self.logger.info("LoadBalancerApp stopped: stats=%s", dict(self.core.stats))

    # ------------------------------------------------------------------
    # Datapath state tracking
    # ------------------------------------------------------------------
    @set_ev_cls(ofp_event.EventOFPStateChange, [MAIN_DISPATCHER, DEAD_DISPATCHER])
    def _state_change_handler(self, ev):
        dp = ev.datapath
        dpid = dp.id

        if ev.state == MAIN_DISPATCHER:
            if dpid not in self.datapaths:
                self.datapaths[dpid] = dp
                self.logger.info("Register datapath: %s", dpid)

        elif ev.state == DEAD_DISPATCHER:
            if dpid in self.datapaths:
                self.logger.warning("Unregister datapath: %s", dpid)
                del self.datapaths[dpid]

    @set_ev_cls(ofp_event.EventOFPSwitchFeatures, CONFIG_DISPATCHER)
    def _switch_features_handler(self, ev):
        dp = ev.msg.datapath
        ofproto = dp.ofproto
        parser = dp.ofproto_parser

        # Table-miss -> controller
        match = parser.OFPMatch()
        actions = [parser.OFPActionOutput(ofproto.OFPP_CONTROLLER, ofproto.OFPCML_NO_BUFFER)]

        add_flow(
            dp,
            priority=0,
            match=match,
            actions=actions,
            idle_timeout=0,
            hard_timeout=0,
            cookie=0,  # not ours, just a bootstrap rule
        )

    # ------------------------------------------------------------------
    # New flows
    # ------------------------------------------------------------------
    @set_ev_cls(ofp_event.EventOFPPacketIn, MAIN_DISPATCHER)
    def _packet_in_handler(self, ev):
        msg = ev.msg
        dp = msg.datapath
        in_port = msg.match["in_port"]

        pkt = packet.Packet(msg.data)
        eth = pkt.get_protocol(ethernet.ethernet)
        if eth is None or eth.ethertype == ether_types.ETH_TYPE_LLDP:
            return

        if eth.ethertype == ether_types.ETH_TYPE_ARP:
            self._handle_arp(dp, in_port, pkt.get_protocol(arp.arp))
            return

        if eth.ethertype != ether_types.ETH_TYPE_IP:
            return

        ip_pkt = pkt.get_protocol(ipv4.ipv4)
        # Truncated IPv4 goes to the core so it is counted as malformed
        if ip_pkt is not None and ip_pkt.dst != self.conf.vip_ip:
            self.logger.debug("Ignoring non-VIP packet %s -> %s", ip_pkt.src, ip_pkt.dst)
            return

        self.core.dispatch(NewFlow(
            dpid=dp.id,
            in_port=in_port,
            data=msg.data,
            buffer_id=msg.buffer_id,
            eth_src=eth.src,
        ))

    def _handle_arp(self, dp, in_port, arp_pkt):
        """Reply to ARP requests for the VIP."""
        if arp_pkt is None:
            return
        if arp_pkt.opcode != arp.ARP_REQUEST or arp_pkt.dst_ip != self.conf.vip_ip:
            return

        reply = packet.Packet()
        reply.add_protocol(ethernet.ethernet(
            ethertype=ether_types.ETH_TYPE_ARP,
            dst=arp_pkt.src_mac,
            src=self.conf.vip_mac))
        reply.add_protocol(arp.arp(
            opcode=arp.ARP_REPLY,
            src_mac=self.conf.vip_mac,
            src_ip=self.conf.vip_ip,
            dst_mac=arp_pkt.src_mac,
            dst_ip=arp_pkt.src_ip))
        reply.serialize()

        parser = dp.ofproto_parser
        send_packet_out(
            dp,
            [parser.OFPActionOutput(in_port)],
            in_port=dp.ofproto.OFPP_CONTROLLER,
            data=reply.data,
        )
        self.logger.info("ARP reply: VIP %s -> %s", self.conf.vip_ip, arp_pkt.src_ip)

    # ------------------------------------------------------------------
    # Rule lifecycle
    # ------------------------------------------------------------------
    @set_ev_cls(ofp_event.EventOFPFlowRemoved, MAIN_DISPATCHER)
    def _flow_removed_handler(self, ev):
        msg = ev.msg
        if (msg.cookie & COOKIE_TAG_MASK) != COOKIE_TAG:
            return

        ofproto = msg.datapath.ofproto
        reasons = {
            ofproto.OFPRR_IDLE_TIMEOUT: "idle",
            ofproto.OFPRR_HARD_TIMEOUT: "hard",
            ofproto.OFPRR_DELETE: "delete",
        }
        self.core.dispatch(FlowRemoved(
            dpid=msg.datapath.id,
            rule_handle=msg.cookie,
            reason=reasons.get(msg.reason, str(msg.reason)),
            duration_sec=msg.duration_sec + msg.duration_nsec / 1e9,
            byte_count=msg.byte_count,
        ))

    @set_ev_cls(ofp_event.EventOFPBarrierReply, MAIN_DISPATCHER)
    def _barrier_reply_handler(self, ev):
        self.core.on_command_acked(ev.msg.xid)

    @set_ev_cls(ofp_event.EventOFPErrorMsg, [CONFIG_DISPATCHER, MAIN_DISPATCHER])
    def _error_msg_handler(self, ev):
        msg = ev.msg
        self.logger.warning("OFPErrorMsg from %s: xid=%s type=0x%02x code=0x%02x",
                            msg.datapath.id, msg.xid, msg.type, msg.code)
        self.core.on_command_failed(msg.xid, f"type=0x{msg.type:02x} code=0x{msg.code:02x}")

    # ------------------------------------------------------------------
    # Server liveness via OFPPortStatus
    # ------------------------------------------------------------------
    @set_ev_cls(ofp_event.EventOFPPortStatus, MAIN_DISPATCHER)
    def _port_status_handler(self, ev):
        msg = ev.msg
        dp = msg.datapath
        ofproto = dp.ofproto

        is_down = bool(msg.desc.state & ofproto.OFPPS_LINK_DOWN) or msg.reason == ofproto.OFPPR_DELETE
        self.core.dispatch(PortStatus(dpid=dp.id, port_no=msg.desc.port_no, is_up=not is_down))

    # ------------------------------------------------------------------
    # Timers: idle sweep + flow stats activity refresh
    # ------------------------------------------------------------------
    def _sweeper(self):
        while self._running:
            hub.sleep(self.conf.sweep_interval)
            self.core.sweep()

    def _stats_poller(self):
        while self._running:
            hub.sleep(self.conf.stats_interval)
            for dp in list(self.datapaths.values()):
                request_flow_stats(dp, cookie=COOKIE_TAG, cookie_mask=COOKIE_TAG_MASK)

    @set_ev_cls(ofp_event.EventOFPFlowStatsReply, MAIN_DISPATCHER)
    def _flow_stats_reply_handler(self, ev):
        entries = []
        for stat in ev.msg.body:
            # Only forward rules see client traffic
            if "ipv4_dst" in stat.match and stat.match["ipv4_dst"] == self.conf.vip_ip:
                entries.append((stat.cookie, stat.packet_count))
        if entries:
            self.core.handle_flow_stats(entries)
