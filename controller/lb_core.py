# controller/lb_core.py

"""
LoadBalancerCore: switch events in, switch commands out.

This module MUST NOT define a RyuApp.
It owns the flow table, the server pool and the selection policy, and talks
to the datapath only through a SwitchAdapter.

Event handling:
  NewFlow      key Absent  -> select, bind, InstallRule
               key Bound   -> ForwardPacket to the bound server (no selection)
  FlowRemoved  binding     -> unbind, DeleteRule for the companion reverse rule
  PortStatus   server port -> pool.mark_down / pool.mark_up
  malformed header / empty pool -> drop, log, count

Switch commands are fire-and-forget. The adapter returns a transaction id;
the result arrives later via on_command_acked() / on_command_failed(), or the
command times out in sweep(). Failed installs are retried up to
max_install_retries times, then the flow is abandoned.
"""

from __future__ import annotations

import collections
import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from event_dispatcher import EventDispatcher
from flow_key import decode_flow_key
from flow_table import FlowBinding, FlowTable
from lb_errors import MalformedHeader, NoServersAvailable, SwitchCommandFailed
from selection_policy import make_policy
from server_pool import ServerID, ServerPool


# -------------------------------------------------------------------
# Switch-originated events
# -------------------------------------------------------------------
@dataclass(frozen=True)
class NewFlow:
    dpid: int
    in_port: int
    data: bytes
    buffer_id: Optional[int] = None
    eth_src: Optional[str] = None


@dataclass(frozen=True)
class FlowRemoved:
    dpid: int
    rule_handle: int
    reason: str = "idle"        # idle | hard | delete
    duration_sec: float = 0.0
    byte_count: int = 0


@dataclass(frozen=True)
class PortStatus:
    dpid: int
    port_no: int
    is_up: bool


# -------------------------------------------------------------------
# Switch adapter boundary
# -------------------------------------------------------------------
class SwitchAdapter:
    """
    Outbound command interface.

    install_rule / delete_rule return a transaction id (or None when the
    transport has no acknowledgement channel) and raise SwitchCommandFailed
    when the command cannot even be sent.
    """

    def install_rule(self, binding: FlowBinding, idle_timeout: int, hard_timeout: int,
                     buffer_id: Optional[int] = None, data: Optional[bytes] = None) -> Optional[int]:
        raise NotImplementedError

    def delete_rule(self, dpid: int, rule_handle: int) -> Optional[int]:
        raise NotImplementedError

    def forward_packet(self, binding: FlowBinding, in_port: int,
                       buffer_id: Optional[int] = None, data: Optional[bytes] = None):
        raise NotImplementedError


@dataclass
class _PendingCommand:
    kind: str                   # install | delete
    binding: FlowBinding
    deadline: float
    attempts: int = 1


class LoadBalancerCore:
    def __init__(
        self,
        config,
        adapter: SwitchAdapter,
        *,
        policy=None,
        pool: Optional[ServerPool] = None,
        table: Optional[FlowTable] = None,
        dispatcher: Optional[EventDispatcher] = None,
        clock=time.monotonic,
        logger=None,
    ):
        self.config = config
        self.adapter = adapter
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

        self.pool = pool if pool is not None else ServerPool(config.servers)
        self.policy = policy if policy is not None else make_policy(config)
        self.table = table if table is not None else FlowTable()
        self.dispatcher = dispatcher if dispatcher is not None else EventDispatcher(
            config.workers, logger=self.logger
        )

        self.stats = collections.Counter()
        self._stats_lock = threading.Lock()

        self._pending: Dict[int, _PendingCommand] = {}
        self._pending_lock = threading.Lock()

        self.logger.info(
            "LB core ready: policy=%s servers=%s idle_timeout=%ss",
            self.policy.name, [s.address for s in self.pool.all_servers()], config.idle_timeout,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self):
        self.dispatcher.start()

    def stop(self):
        self.dispatcher.stop()

    # ------------------------------------------------------------------
    # Event entry point (sharded by flow)
    # ------------------------------------------------------------------
    def dispatch(self, ev):
        if isinstance(ev, NewFlow):
            key = self._decode(ev)
            if key is not None:
                self.dispatcher.submit(key, self.handle_new_flow, ev, key)
        elif isinstance(ev, FlowRemoved):
            binding = self.table.by_handle(ev.rule_handle)
            shard_key = binding.key if binding is not None else ev.rule_handle
            self.dispatcher.submit(shard_key, self.handle_flow_removed, ev)
        elif isinstance(ev, PortStatus):
            self.handle_port_status(ev)
        else:
            raise TypeError(f"unsupported event {ev!r}")

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------
    def handle_new_flow(self, ev: NewFlow, key=None) -> Optional[FlowBinding]:
        """Return the binding serving the flow, or None if the packet was dropped."""
        if key is None:
            key = self._decode(ev)
            if key is None:
                return None

        now = self.clock()
        with self.table.key_lock(key):
            binding = self.table.lookup(key)
            if binding is not None:
                # Cache hit: a second packet raced the install
                self.table.touch(key, now)
                self._count("cache_hits")
                self.logger.debug("LB: %s already bound to %s", key, binding.server.address)
                hit = True
            else:
                hit = False
                try:
                    server = self.policy.select(key, self.pool)
                except NoServersAvailable as e:
                    self._count("no_servers_available")
                    self.logger.warning("LB: dropping new flow %s: %s", key, e)
                    return None

                binding = self.table.bind(
                    key, server, now,
                    dpid=ev.dpid, in_port=ev.in_port, client_mac=ev.eth_src,
                )
                self._count("flows_bound")
                self.logger.info(
                    "LB[%s]: %s -> %s (handle=0x%x)",
                    self.policy.name, key, server.address, binding.rule_handle,
                )

        if hit:
            self._forward(binding, ev)
        else:
            self._install(binding, buffer_id=ev.buffer_id, data=ev.data)
        return binding

    def handle_flow_removed(self, ev: FlowRemoved) -> Optional[FlowBinding]:
        binding = self.table.by_handle(ev.rule_handle)
        if binding is None:
            self.logger.debug("LB: flow removed for unknown handle 0x%x (reason=%s)", ev.rule_handle, ev.reason)
            return None

        with self.table.key_lock(binding.key):
            removed = self.table.unbind(binding.key)
        if removed is None:
            return None

        self._count("flows_removed")
        self.logger.info(
            "LB: flow %s -> %s removed by switch (reason=%s duration=%ss bytes=%s)",
            removed.key, removed.server.address, ev.reason, ev.duration_sec, ev.byte_count,
        )
        if ev.reason != "delete":
            # Forward rule expired on the switch; its reverse rule did not
            self._delete(removed)
        return removed

    def handle_port_status(self, ev: PortStatus) -> Optional[ServerID]:
        server = self.pool.by_port(ev.port_no)
        if server is None:
            return None

        if ev.is_up:
            if self.pool.mark_up(server.address):
                self.logger.info("LB: server %s UP (port %s)", server.address, ev.port_no)
        else:
            if self.pool.mark_down(server.address):
                # Existing bindings keep forwarding to this server
                self.logger.warning("LB: server %s DOWN (port %s)", server.address, ev.port_no)
        return server

    def handle_flow_stats(self, entries: Iterable[Tuple[int, int]]) -> int:
        """
        Refresh bindings from switch flow statistics.

        entries: (rule_handle, packet_count) per forward rule.
        Return the number of bindings whose activity was refreshed.
        """
        now = self.clock()
        refreshed = 0
        for handle, packet_count in entries:
            binding = self.table.by_handle(handle)
            if binding is None:
                continue
            with self.table.key_lock(binding.key):
                if packet_count > binding.packet_count:
                    binding.packet_count = packet_count
                    if self.table.touch(binding.key, now):
                        refreshed += 1
        if refreshed:
            self._count("activity_refreshes", refreshed)
        return refreshed

    # ------------------------------------------------------------------
    # Command acknowledgement channel
    # ------------------------------------------------------------------
    def on_command_acked(self, xid: int):
        with self._pending_lock:
            cmd = self._pending.pop(xid, None)
        if cmd is None:
            return
        if cmd.kind == "install":
            cmd.binding.installed = True
            self.logger.debug("LB: rule 0x%x installed (xid=%s)", cmd.binding.rule_handle, xid)

    def on_command_failed(self, xid: int, reason: str = "rejected"):
        with self._pending_lock:
            cmd = self._pending.pop(xid, None)
        if cmd is None:
            return
        self._command_failed(cmd, SwitchCommandFailed(cmd.kind, xid, reason))

    def check_command_timeouts(self, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        with self._pending_lock:
            late = [(xid, c) for xid, c in self._pending.items() if c.deadline <= now]
            for xid, _ in late:
                del self._pending[xid]
        for xid, cmd in late:
            self._command_failed(cmd, SwitchCommandFailed(cmd.kind, xid, "timed out"))
        return len(late)

    # ------------------------------------------------------------------
    # Periodic work
    # ------------------------------------------------------------------
    def sweep(self, now: Optional[float] = None) -> List[FlowBinding]:
        """Expire idle bindings (one DeleteRule each) and time out commands."""
        now = self.clock() if now is None else now
        expired = self.table.pop_expired(now, self.config.idle_timeout)
        for binding in expired:
            self._count("flows_expired")
            self.logger.info(
                "LB: flow %s -> %s idle for %.1fs, expiring",
                binding.key, binding.server.address, binding.idle_for(now),
            )
            self._delete(binding)
        self.check_command_timeouts(now)
        return expired

    # ------------------------------------------------------------------
    # Administrative operations
    # ------------------------------------------------------------------
    def mark_down(self, address: str) -> bool:
        return self.pool.mark_down(address)

    def mark_up(self, address: str) -> bool:
        return self.pool.mark_up(address)

    def add_server(self, server: ServerID):
        self.pool.add(server)
        self.logger.info("LB: server %s added", server.address)

    def remove_server(self, address: str) -> Optional[ServerID]:
        removed = self.pool.remove(address)
        if removed is not None:
            self.logger.info("LB: server %s removed", address)
        return removed

    def flush(self) -> List[FlowBinding]:
        removed = self.table.flush()
        for binding in removed:
            self._delete(binding)
        self.logger.info("LB: flushed %d bindings", len(removed))
        return removed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _decode(self, ev: NewFlow):
        try:
            return decode_flow_key(ev.data)
        except MalformedHeader as e:
            self._count("malformed_header")
            self.logger.warning("LB: dropping packet from dpid=%s port=%s: %s", ev.dpid, ev.in_port, e)
            return None

    def _install(self, binding: FlowBinding, buffer_id=None, data=None):
        binding.install_attempts += 1
        try:
            xid = self.adapter.install_rule(
                binding,
                idle_timeout=int(self.config.idle_timeout),
                hard_timeout=int(self.config.hard_timeout),
                buffer_id=buffer_id,
                data=data,
            )
        except SwitchCommandFailed as e:
            self._command_failed(_PendingCommand("install", binding, 0.0, binding.install_attempts), e)
            return
        self._count("rules_installed")
        if xid is None:
            binding.installed = True
            return
        self._track(xid, _PendingCommand("install", binding, self.clock() + self.config.command_timeout,
                                         binding.install_attempts))

    def _delete(self, binding: FlowBinding, attempts: int = 1):
        try:
            xid = self.adapter.delete_rule(binding.dpid, binding.rule_handle)
        except SwitchCommandFailed as e:
            self._command_failed(_PendingCommand("delete", binding, 0.0, attempts), e)
            return
        self._count("rules_deleted")
        if xid is not None:
            self._track(xid, _PendingCommand("delete", binding, self.clock() + self.config.command_timeout,
                                             attempts))

    def _forward(self, binding: FlowBinding, ev: NewFlow):
        try:
            self.adapter.forward_packet(binding, ev.in_port, buffer_id=ev.buffer_id, data=ev.data)
            self._count("packets_forwarded")
        except SwitchCommandFailed as e:
            self._count("forward_failures")
            self.logger.warning("LB: packet out for %s failed: %s", binding.key, e)

    def _track(self, xid: int, cmd: _PendingCommand):
        with self._pending_lock:
            self._pending[xid] = cmd

    def _command_failed(self, cmd: _PendingCommand, err: SwitchCommandFailed):
        binding = cmd.binding
        retries = self.config.max_install_retries

        if cmd.kind == "delete":
            self._count("delete_failures")
            if cmd.attempts <= retries:
                self.logger.warning("LB: %s; retrying delete of 0x%x", err, binding.rule_handle)
                self._delete(binding, attempts=cmd.attempts + 1)
            else:
                self.logger.error("LB: giving up deleting rule 0x%x for %s: %s",
                                  binding.rule_handle, binding.key, err)
            return

        self._count("install_failures")
        if self.table.by_handle(binding.rule_handle) is None:
            # Flow already gone (removed, expired or flushed)
            return

        if binding.install_attempts <= retries:
            self._count("install_retries")
            self.logger.warning("LB: %s; reinstalling %s (attempt %d/%d)",
                                err, binding.key, binding.install_attempts + 1, retries + 1)
            self._install(binding)
            return

        with self.table.key_lock(binding.key):
            abandoned = self.table.unbind(binding.key)
        if abandoned is None:
            return
        self._count("flows_abandoned")
        self.logger.error("LB: abandoning flow %s -> %s after %d install attempts: %s",
                          binding.key, binding.server.address, binding.install_attempts, err)
        self._delete(binding)

    def _count(self, name: str, n: int = 1):
        with self._stats_lock:
            self.stats[name] += n

    def pending_commands(self) -> int:
        with self._pending_lock:
            return len(self._pending)
