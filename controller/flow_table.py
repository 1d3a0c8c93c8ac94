# controller/flow_table.py

"""
FlowTable: the controller's authoritative FlowKey -> backend mapping.

Per-key state machine:
    Absent --bind()--> Bound --unbind()/expiry/flush--> Absent
    Bound  --touch()--> Bound          (activity refresh only)

Concurrency:
- The table is striped into shards, each guarded by its own RLock.
  Operations on keys in different shards never contend.
- key_lock(key) exposes the shard lock so the core can run
  lookup -> select -> bind for one key as a single critical section.

Rule handles are the OpenFlow cookies of the rules enforcing a binding; they
are allocated here so they are unique per controller lifetime.
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from lb_errors import DuplicateBinding


# Upper 16 bits tag every rule installed by the load balancer
COOKIE_TAG = 0x0F1B << 48
COOKIE_TAG_MASK = 0xFFFF << 48


@dataclass
class FlowBinding:
    key: object
    server: object
    installed_at: float
    last_activity_at: float
    rule_handle: int
    # Where the flow entered the switch (needed for the reverse rule)
    dpid: Optional[int] = None
    in_port: Optional[int] = None
    client_mac: Optional[str] = None
    install_attempts: int = 0
    installed: bool = False
    # Last packet count reported by the switch for the forward rule
    packet_count: int = 0

    def idle_for(self, now: float) -> float:
        return now - self.last_activity_at


class _Shard:
    __slots__ = ("lock", "bindings")

    def __init__(self):
        self.lock = threading.RLock()
        self.bindings: Dict[object, FlowBinding] = {}


class FlowTable:
    def __init__(self, shards: int = 16):
        assert shards > 0, f"FlowTable: shards must be > 0, got {shards}"
        self._shards = [_Shard() for _ in range(shards)]
        self._handles: Dict[int, object] = {}
        self._handles_lock = threading.Lock()
        self._cookie_seq = itertools.count(1)

    def _shard(self, key) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def key_lock(self, key):
        return self._shard(key).lock

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------
    def lookup(self, key) -> Optional[FlowBinding]:
        shard = self._shard(key)
        with shard.lock:
            return shard.bindings.get(key)

    def bind(self, key, server, now: float, **extra) -> FlowBinding:
        """Record a new binding; raises DuplicateBinding if key is Bound."""
        shard = self._shard(key)
        with shard.lock:
            if key in shard.bindings:
                raise DuplicateBinding(key)
            with self._handles_lock:
                handle = COOKIE_TAG | next(self._cookie_seq)
                self._handles[handle] = key
            binding = FlowBinding(
                key=key,
                server=server,
                installed_at=now,
                last_activity_at=now,
                rule_handle=handle,
                **extra,
            )
            shard.bindings[key] = binding
            return binding

    def unbind(self, key) -> Optional[FlowBinding]:
        """Remove and return the binding; no-op (None) if key is Absent."""
        shard = self._shard(key)
        with shard.lock:
            binding = shard.bindings.pop(key, None)
            if binding is not None:
                with self._handles_lock:
                    self._handles.pop(binding.rule_handle, None)
            return binding

    def touch(self, key, now: float) -> bool:
        shard = self._shard(key)
        with shard.lock:
            binding = shard.bindings.get(key)
            if binding is None:
                return False
            if now > binding.last_activity_at:
                binding.last_activity_at = now
            return True

    def by_handle(self, rule_handle: int) -> Optional[FlowBinding]:
        with self._handles_lock:
            key = self._handles.get(rule_handle)
        if key is None:
            return None
        binding = self.lookup(key)
        if binding is None or binding.rule_handle != rule_handle:
            return None
        return binding

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------
    def pop_expired(self, now: float, idle_timeout: float) -> List[FlowBinding]:
        """Remove and return every binding idle for longer than idle_timeout."""
        removed = []
        for shard in self._shards:
            with shard.lock:
                stale = [k for k, b in shard.bindings.items() if b.idle_for(now) > idle_timeout]
                for k in stale:
                    removed.append(shard.bindings.pop(k))
        if removed:
            with self._handles_lock:
                for b in removed:
                    self._handles.pop(b.rule_handle, None)
        return removed

    def flush(self) -> List[FlowBinding]:
        removed = []
        for shard in self._shards:
            with shard.lock:
                removed.extend(shard.bindings.values())
                shard.bindings.clear()
        with self._handles_lock:
            for b in removed:
                self._handles.pop(b.rule_handle, None)
        return removed

    def bindings(self) -> List[FlowBinding]:
        out = []
        for shard in self._shards:
            with shard.lock:
                out.extend(shard.bindings.values())
        return out

    def __len__(self):
        return sum(len(s.bindings) for s in self._shards)

    def __contains__(self, key):
        return self.lookup(key) is not None
