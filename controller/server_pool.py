# controller/server_pool.py

"""
ServerPool: the ordered set of backend servers eligible for new flows.

Notes:
- Order is insertion order; round-robin rotates in this order.
- Liveness is reported from outside (PortStatus, administrative calls).
  members() never returns a server marked down.
- The pool owns no flow state: marking a server down does not touch
  bindings that already point at it.
"""

from __future__ import annotations

import dataclasses
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class ServerID:
    address: str
    weight: int = 1
    alive: bool = field(default=True, compare=False)
    # Datapath coordinates used by the switch adapter
    mac: Optional[str] = None
    port: Optional[int] = None

    def __str__(self):
        return self.address


class ServerPool:
    def __init__(self, servers=()):
        self._servers: List[ServerID] = []
        self._lock = threading.Lock()
        # Bumped on every change of the live membership
        self.version = 0
        for s in servers:
            self.add(s)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def members(self) -> Tuple[ServerID, ...]:
        with self._lock:
            return tuple(s for s in self._servers if s.alive)

    def all_servers(self) -> Tuple[ServerID, ...]:
        with self._lock:
            return tuple(self._servers)

    def get(self, address: str) -> Optional[ServerID]:
        with self._lock:
            idx = self._index_of(address)
            return None if idx is None else self._servers[idx]

    def by_port(self, port: int) -> Optional[ServerID]:
        with self._lock:
            for s in self._servers:
                if s.port is not None and s.port == port:
                    return s
            return None

    def __len__(self):
        with self._lock:
            return len(self._servers)

    def __contains__(self, address):
        return self.get(address) is not None

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------
    def mark_down(self, address: str) -> bool:
        """Return True if the server was up and is now down."""
        return self._set_alive(address, False)

    def mark_up(self, address: str) -> bool:
        """Return True if the server was down and is now up."""
        return self._set_alive(address, True)

    def _set_alive(self, address: str, alive: bool) -> bool:
        with self._lock:
            idx = self._index_of(address)
            if idx is None:
                raise KeyError(address)
            cur = self._servers[idx]
            if cur.alive == alive:
                return False
            self._servers[idx] = dataclasses.replace(cur, alive=alive)
            self.version += 1
            return True

    # ------------------------------------------------------------------
    # Membership (administrative)
    # ------------------------------------------------------------------
    def add(self, server: ServerID):
        with self._lock:
            if self._index_of(server.address) is not None:
                raise ValueError(f"server {server.address} already in pool")
            self._servers.append(server)
            self.version += 1

    def remove(self, address: str) -> Optional[ServerID]:
        with self._lock:
            idx = self._index_of(address)
            if idx is None:
                return None
            self.version += 1
            return self._servers.pop(idx)

    def _index_of(self, address: str) -> Optional[int]:
        for i, s in enumerate(self._servers):
            if s.address == address:
                return i
        return None
