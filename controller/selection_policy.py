# controller/selection_policy.py

"""
Backend selection policies.

Common contract:
    select(flow_key, pool) -> ServerID
    raises NoServersAvailable if pool.members() is empty.

Policies are looked up by name in POLICIES; adding a policy means adding a
subclass and registering it, nothing else in the controller changes.

Notes:
- RoundRobinPolicy owns the rotation cursor. One instance lives as long as
  the controller, so the cursor does too (it is not persisted).
- IPHashingPolicy uses a consistent-hashing ring with weighted virtual
  nodes. When k of n servers leave the pool, only the keys they owned move
  (about k/n of the key space); a joining server takes about 1/(n+1).
"""

from __future__ import annotations

import bisect
import hashlib
import random
import threading
from typing import Dict, List, Optional, Sequence, Tuple

from lb_errors import NoServersAvailable


HASH_FIELDS = ("client", "five-tuple")


def _hash64(text: str) -> int:
    return int.from_bytes(hashlib.md5(text.encode("utf-8")).digest()[:8], "big")


class SelectionPolicy:
    name = "abstract"

    @classmethod
    def from_config(cls, config):
        return cls()

    def select(self, key, pool):
        members = pool.members()
        if not members:
            raise NoServersAvailable(f"{self.name}: no live servers for {key}")
        return self._choose(key, members)

    def _choose(self, key, members: Sequence):
        raise NotImplementedError


class RandomPolicy(SelectionPolicy):
    name = "random"

    def __init__(self, seed: Optional[int] = None):
        self.seed = seed
        self._rng = random.Random(seed)
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config):
        return cls(seed=config.random_seed)

    def _choose(self, key, members):
        with self._lock:
            return members[self._rng.randrange(len(members))]


class RoundRobinPolicy(SelectionPolicy):
    """
    members[cursor mod |members|], then cursor += 1.

    The modulo is taken against the pool size at call time, so a pool that
    shrinks or grows between calls may skip or repeat a server once.
    """

    name = "round-robin"

    def __init__(self, start: int = 0):
        self.cursor = int(start)
        self._lock = threading.Lock()

    def _choose(self, key, members):
        with self._lock:
            server = members[self.cursor % len(members)]
            self.cursor += 1
        return server


class HashRing:
    """Consistent-hashing ring; each server gets replicas * weight points."""

    def __init__(self, servers: Sequence, replicas: int = 64):
        assert replicas > 0, f"HashRing: replicas must be > 0, got {replicas}"
        points: List[Tuple[int, int]] = []
        for idx, s in enumerate(servers):
            for i in range(replicas * max(1, int(s.weight))):
                points.append((_hash64(f"{s.address}#{i}"), idx))
        points.sort()
        self._hashes = [h for h, _ in points]
        self._owners = [idx for _, idx in points]
        self._servers = tuple(servers)

    def lookup(self, key_hash: int):
        pos = bisect.bisect_right(self._hashes, key_hash)
        if pos == len(self._hashes):
            pos = 0
        return self._servers[self._owners[pos]]


class IPHashingPolicy(SelectionPolicy):
    name = "ip-hashing"

    def __init__(self, hash_fields: str = "client", replicas: int = 64):
        assert hash_fields in HASH_FIELDS, f"IPHashingPolicy: invalid hash_fields={hash_fields}"
        self.hash_fields = hash_fields
        self.replicas = int(replicas)
        self._rings: Dict[tuple, HashRing] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config):
        return cls(hash_fields=config.hash_fields, replicas=config.ring_replicas)

    def key_hash(self, key) -> int:
        if self.hash_fields == "client":
            return _hash64(str(key.src))
        return _hash64(f"{key.protocol}|{key.src}|{key.dst}|{key.src_port}|{key.dst_port}")

    def _ring_for(self, members) -> HashRing:
        sig = tuple((s.address, s.weight) for s in members)
        with self._lock:
            ring = self._rings.get(sig)
            if ring is None:
                # Only the current membership is worth caching
                self._rings.clear()
                ring = HashRing(members, self.replicas)
                self._rings[sig] = ring
            return ring

    def _choose(self, key, members):
        return self._ring_for(members).lookup(self.key_hash(key))


POLICIES = {
    RandomPolicy.name: RandomPolicy,
    RoundRobinPolicy.name: RoundRobinPolicy,
    IPHashingPolicy.name: IPHashingPolicy,
}


def make_policy(config) -> SelectionPolicy:
    """Instantiate the policy named by a LoadBalancerConfig."""
    return POLICIES[config.policy].from_config(config)
