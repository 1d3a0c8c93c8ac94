# controller/lb_config.py

"""
Load-balancer configuration.

This module holds the static policy / backend data (LB_CONFIG, BACKEND_SERVERS)
and turns it into the immutable LoadBalancerConfig handed to the controller
core at construction time.

Startup overrides (same knobs as emulation/run_demo.py):
  OFLB_TYPE           random | round-robin | ip-hashing
  OFLB_SERVER_NUMBER  number of backends (10.1.1.1..n, n below the VIP octet)
  OFLB_VERBOSE        1/true/yes/on -> INFO logging
  OFLB_SEED           integer seed for the random policy

Design goals:
- Hard-fail at startup: any invalid value raises ConfigurationInvalid.
- No globals after startup: the controller never re-reads this module.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ryu.lib import ip

from lb_errors import ConfigurationInvalid
from selection_policy import POLICIES, HASH_FIELDS
from server_pool import ServerID


DEFAULT_SERVER_NUMBER = 4
SERVER_SUBNET_PREFIX = "10.1.1."
# 10.1.1.254 is the client in emulation/topology.py
MAX_HOST_OCTET = 254


def default_backend_servers(count: int) -> List[Dict[str, Any]]:
    """
    Backends as wired by emulation/topology.py:
      server i -> 10.1.1.(i+1), switch port i+1.
    """
    return [
        {
            "ip": f"{SERVER_SUBNET_PREFIX}{i + 1}",
            "mac": f"00:00:00:00:01:{i + 1:02x}",
            "port": i + 1,
            "weight": 1,
        }
        for i in range(int(count))
    ]


# -------------------------------------------------------------------
# BACKEND_SERVERS
# -------------------------------------------------------------------
# Ordered list: the order defines the round-robin rotation.
BACKEND_SERVERS = default_backend_servers(DEFAULT_SERVER_NUMBER)


LB_CONFIG = {
    "policy": "random",

    # Virtual service address targeted by clients
    "vip_ip": "10.1.1.100",
    "vip_mac": "02:00:00:00:01:64",

    # Rule lifetime (seconds). idle_timeout is also the controller-side
    # binding idle timeout.
    "idle_timeout": 30,
    "hard_timeout": 0,

    # Controller timers (seconds)
    "sweep_interval": 5,
    "stats_interval": 10,      # must be shorter than idle_timeout
    "command_timeout": 3,

    "max_install_retries": 3,
    "random_seed": None,

    # IP-hashing key: "client" (source address) or "five-tuple"
    "hash_fields": "client",
    "ring_replicas": 64,

    # Event dispatcher shards (0 = handle events inline)
    "workers": 4,

    "flow_priority": 100,
    "verbose": False,
}


_TRUE_STRINGS = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class LoadBalancerConfig:
    policy: str
    servers: Tuple[ServerID, ...]
    vip_ip: str
    vip_mac: str
    idle_timeout: int
    hard_timeout: int
    sweep_interval: float
    stats_interval: float
    command_timeout: float
    max_install_retries: int
    random_seed: Optional[int]
    hash_fields: str
    ring_replicas: int
    workers: int
    flow_priority: int
    verbose: bool


# -------------------------------------------------------------------
# Loading / validation
# -------------------------------------------------------------------
def load_config(
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> LoadBalancerConfig:
    """
    Build the immutable controller configuration.

    Precedence: LB_CONFIG < environment (OFLB_*) < explicit overrides.
    "servers" may be given as a list of dicts; "server_number" regenerates the
    default 10.1.1.0/24 backends.
    """
    conf: Dict[str, Any] = dict(LB_CONFIG)
    conf["servers"] = list(BACKEND_SERVERS)

    _apply_environment(conf, os.environ if environ is None else environ)
    if overrides:
        conf.update(overrides)

    vip_ip = _ipv4_host(conf["vip_ip"], "vip_ip")

    if conf.get("server_number") is not None:
        count = _as_int(conf["server_number"], "server_number")
        limit = _max_server_number(vip_ip)
        if not 0 < count <= limit:
            raise ConfigurationInvalid(f"server_number must be in 1..{limit}, got {count}")
        conf["servers"] = default_backend_servers(count)

    policy = str(conf["policy"]).strip().lower()
    if policy not in POLICIES:
        raise ConfigurationInvalid(
            f"unknown policy {conf['policy']!r} (expected one of {', '.join(sorted(POLICIES))})"
        )

    servers = _build_servers(conf["servers"], vip_ip)

    # OpenFlow timeouts are whole seconds; 0 would mean "never expire"
    idle_timeout = _as_seconds(conf["idle_timeout"], "idle_timeout")
    if idle_timeout <= 0:
        raise ConfigurationInvalid(f"idle_timeout must be > 0, got {idle_timeout}")

    hard_timeout = _as_seconds(conf["hard_timeout"], "hard_timeout")
    if hard_timeout < 0:
        raise ConfigurationInvalid(f"hard_timeout must be >= 0, got {hard_timeout}")

    sweep_interval = _as_float(conf["sweep_interval"], "sweep_interval")
    if sweep_interval <= 0:
        raise ConfigurationInvalid(f"sweep_interval must be > 0, got {sweep_interval}")

    # Flow-stats polls are the only activity signal for datapath traffic:
    # without one per idle period, sweep() would expire live flows.
    stats_interval = _as_float(conf["stats_interval"], "stats_interval")
    if not 0 < stats_interval < idle_timeout:
        raise ConfigurationInvalid(
            f"stats_interval must be > 0 and < idle_timeout ({idle_timeout}s), got {stats_interval}"
        )

    command_timeout = _as_float(conf["command_timeout"], "command_timeout")
    if command_timeout <= 0:
        raise ConfigurationInvalid(f"command_timeout must be > 0, got {command_timeout}")

    retries = _as_int(conf["max_install_retries"], "max_install_retries")
    if retries < 0:
        raise ConfigurationInvalid(f"max_install_retries must be >= 0, got {retries}")

    seed = conf.get("random_seed")
    if seed is not None:
        seed = _as_int(seed, "random_seed")

    hash_fields = str(conf["hash_fields"])
    if hash_fields not in HASH_FIELDS:
        raise ConfigurationInvalid(f"hash_fields must be one of {HASH_FIELDS}, got {hash_fields!r}")

    replicas = _as_int(conf["ring_replicas"], "ring_replicas")
    if replicas <= 0:
        raise ConfigurationInvalid(f"ring_replicas must be > 0, got {replicas}")

    workers = _as_int(conf["workers"], "workers")
    if workers < 0:
        raise ConfigurationInvalid(f"workers must be >= 0, got {workers}")

    return LoadBalancerConfig(
        policy=policy,
        servers=servers,
        vip_ip=vip_ip,
        vip_mac=str(conf["vip_mac"]),
        idle_timeout=idle_timeout,
        hard_timeout=hard_timeout,
        sweep_interval=sweep_interval,
        stats_interval=stats_interval,
        command_timeout=command_timeout,
        max_install_retries=retries,
        random_seed=seed,
        hash_fields=hash_fields,
        ring_replicas=replicas,
        workers=workers,
        flow_priority=_as_int(conf["flow_priority"], "flow_priority"),
        verbose=bool(conf["verbose"]),
    )


def _apply_environment(conf: Dict[str, Any], environ: Mapping[str, str]):
    if environ.get("OFLB_TYPE"):
        conf["policy"] = environ["OFLB_TYPE"]
    if environ.get("OFLB_SERVER_NUMBER"):
        conf["server_number"] = environ["OFLB_SERVER_NUMBER"]
    if environ.get("OFLB_VERBOSE"):
        conf["verbose"] = environ["OFLB_VERBOSE"].strip().lower() in _TRUE_STRINGS
    if environ.get("OFLB_SEED"):
        conf["random_seed"] = environ["OFLB_SEED"]


def _build_servers(entries, vip_ip: str) -> Tuple[ServerID, ...]:
    if not entries:
        raise ConfigurationInvalid("at least one backend server is required")

    servers = []
    seen = set()
    for entry in entries:
        assert "ip" in entry, f"backend entry missing 'ip': {entry}"
        address = _ipv4_host(entry["ip"], "backend address")
        if address == vip_ip:
            raise ConfigurationInvalid(f"backend address {address} is the VIP")
        if address in seen:
            raise ConfigurationInvalid(f"duplicate backend address {address}")
        seen.add(address)

        weight = _as_int(entry.get("weight", 1), f"weight of {address}")
        if weight <= 0:
            raise ConfigurationInvalid(f"weight of {address} must be > 0, got {weight}")

        port = entry.get("port")
        servers.append(
            ServerID(
                address=address,
                weight=weight,
                mac=entry.get("mac"),
                port=None if port is None else _as_int(port, f"port of {address}"),
            )
        )
    return tuple(servers)


def _as_int(value, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationInvalid(f"{name} must be an integer, got {value!r}") from None


def _as_float(value, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationInvalid(f"{name} must be a number, got {value!r}") from None


def _ipv4_host(value, name: str) -> str:
    """Dotted-quad host address inside a /24 (not .0, not .255)."""
    address = str(value).strip()
    if "/" in address or address.count(".") != 3 or not ip.valid_ipv4(address):
        raise ConfigurationInvalid(f"{name} must be an IPv4 address, got {value!r}")
    if (ip.ipv4_to_int(address) & 0xFF) in (0, 0xFF):
        raise ConfigurationInvalid(f"{name} must be a host address, got {address}")
    return address


def _max_server_number(vip_ip: str) -> int:
    # Generated backends (SERVER_SUBNET_PREFIX + 1..n) must stay below the
    # VIP and the demo client (.254)
    if vip_ip.startswith(SERVER_SUBNET_PREFIX):
        return (ip.ipv4_to_int(vip_ip) & 0xFF) - 1
    return MAX_HOST_OCTET - 1


def _as_seconds(value, name: str) -> int:
    seconds = _as_float(value, name)
    if not seconds.is_integer():
        raise ConfigurationInvalid(f"{name} must be a whole number of seconds, got {value!r}")
    return int(seconds)
