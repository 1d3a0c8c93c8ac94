#!/usr/bin/env python3

"""
run_demo.py: end-to-end runner for the load-balancer demo.

Responsibilities:
- Launch ryu-manager with controller/lb_app.py (unless --no-controller)
- Instantiate the Mininet network from emulation/topology.py
- Start an HTTP service on every backend server
- Enter Mininet CLI (interactive demo)

Usage:
  sudo python3 emulation/run_demo.py -n 4 -t round-robin -v

  or, with the controller in its own terminal:
    Terminal 1:
      OFLB_TYPE=ip-hashing ryu-manager controller/lb_app.py
    Terminal 2:
      sudo python3 emulation/run_demo.py --no-controller -t ip-hashing

From the CLI, e.g.:
  mininet> cl curl -s http://10.1.1.100/
"""

from __future__ import annotations

import argparse
import os
import subprocess
import time

from mininet.cli import CLI
from mininet.log import setLogLevel, info
from mininet.node import RemoteController, OVSSwitch
from mininet.link import TCLink
from mininet.net import Mininet

from topology import LoadBalancerTopology


VIP_IP = "10.1.1.100"
VIP_MAC = "02:00:00:00:01:64"
CONTROLLER_PORT = 6633
HTTP_PORT = 80


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="OpenFlow load-balancer demo")
    parser.add_argument("-n", "--number", type=int, default=4, help="number of backend servers")
    parser.add_argument(
        "-t", "--type",
        default="random",
        choices=["random", "round-robin", "ip-hashing"],
        help="server selection policy",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="controller INFO logging")
    parser.add_argument("--no-controller", action="store_true", help="do not launch ryu-manager")
    args = parser.parse_args(argv)
    if args.number <= 0:
        parser.error("--number must be > 0")
    return args


def start_controller(repo_root: str, args) -> subprocess.Popen:
    """
    Start ryu-manager with the load balancer app.

    Configuration is passed through the OFLB_* environment overrides read by
    controller/lb_config.py.
    """
    controller_dir = os.path.join(repo_root, "controller")
    env = dict(os.environ)
    env.update({
        "OFLB_TYPE": args.type,
        "OFLB_SERVER_NUMBER": str(args.number),
        "OFLB_VERBOSE": "1" if args.verbose else "0",
        "PYTHONPATH": os.pathsep.join(filter(None, [controller_dir, env.get("PYTHONPATH")])),
    })
    cmd = [
        "ryu-manager",
        "--ofp-tcp-listen-port", str(CONTROLLER_PORT),
        os.path.join(controller_dir, "lb_app.py"),
    ]
    info(f"*** Starting controller: {' '.join(cmd)} (policy={args.type})\n")
    return subprocess.Popen(cmd, env=env)


def run(argv=None):
    args = parse_args(argv)

    # Resolve repo root (one level above emulation/)
    repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

    ryu = None
    if not args.no_controller:
        ryu = start_controller(repo_root, args)
        # Give ryu-manager time to bind its listening socket
        time.sleep(2)

    net = Mininet(
        topo=LoadBalancerTopology(server_number=args.number),
        controller=None,
        switch=OVSSwitch,
        link=TCLink,
        autoStaticArp=True,
    )
    net.addController("c0", controller=RemoteController, ip="127.0.0.1", port=CONTROLLER_PORT)

    try:
        net.start()
        info("\n*** Network started.\n")

        for i in range(1, args.number + 1):
            srv = net.get(f"srv{i}")
            srv.cmd(f"python3 -m http.server {HTTP_PORT} >/tmp/srv{i}-http.log 2>&1 &")
        info(f"*** HTTP service started on {args.number} servers (port {HTTP_PORT})\n")

        # The controller answers ARP for the VIP; the static entry only
        # saves the first request.
        cl = net.get("cl")
        cl.cmd(f"arp -d {VIP_IP} >/dev/null 2>&1 || true")
        cl.cmd(f"arp -s {VIP_IP} {VIP_MAC}")
        info(f"*** Installed static ARP on cl for VIP {VIP_IP} -> {VIP_MAC}\n")
        info(f"*** Try: cl curl -s http://{VIP_IP}:{HTTP_PORT}/\n")

        CLI(net)
    finally:
        for i in range(1, args.number + 1):
            net.get(f"srv{i}").cmd("kill %python3 >/dev/null 2>&1 || true")
        net.stop()
        if ryu is not None:
            ryu.terminate()
            ryu.wait()


if __name__ == "__main__":
    setLogLevel("info")
    run()
