#!/usr/bin/env python3

"""
Static Mininet topology for the load-balancer demo.

Key design choice:
- Every host hangs off a single OpenFlow 1.3 switch, so the controller sees
  the first packet of every client flow.
- Servers are added (and linked) first: server i lands on switch port i,
  which is exactly what controller/lb_config.py expects.

Topology (N servers):

    srv1 --\
    srv2 ---\
     ...     s1 ---- cl
    srvN ---/
"""

from mininet.topo import Topo
from mininet.link import TCLink
from mininet.node import OVSSwitch, Host


CLIENT_IP = "10.1.1.254/24"
CLIENT_MAC = "00:00:00:00:02:01"

# Same link profile for every host (5 Mbps, 2 ms)
LINK_BW = 5
LINK_DELAY = "2ms"


def server_ip(i: int) -> str:
    return f"10.1.1.{i}"


def server_mac(i: int) -> str:
    return f"00:00:00:00:01:{i:02x}"


class LoadBalancerTopology(Topo):
    """
    Topology used by emulation/run_demo.py.

    IMPORTANT:
    - srvX addresses and MACs must match lb_config.default_backend_servers().
    - The client is linked last so it never steals a server port.
    """

    def build(self, server_number: int = 4):
        assert server_number > 0, "server_number must be > 0"

        s1 = self.addSwitch("s1", cls=OVSSwitch, protocols="OpenFlow13")

        # ------------------------------------------------------------
        # Backend servers: srvX -> s1 port X
        # ------------------------------------------------------------
        for i in range(1, server_number + 1):
            srv = self.addHost(f"srv{i}", cls=Host, ip=f"{server_ip(i)}/24", mac=server_mac(i))
            self.addLink(srv, s1, port2=i, cls=TCLink, bw=LINK_BW, delay=LINK_DELAY)

        # Client
        cl = self.addHost("cl", cls=Host, ip=CLIENT_IP, mac=CLIENT_MAC)
        self.addLink(cl, s1, port2=server_number + 1, cls=TCLink, bw=LINK_BW, delay=LINK_DELAY)
