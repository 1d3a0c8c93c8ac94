# controller/lb_errors.py

"""
Error kinds raised by the load-balancer controller.

Propagation policy:
- Per-flow errors (MalformedHeader, NoServersAvailable, SwitchCommandFailed)
  are handled locally by the core: the offending event is dropped and counted.
- DuplicateBinding signals a logic bug (bind() without a prior lookup()).
- ConfigurationInvalid is the only fatal kind; it is raised at startup.
"""


class LoadBalancerError(Exception):
    """Base class for every load-balancer error."""


class MalformedHeader(LoadBalancerError):
    """Packet too short for its declared protocol, or unsupported protocol."""


class NoServersAvailable(LoadBalancerError):
    """The live server pool is empty."""


class DuplicateBinding(LoadBalancerError):
    def __init__(self, key):
        super().__init__(f"flow already bound: {key}")
        self.key = key


class SwitchCommandFailed(LoadBalancerError):
    def __init__(self, command: str, xid=None, reason: str = ""):
        super().__init__(f"{command} failed (xid={xid}): {reason}")
        self.command = command
        self.xid = xid
        self.reason = reason


class ConfigurationInvalid(LoadBalancerError):
    """Startup configuration rejected; the controller refuses to start."""
