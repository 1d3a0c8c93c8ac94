import dataclasses

import pytest

from lb_config import LB_CONFIG, default_backend_servers, load_config
from lb_errors import ConfigurationInvalid


def test_defaults():
    conf = load_config(environ={})
    assert conf.policy == LB_CONFIG["policy"]
    assert [s.address for s in conf.servers] == ["10.1.1.1", "10.1.1.2", "10.1.1.3", "10.1.1.4"]
    assert [s.port for s in conf.servers] == [1, 2, 3, 4]
    assert conf.idle_timeout > 0


def test_config_is_immutable():
    conf = load_config(environ={})
    with pytest.raises(dataclasses.FrozenInstanceError):
        conf.policy = "round-robin"


def test_environment_overrides():
    conf = load_config(environ={
        "OFLB_TYPE": "ip-hashing",
        "OFLB_SERVER_NUMBER": "6",
        "OFLB_VERBOSE": "yes",
        "OFLB_SEED": "11",
    })
    assert conf.policy == "ip-hashing"
    assert len(conf.servers) == 6
    assert conf.servers[-1].address == "10.1.1.6"
    assert conf.verbose is True
    assert conf.random_seed == 11


def test_explicit_overrides_win_over_environment():
    conf = load_config(overrides={"policy": "round-robin"}, environ={"OFLB_TYPE": "random"})
    assert conf.policy == "round-robin"


def test_explicit_server_list():
    conf = load_config(
        overrides={"servers": [{"ip": "192.168.0.10", "port": 3, "weight": 2}]},
        environ={},
    )
    (server,) = conf.servers
    assert (server.address, server.port, server.weight, server.mac) == ("192.168.0.10", 3, 2, None)


def test_default_backend_servers_layout():
    servers = default_backend_servers(2)
    assert servers == [
        {"ip": "10.1.1.1", "mac": "00:00:00:00:01:01", "port": 1, "weight": 1},
        {"ip": "10.1.1.2", "mac": "00:00:00:00:01:02", "port": 2, "weight": 1},
    ]


@pytest.mark.parametrize("overrides", [
    {"policy": "least-connections"},
    {"servers": []},
    {"server_number": 0},
    {"server_number": "many"},
    {"servers": [{"ip": "10.1.1.1"}, {"ip": "10.1.1.1"}]},
    {"servers": [{"ip": "10.1.1.1", "weight": 0}]},
    {"idle_timeout": 0},
    {"idle_timeout": -5},
    {"sweep_interval": 0},
    {"command_timeout": 0},
    {"hard_timeout": -1},
    {"max_install_retries": -1},
    {"hash_fields": "dst"},
    {"ring_replicas": 0},
    {"workers": -1},
    {"random_seed": "abc"},
    {"stats_interval": 0},
    {"stats_interval": 30},
    {"stats_interval": 60, "idle_timeout": 30},
    {"idle_timeout": 0.5},
    {"idle_timeout": 30.5},
    {"hard_timeout": 1.5},
    {"server_number": 100},
    {"server_number": 254},
    {"server_number": 300},
    {"servers": [{"ip": "10.1.1.100"}]},
    {"servers": [{"ip": "10.1.1.256"}]},
    {"servers": [{"ip": "10.1.1.255"}]},
    {"servers": [{"ip": "10.1"}]},
    {"servers": [{"ip": "10.1.1.1/24"}]},
    {"vip_ip": "not-an-address"},
])
def test_invalid_configuration_refuses_to_start(overrides):
    with pytest.raises(ConfigurationInvalid):
        load_config(overrides=overrides, environ={})


def test_invalid_policy_from_environment():
    with pytest.raises(ConfigurationInvalid, match="unknown policy"):
        load_config(environ={"OFLB_TYPE": "fastest"})


def test_server_number_stops_below_the_vip():
    conf = load_config(overrides={"server_number": 99}, environ={})
    addresses = [s.address for s in conf.servers]
    assert addresses[-1] == "10.1.1.99"
    assert conf.vip_ip not in addresses


def test_server_number_limit_follows_vip_subnet():
    conf = load_config(overrides={"server_number": 150, "vip_ip": "10.2.0.1"}, environ={})
    assert len(conf.servers) == 150


def test_server_number_from_environment_is_checked():
    with pytest.raises(ConfigurationInvalid, match="server_number"):
        load_config(environ={"OFLB_SERVER_NUMBER": "100"})


def test_timeouts_are_whole_seconds():
    conf = load_config(overrides={"idle_timeout": "20", "hard_timeout": 60.0, "stats_interval": 5}, environ={})
    assert conf.idle_timeout == 20
    assert isinstance(conf.idle_timeout, int)
    assert conf.hard_timeout == 60


def test_stats_interval_must_undercut_idle_timeout():
    conf = load_config(overrides={"idle_timeout": 10, "stats_interval": 9.5}, environ={})
    assert conf.stats_interval < conf.idle_timeout
    with pytest.raises(ConfigurationInvalid, match="stats_interval"):
        load_config(overrides={"idle_timeout": 10, "stats_interval": 10}, environ={})
