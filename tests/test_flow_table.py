import pytest

from ryu.lib.packet import in_proto

from flow_key import FlowKey
from flow_table import COOKIE_TAG, COOKIE_TAG_MASK, FlowTable
from lb_errors import DuplicateBinding
from server_pool import ServerID

from conftest import VIP


S1 = ServerID("10.1.1.1", port=1)
S2 = ServerID("10.1.1.2", port=2)


def _key(sport=40000):
    return FlowKey(in_proto.IPPROTO_TCP, "10.0.0.1", VIP, sport, 80)


def test_bind_then_lookup():
    table = FlowTable()
    b = table.bind(_key(), S1, now=10.0, dpid=1, in_port=5)
    assert table.lookup(_key()) is b
    assert b.server == S1
    assert b.installed_at == b.last_activity_at == 10.0
    assert (b.dpid, b.in_port) == (1, 5)
    assert _key() in table
    assert len(table) == 1


def test_duplicate_bind_raises():
    table = FlowTable()
    table.bind(_key(), S1, now=0.0)
    with pytest.raises(DuplicateBinding):
        table.bind(_key(), S2, now=1.0)
    assert table.lookup(_key()).server == S1


def test_rule_handles_are_unique_and_tagged():
    table = FlowTable()
    handles = {table.bind(_key(p), S1, now=0.0).rule_handle for p in range(100)}
    assert len(handles) == 100
    assert all(h & COOKIE_TAG_MASK == COOKIE_TAG for h in handles)


def test_unbind_is_idempotent():
    table = FlowTable()
    b = table.bind(_key(), S1, now=0.0)
    assert table.unbind(_key()) is b
    assert table.unbind(_key()) is None
    assert table.lookup(_key()) is None
    assert table.by_handle(b.rule_handle) is None


def test_rebind_gets_fresh_handle():
    table = FlowTable()
    old = table.bind(_key(), S1, now=0.0)
    table.unbind(_key())
    new = table.bind(_key(), S2, now=1.0)
    assert new.rule_handle != old.rule_handle
    assert table.by_handle(old.rule_handle) is None
    assert table.by_handle(new.rule_handle) is new


def test_touch_refreshes_activity_monotonically():
    table = FlowTable()
    b = table.bind(_key(), S1, now=10.0)
    assert table.touch(_key(), 15.0) is True
    assert table.touch(_key(), 12.0) is True
    assert b.last_activity_at == 15.0
    assert table.touch(_key(99), 20.0) is False


def test_pop_expired():
    table = FlowTable()
    stale = table.bind(_key(1), S1, now=0.0)
    edge = table.bind(_key(2), S1, now=10.0)
    fresh = table.bind(_key(3), S2, now=25.0)

    expired = table.pop_expired(now=40.0, idle_timeout=30.0)

    assert expired == [stale]
    # Exactly at the timeout is not yet idle for longer than it
    assert table.lookup(_key(2)) is edge
    assert table.lookup(_key(3)) is fresh
    assert table.pop_expired(now=40.0, idle_timeout=30.0) == []


def test_flush():
    table = FlowTable(shards=4)
    for p in range(10):
        table.bind(_key(p), S1, now=0.0)
    removed = table.flush()
    assert len(removed) == 10
    assert len(table) == 0
    assert table.bindings() == []
