"""Tests for the routing table and block range discovery."""

import asyncio

import pytest

from fakes import FakeBackend
from routing import (
    BackendWindow,
    DiscoveryError,
    RoutingError,
    RoutingTable,
    discover_range,
    discover_windows,
)


def make_table(*bounds: tuple[int, int]) -> RoutingTable:
    # Deliberately unsorted to exercise construction ordering.
    windows = [BackendWindow(f"backend-{s}", s, e) for s, e in bounds]
    return RoutingTable(reversed(windows))


# ── 1. Route lookup ───────────────────────────────────────────────────────


def test_route_every_height_to_its_window() -> None:
    bounds = [(0, 9), (10, 10), (11, 250), (251, 1000), (1001, 1200)]
    table = make_table(*bounds)
    assert [w.start for w in table.windows] == [0, 10, 11, 251, 1001]
    for start, end in bounds:
        for h in (start, (start + end) // 2, end):
            assert table.route(h) == f"backend-{start}"


def test_route_latest_uses_greatest_start() -> None:
    table = make_table((101, 500), (0, 100), (501, 900))
    assert table.route(None) == "backend-501"
    assert table.route() == "backend-501"


def test_route_height_zero_is_not_latest() -> None:
    table = make_table((0, 100), (101, 500))
    assert table.route(0) == "backend-0"


def test_route_outside_every_window_raises() -> None:
    table = make_table((50, 100), (101, 500))
    for h in (0, 49, 501, 10**12):
        with pytest.raises(RoutingError) as exc:
            table.route(h)
        assert exc.value.height == h
        assert str(h) in exc.value.detail


def test_route_single_backend() -> None:
    table = make_table((7, 7))
    assert table.route(7) == "backend-7"
    assert table.route(None) == "backend-7"
    with pytest.raises(RoutingError):
        table.route(8)


def test_empty_table_cannot_route() -> None:
    table = RoutingTable([])
    assert len(table) == 0
    assert table.lowest is None and table.highest is None
    with pytest.raises(RoutingError):
        table.route(None)
    with pytest.raises(RoutingError):
        table.route(1)


# ── 2. Two backends: A=[0,100], B=[101,500] ────────────────────────────


def test_two_backend_scenario() -> None:
    table = RoutingTable([BackendWindow("B", 101, 500), BackendWindow("A", 0, 100)])
    assert table.route(0x32) == "A"
    assert table.route(0x1F4) == "B"
    assert table.route(None) == "B"
    with pytest.raises(RoutingError):
        table.route(600)


# ── 3. Windows and coverage ───────────────────────────────────────────────


def test_window_rejects_inverted_bounds() -> None:
    with pytest.raises(ValueError):
        BackendWindow("x", 10, 9)
    with pytest.raises(ValueError):
        BackendWindow("x", -1, 9)
    w = BackendWindow("x", 3, 5)
    assert 3 in w and 5 in w and 6 not in w


def test_coverage_issues_reported_not_repaired() -> None:
    table = make_table((0, 100), (90, 200), (250, 300))
    issues = table.coverage_issues()
    assert len(issues) == 2
    assert issues[0].startswith("overlap")
    assert issues[1] == "gap: heights 201..249 are not served"
    # The table keeps the windows as given.
    assert [(w.start, w.end) for w in table.windows] == [(0, 100), (90, 200), (250, 300)]
    assert make_table((0, 100), (101, 200)).coverage_issues() == []


def test_describe_lists_windows_in_order() -> None:
    a = FakeBackend("ws://a")
    b = FakeBackend("ws://b")
    table = RoutingTable([BackendWindow(b, 101, 500), BackendWindow(a, 0, 100)])
    assert table.describe() == [
        {"backend": "ws://a", "start": 0, "end": 100},
        {"backend": "ws://b", "start": 101, "end": 500},
    ]
    assert table.lowest == 0
    assert table.highest == 500


# ── 4. Discovery ──────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "start,head",
    [(0, 0), (0, 1), (1, 1), (0, 100), (37, 100), (100, 100), (99, 100), (12_345, 40_000_000)],
)
def test_discover_range_finds_retained_window(start: int, head: int) -> None:
    backend = FakeBackend("ws://node", start=start, head=head)
    assert asyncio.run(discover_range(backend)) == (start, head)


def test_discover_range_is_logarithmic() -> None:
    backend = FakeBackend("ws://node", start=1_000_000, head=30_000_000)
    asyncio.run(discover_range(backend))
    probes = [c for c in backend.calls if c[0] == "eth_getBalance"]
    assert len(probes) <= 26


def test_discover_range_uses_probe_address() -> None:
    backend = FakeBackend("ws://node", start=5, head=10)
    asyncio.run(discover_range(backend, "0xabc"))
    assert all(params[0] == "0xabc" for _, params in backend.calls)


def test_discover_range_head_failure_is_fatal() -> None:
    backend = FakeBackend("ws://node")
    backend.fail_head = True
    with pytest.raises(DiscoveryError) as exc:
        asyncio.run(discover_range(backend))
    assert exc.value.url == "ws://node"


def test_discover_range_transport_failure_is_fatal() -> None:
    backend = FakeBackend("ws://node", start=0, head=100)
    backend.broken_heights.add(50)
    with pytest.raises(DiscoveryError) as exc:
        asyncio.run(discover_range(backend))
    assert "50" in exc.value.detail


def test_discover_range_without_any_state_is_fatal() -> None:
    backend = FakeBackend("ws://node", start=101, head=100)
    with pytest.raises(DiscoveryError):
        asyncio.run(discover_range(backend))


def test_discover_windows_builds_routable_table() -> None:
    a = FakeBackend("ws://a", start=0, head=100)
    b = FakeBackend("ws://b", start=101, head=500)
    windows = asyncio.run(discover_windows([b, a]))
    assert [(w.backend, w.start, w.end) for w in windows] == [(b, 101, 500), (a, 0, 100)]
    table = RoutingTable(windows)
    assert table.route(50) is a
    assert table.route(500) is b
    assert table.route(None) is b


def test_discover_windows_fails_if_any_backend_fails() -> None:
    a = FakeBackend("ws://a", start=0, head=100)
    b = FakeBackend("ws://b", start=101, head=500)
    b.fail_head = True
    with pytest.raises(DiscoveryError):
        asyncio.run(discover_windows([a, b]))
