"""Block-height routing over partial-history archive backends.

Each backend keeps a single contiguous window of heights ending at its chain
head.  ``discover_range`` bisects a backend for the lowest height it still
answers state queries for, and ``RoutingTable`` maps a requested height to the
backend whose window contains it.

Deployment precondition (not verified here): retention is monotonic on every
backend and the windows of all backends tile the covered heights with no gaps
and no overlaps.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence

from backends import BackendCallError, BackendProbe, BackendRpcError
from rpc import ROUTING_ERROR, ProxyError

LOG = logging.getLogger("archive-proxy.routing")

# TokenHub system contract, present on BSC since genesis.
DEFAULT_PROBE_ADDRESS = "0x0000000000000000000000000000000000001004"


# ── Exceptions ────────────────────────────────────────────────────────────────────


class RoutingError(ProxyError):
    """No backend window covers the requested height."""

    code = ROUTING_ERROR

    def __init__(self, height: Optional[int]) -> None:
        if height is None:
            detail = "No backends available"
        else:
            detail = f"Block not found in any backend: {height}"
        super().__init__(detail, {"height": height})
        self.height = height


class DiscoveryError(Exception):
    """A backend's block range could not be determined at startup."""

    def __init__(self, url: str, detail: str) -> None:
        super().__init__(f"{url}: {detail}")
        self.url = url
        self.detail = detail


# ── Windows ───────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class BackendWindow:
    backend: Any
    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.start > self.end:
            raise ValueError(f"Invalid window [{self.start}, {self.end}]")

    def __contains__(self, height: int) -> bool:
        return self.start <= height <= self.end

    @property
    def url(self) -> str:
        return str(getattr(self.backend, "url", self.backend))


class RoutingTable:
    """Immutable index of backend windows sorted by start height."""

    def __init__(self, windows: Iterable[BackendWindow]) -> None:
        self._windows: tuple[BackendWindow, ...] = tuple(sorted(windows, key=lambda w: w.start))

    @property
    def windows(self) -> tuple[BackendWindow, ...]:
        return self._windows

    def __len__(self) -> int:
        return len(self._windows)

    @property
    def lowest(self) -> Optional[int]:
        return self._windows[0].start if self._windows else None

    @property
    def highest(self) -> Optional[int]:
        return max(w.end for w in self._windows) if self._windows else None

    def route(self, height: Optional[int] = None) -> Any:
        """Return the backend serving ``height``; None selects the most recent backend.

        O(log n) in the number of backends.
        """
        if height is None:
            if not self._windows:
                raise RoutingError(None)
            return self._windows[-1].backend
        left, right = 0, len(self._windows) - 1
        while left <= right:
            mid = (left + right) // 2
            window = self._windows[mid]
            if height < window.start:
                right = mid - 1
            elif height > window.end:
                left = mid + 1
            else:
                return window.backend
        raise RoutingError(height)

    def coverage_issues(self) -> list[str]:
        """Describe gaps and overlaps between adjacent windows (reported, never repaired)."""
        issues: list[str] = []
        for prev, cur in zip(self._windows, self._windows[1:]):
            if cur.start <= prev.end:
                issues.append(
                    f"overlap: {prev.url} [{prev.start}, {prev.end}] and {cur.url} [{cur.start}, {cur.end}]"
                )
            elif cur.start > prev.end + 1:
                issues.append(f"gap: heights {prev.end + 1}..{cur.start - 1} are not served")
        return issues

    def describe(self) -> list[dict[str, Any]]:
        return [{"backend": w.url, "start": w.start, "end": w.end} for w in self._windows]


# ── Discovery ─────────────────────────────────────────────────────────────────────


async def discover_range(
    probe: BackendProbe,
    probe_address: str = DEFAULT_PROBE_ADDRESS,
) -> tuple[int, int]:
    """Bisect ``probe`` for the inclusive window of heights it still serves.

    The head is assumed to always be present.  A JSON-RPC error on the balance
    query means the state at that height was pruned; any transport failure is
    indecisive and aborts discovery.  O(log head) round trips.
    """
    url = getattr(probe, "url", repr(probe))
    try:
        last = await probe.block_number()
    except BackendCallError as e:
        raise DiscoveryError(url, f"head height query failed: {e.detail}") from e

    left, right = 0, last
    while left <= right:
        mid = (left + right) // 2
        try:
            await probe.get_balance(probe_address, mid)
        except BackendRpcError:
            left = mid + 1
            continue
        except BackendCallError as e:
            raise DiscoveryError(url, f"state query at height {mid} failed: {e.detail}") from e
        right = mid - 1

    if left > last:
        raise DiscoveryError(url, f"no state retained up to head {last}")
    LOG.debug("Discovered %s -> [%d, %d]", url, left, last)
    return left, last


async def discover_windows(
    probes: Sequence[BackendProbe],
    probe_address: str = DEFAULT_PROBE_ADDRESS,
) -> list[BackendWindow]:
    """Discover every backend concurrently; the first failure aborts startup."""
    ranges = await asyncio.gather(*(discover_range(p, probe_address) for p in probes))
    return [BackendWindow(p, start, end) for p, (start, end) in zip(probes, ranges)]
