"""
Probe and fleet metrics.

Latency and loss bookkeeping for MTU probes, and the aggregate counters
reported for the whole fleet.
"""

import threading
from typing import Optional, Dict, Any, List, Iterable
from collections import Counter, deque

from src.common.models import InterfaceRecord, InterfaceStatus, PeerRecord, PeerStatus


class LatencyTracker:
    """Tracks latency measurements of successful probes."""

    def __init__(self, window_size: int = 100):
        """
        Initialize latency tracker.

        Args:
            window_size: Size of rolling window for stats
        """
        self.window_size = window_size
        self.latencies: deque = deque(maxlen=window_size)
        self.lock = threading.Lock()

    def add_measurement(self, latency_ms: float):
        """Add latency measurement in milliseconds."""
        with self.lock:
            self.latencies.append(latency_ms)

    @property
    def average(self) -> float:
        with self.lock:
            if not self.latencies:
                return 0.0
            return sum(self.latencies) / len(self.latencies)


class PacketLossTracker:
    """Counts sent and lost probes."""

    def __init__(self):
        self.sent = 0
        self.lost = 0
        self.lock = threading.Lock()

    def mark_sent(self, alive: bool):
        """Record one probe and whether it was answered."""
        with self.lock:
            self.sent += 1
            if not alive:
                self.lost += 1

    @property
    def received(self) -> int:
        return self.sent - self.lost

    @property
    def loss_percent(self) -> float:
        with self.lock:
            if self.sent == 0:
                return 0.0
            return self.lost / self.sent * 100


def latency_bonus(latency_ms: float) -> int:
    """Score bonus for an average probe latency."""
    if latency_ms < 50:
        return 30
    if latency_ms < 100:
        return 20
    if latency_ms < 200:
        return 10
    return 0


def score_candidate(success: bool, latency_ms: float, packet_loss: float) -> float:
    """
    Score one probed MTU candidate on a 0-100 scale.

    Args:
        success: Whether at least one probe was answered
        latency_ms: Average latency of answered probes
        packet_loss: Lost probes in percent

    Returns:
        Score, 0 for a failed candidate
    """
    if not success:
        return 0.0
    score = 50 + latency_bonus(latency_ms) - packet_loss
    return float(max(0, min(100, score)))


def collect_fleet_statistics(
    interfaces: Iterable[InterfaceRecord],
    peers: Iterable[PeerRecord],
    discovered: Optional[List[str]] = None
) -> Dict[str, Any]:
    """
    Aggregate counters over every interface and peer.

    Args:
        interfaces: Persisted interface records
        peers: Persisted peer records
        discovered: Interface names currently present on the host

    Returns:
        Statistics dictionary
    """
    interfaces = list(interfaces)
    peers = list(peers)

    active = sum(1 for i in interfaces if i.status == InterfaceStatus.ACTIVE)
    received = sum(i.transfer.received for i in interfaces)
    sent = sum(i.transfer.sent for i in interfaces)
    avg_uptime = (
        sum(i.total_uptime for i in interfaces) / len(interfaces) if interfaces else 0
    )

    return {
        "servers": {
            "total": len(interfaces),
            "active": active,
            "inactive": len(interfaces) - active,
            "by_provider": dict(Counter(i.provider.value for i in interfaces)),
        },
        "peers": {
            "total": len(peers),
            "connected": sum(
                1 for p in peers if p.enabled and p.status == PeerStatus.CONNECTED
            ),
            "by_status": dict(Counter(p.status.value for p in peers)),
        },
        "data": {"received": received, "sent": sent, "total": received + sent},
        "interfaces": {
            "discovered": len(discovered or []),
            "configured": len(interfaces),
        },
        "uptime": {"average": avg_uptime},
    }
