"""
Empirical MTU optimization.

Sweeps candidate MTUs over a live interface: set the MTU, ping the test host
with small, medium and full-frame payloads, score the candidate by latency and
loss. The interface's original MTU is always put back afterwards.
"""

import time
from typing import Dict, List, Optional, Sequence

from structlog import get_logger

from src.common.errors import ExternalCommandError, ProbeError, ValidationError
from src.common.locks import KeyedLock
from src.common.logging import bind_interface, clear_interface
from src.common.metrics import LatencyTracker, PacketLossTracker, score_candidate
from src.common.models import (
    MAX_MTU,
    MIN_MTU,
    ProbeReport,
    ProbeSample,
    ProfileTestResults,
    Provider,
    Recommendation,
)

logger = get_logger()

DEFAULT_CANDIDATES = list(range(1280, 1501, 20))

# IPv4 header plus ICMP header
HEADER_OVERHEAD = 28

SMALL_PAYLOAD = 64
MEDIUM_PAYLOAD = 512
LARGE_PAYLOAD = 1024

# ping success in a profile test also requires a reply under this latency
PROFILE_TEST_LATENCY_LIMIT = 100

# known-good MTU per provider, with the advertised working range
PROVIDER_BASELINES: Dict[Provider, Dict] = {
    Provider.MPT: {"mtu": 1400, "range": "1280-1420", "notes": "May require lower MTU"},
    Provider.OOREDOO: {"mtu": 1420, "range": "1300-1440", "notes": "Good MTU support"},
    Provider.MYTEL: {"mtu": 1350, "range": "1280-1400", "notes": "Lower MTU recommended"},
    Provider.ATOM: {"mtu": 1380, "range": "1300-1420", "notes": "Moderate MTU support"},
    Provider.TELENOR: {"mtu": 1400, "range": "1300-1420", "notes": "Good overall support"},
}


def baseline_for(provider: Provider) -> Dict:
    """Baseline of a provider; unknown providers use the MPT entry."""
    return PROVIDER_BASELINES.get(provider, PROVIDER_BASELINES[Provider.MPT])


def classify(difference: int) -> str:
    if difference > 100:
        return "Poor"
    if difference > 50:
        return "Fair"
    return "Good"


def recommend(best_mtu: int, provider: Provider) -> Recommendation:
    """
    Compare a measured MTU with the provider's known-good value.

    Args:
        best_mtu: Best MTU found by a sweep
        provider: Provider tag of the interface

    Returns:
        Recommendation
    """
    baseline = baseline_for(provider)
    difference = abs(best_mtu - baseline["mtu"])

    if difference > 50:
        message = f"Consider using {baseline['mtu']} for {provider.value}"
    else:
        message = f"Current MTU {best_mtu} is optimal"

    return Recommendation(
        optimal_mtu=best_mtu,
        provider=provider,
        provider_mtu=baseline["mtu"],
        provider_range=baseline["range"],
        difference=difference,
        advice=classify(difference),
        notes=baseline["notes"],
        message=message,
    )


def validate_candidates(candidates: Sequence[int]) -> List[int]:
    """
    Check candidate MTUs before touching any link.

    Raises:
        ValidationError: If the list is empty or a value is out of range
    """
    candidates = list(candidates)
    if not candidates:
        raise ValidationError("at least one candidate MTU is required")
    for mtu in candidates:
        if not isinstance(mtu, int) or isinstance(mtu, bool):
            raise ValidationError(f"candidate MTU must be an integer: {mtu!r}")
        if mtu < MIN_MTU or mtu > MAX_MTU:
            raise ValidationError(f"candidate MTU {mtu} outside {MIN_MTU}-{MAX_MTU}")
    return candidates


class MTUProbe:
    """Runs MTU sweeps, one at a time per interface."""

    def __init__(self, links, prober, clock, settings):
        """
        Initialize probe.

        Args:
            links: Link manager (get_mtu / set_mtu)
            prober: ICMP prober
            clock: Clock used for the settle and throttle pauses
            settings: Server settings carrying probe timings
        """
        self.links = links
        self.prober = prober
        self.clock = clock
        self.settings = settings
        self.locks = KeyedLock()

    def set_mtu(self, interface_name: str, mtu: int):
        """Set a live interface's MTU."""
        validate_candidates([mtu])
        self.links.set_mtu(interface_name, mtu)

    def _ping_sizes(
        self,
        host: str,
        sizes: Sequence[int],
        interface: Optional[str],
        latencies: LatencyTracker,
        loss: PacketLossTracker,
        latency_limit: Optional[float] = None
    ) -> int:
        """Ping each payload size once; return how many replies passed."""
        passed = 0
        for index, size in enumerate(sizes):
            try:
                result = self.prober.ping(
                    host, size, timeout=self.settings.PROBE_TIMEOUT, interface=interface
                )
                alive = result.alive
            except ProbeError as e:
                logger.debug("probe failed", host=host, size=size, error=str(e))
                alive = False

            loss.mark_sent(alive)
            if alive:
                latencies.add_measurement(result.latency_ms)
                if latency_limit is None or result.latency_ms < latency_limit:
                    passed += 1

            if index < len(sizes) - 1:
                self.clock.sleep(self.settings.PROBE_STEP_DELAY)
        return passed

    def _probe_candidate(self, interface_name: str, mtu: int, host: str) -> ProbeSample:
        try:
            self.links.set_mtu(interface_name, mtu)
        except ExternalCommandError as e:
            logger.warning("cannot set candidate mtu", mtu=mtu, error=str(e))
            return ProbeSample(mtu=mtu, success=False, error=str(e))

        self.clock.sleep(self.settings.PROBE_SETTLE_DELAY)

        latencies = LatencyTracker()
        loss = PacketLossTracker()
        self._ping_sizes(
            host,
            [SMALL_PAYLOAD, MEDIUM_PAYLOAD, mtu - HEADER_OVERHEAD],
            interface_name,
            latencies,
            loss,
        )

        success = loss.received > 0
        latency = latencies.average
        packet_loss = loss.loss_percent
        return ProbeSample(
            mtu=mtu,
            success=success,
            latency=latency,
            packet_loss=packet_loss,
            score=score_candidate(success, latency, packet_loss),
        )

    def run(
        self,
        interface_name: str,
        candidates: Sequence[int] = DEFAULT_CANDIDATES,
        test_host: Optional[str] = None,
        provider: Provider = Provider.UNKNOWN
    ) -> ProbeReport:
        """
        Sweep candidate MTUs over a live interface.

        Args:
            interface_name: Interface whose MTU is varied
            candidates: MTU values, probed in order
            test_host: Ping target, defaults to PROBE_TEST_HOST
            provider: Provider tag for the recommendation

        Returns:
            Probe report with every sample and the best MTU

        Raises:
            ValidationError: If a candidate is out of range
            ExternalCommandError: If the original MTU cannot be read or
                restored, or the prober itself is unusable
        """
        candidates = validate_candidates(candidates)
        host = test_host or self.settings.PROBE_TEST_HOST

        with self.locks.get(interface_name):
            bind_interface(interface_name)
            try:
                return self._sweep(interface_name, candidates, host, provider)
            finally:
                clear_interface()

    def _sweep(self, interface_name, candidates, host, provider) -> ProbeReport:
        started_at = self.clock.now()
        started = time.monotonic()
        original_mtu = self.links.get_mtu(interface_name)

        logger.info(
            "starting mtu sweep",
            host=host,
            candidates=len(candidates),
            original_mtu=original_mtu,
        )

        results: List[ProbeSample] = []
        try:
            for index, mtu in enumerate(candidates):
                sample = self._probe_candidate(interface_name, mtu, host)
                results.append(sample)
                logger.debug("candidate probed", mtu=mtu, score=sample.score, success=sample.success)
                if index < len(candidates) - 1:
                    self.clock.sleep(self.settings.PROBE_CANDIDATE_DELAY)
        finally:
            self.links.set_mtu(interface_name, original_mtu)
            logger.info("original mtu restored", mtu=original_mtu)

        best_mtu = original_mtu
        best_score = None
        for sample in results:
            if sample.success and (best_score is None or sample.score > best_score):
                best_mtu, best_score = sample.mtu, sample.score

        report = ProbeReport(
            interface_name=interface_name,
            original_mtu=original_mtu,
            best_mtu=best_mtu,
            results=results,
            recommendation=recommend(best_mtu, provider),
            started_at=started_at,
            duration=time.monotonic() - started,
        )

        logger.info(
            "mtu sweep finished",
            best_mtu=best_mtu,
            successful=len(report.successful),
            advice=report.recommendation.advice,
        )
        return report

    def measure(self, host: str, mtu: int, interface: Optional[str] = None) -> ProfileTestResults:
        """
        Test a profile's MTU against a host without changing any link.

        Pings payloads of 64, 512, 1024 and mtu - 28 bytes. A ping counts
        towards the success rate only when answered in under 100 ms.

        Returns:
            Test results for the profile
        """
        validate_candidates([mtu])

        started = time.monotonic()
        latencies = LatencyTracker()
        loss = PacketLossTracker()
        sizes = [SMALL_PAYLOAD, MEDIUM_PAYLOAD, LARGE_PAYLOAD, mtu - HEADER_OVERHEAD]
        passed = self._ping_sizes(
            host, sizes, interface, latencies, loss, latency_limit=PROFILE_TEST_LATENCY_LIMIT
        )

        return ProfileTestResults(
            ping_success_rate=passed / len(sizes) * 100,
            average_latency=latencies.average,
            packet_loss=loss.loss_percent,
            last_tested=self.clock.now(),
            test_duration=time.monotonic() - started,
        )
