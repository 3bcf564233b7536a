#!/usr/bin/env python3
"""
Unit tests for the MTU probe sweep, scoring and recommendations.
"""

import threading
import unittest
from unittest.mock import MagicMock

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from fakes import FakeClock, FakeLinks, FakeProber, make_settings
from src.common.errors import ExternalCommandError, ValidationError
from src.common.metrics import latency_bonus, score_candidate
from src.common.models import Provider
from src.server.mtu_probe import MTUProbe, recommend


class TestScoring(unittest.TestCase):
    """Test candidate scoring."""

    def test_latency_bonus(self):
        """Test bonus bands."""
        self.assertEqual(latency_bonus(10), 30)
        self.assertEqual(latency_bonus(50), 20)
        self.assertEqual(latency_bonus(150), 10)
        self.assertEqual(latency_bonus(500), 0)

    def test_score_candidate(self):
        """Test score formula and clamping."""
        self.assertEqual(score_candidate(True, 40, 0), 80)
        self.assertEqual(score_candidate(True, 90, 0), 70)
        self.assertEqual(score_candidate(True, 300, 100 / 3), 50 - 100 / 3)
        self.assertEqual(score_candidate(True, 500, 66.7), 0)
        self.assertEqual(score_candidate(False, 10, 0), 0)


class TestMTUProbe(unittest.TestCase):
    """Test sweeps over a fake link."""

    def setUp(self):
        """Set up test fixtures."""
        self.links = FakeLinks({"wg0": 1420, "wg1": 1420})
        self.prober = FakeProber(self.links, latencies={1280: 40, 1400: 90})
        self.clock = FakeClock()
        self.probe = MTUProbe(self.links, self.prober, self.clock, make_settings())

    def test_sweep_scores_and_best(self):
        """Test 1280/1400 succeed with 40/90 ms and 1500 fails."""
        report = self.probe.run("wg0", [1280, 1400, 1500])

        self.assertEqual([s.score for s in report.results], [80, 70, 0])
        self.assertEqual([s.success for s in report.results], [True, True, False])
        self.assertEqual(report.results[2].packet_loss, 100)
        self.assertEqual(report.best_mtu, 1280)
        self.assertEqual(report.original_mtu, 1420)

    def test_sweeps_of_one_interface_do_not_interleave(self):
        """Test a second sweep of wg0 waits until the first has restored the MTU."""
        entered = threading.Event()
        release = threading.Event()

        def hold_first_ping(interface):
            if interface == "wg0" and not entered.is_set():
                entered.set()
                release.wait(5)

        self.prober.on_ping = hold_first_ping

        first = threading.Thread(target=self.probe.run, args=("wg0", [1280]))
        second = threading.Thread(target=self.probe.run, args=("wg0", [1400]))
        first.start()
        self.assertTrue(entered.wait(5))
        second.start()
        second.join(0.2)
        self.assertTrue(second.is_alive())

        # other interfaces are not held up
        report = self.probe.run("wg1", [1400])
        self.assertEqual(report.best_mtu, 1400)

        release.set()
        first.join(5)
        second.join(5)
        self.assertFalse(first.is_alive() or second.is_alive())

        wg0_history = [mtu for name, mtu in self.links.history if name == "wg0"]
        self.assertEqual(wg0_history, [1280, 1420, 1400, 1420])
        self.assertEqual(self.links.mtus["wg0"], 1420)

    def test_payload_sizes(self):
        """Test small, medium and full-frame payloads are sent through the interface."""
        self.probe.run("wg0", [1400], test_host="1.1.1.1")

        self.assertEqual(
            self.prober.sent,
            [("1.1.1.1", 64, "wg0"), ("1.1.1.1", 512, "wg0"), ("1.1.1.1", 1372, "wg0")]
        )

    def test_original_mtu_restored(self):
        """Test the link MTU is put back after the sweep."""
        self.probe.run("wg0", [1280, 1400, 1500])

        self.assertEqual(self.links.mtus["wg0"], 1420)
        self.assertEqual(self.links.history[-1], ("wg0", 1420))

    def test_all_candidates_fail(self):
        """Test a sweep where nothing answers keeps the original MTU."""
        self.prober.latencies = {}
        report = self.probe.run("wg0", [1300, 1340])

        self.assertEqual(report.best_mtu, 1420)
        self.assertEqual(report.successful, [])
        self.assertEqual(self.links.mtus["wg0"], 1420)

    def test_set_mtu_failure_is_zero_sample(self):
        """Test a candidate the link rejects is scored 0 and the sweep continues."""
        self.links.reject.add(1400)
        report = self.probe.run("wg0", [1400, 1280])

        self.assertFalse(report.results[0].success)
        self.assertEqual(report.results[0].score, 0)
        self.assertIsNotNone(report.results[0].error)
        self.assertTrue(report.results[1].success)
        self.assertEqual(report.best_mtu, 1280)
        self.assertEqual(self.links.mtus["wg0"], 1420)

    def test_probe_timeouts_count_as_loss(self):
        """Test a timed-out probe counts as a lost packet."""
        self.prober.timeouts.add(512)
        report = self.probe.run("wg0", [1280])

        sample = report.results[0]
        self.assertTrue(sample.success)
        self.assertAlmostEqual(sample.packet_loss, 100 / 3)
        self.assertAlmostEqual(sample.score, 80 - 100 / 3)

    def test_infrastructure_failure_still_restores(self):
        """Test an unusable prober aborts the sweep but restores the MTU."""
        prober = MagicMock()
        prober.ping.side_effect = ExternalCommandError("ping not found")
        probe = MTUProbe(self.links, prober, self.clock, make_settings())

        with self.assertRaises(ExternalCommandError):
            probe.run("wg0", [1280, 1400])

        self.assertEqual(self.links.mtus["wg0"], 1420)

    def test_invalid_candidates_rejected_before_any_change(self):
        """Test out-of-range candidates raise before touching the link."""
        for candidates in ([500, 1400], [1400, 9001], []):
            with self.subTest(candidates=candidates):
                with self.assertRaises(ValidationError):
                    self.probe.run("wg0", candidates)
        self.assertEqual(self.links.history, [])
        self.assertEqual(self.prober.sent, [])

    def test_throttle_delays(self):
        """Test settle, step and candidate delays are applied."""
        self.probe.run("wg0", [1280, 1400])

        # per candidate: settle + two step delays; one gap between candidates
        self.assertEqual(self.clock.sleeps, [0.1, 0.2, 0.2, 0.5, 0.1, 0.2, 0.2])

    def test_recommendation_attached(self):
        """Test the report carries the provider recommendation."""
        report = self.probe.run("wg0", [1280, 1400, 1500], provider=Provider.MYTEL)

        self.assertEqual(report.recommendation.provider_mtu, 1350)
        self.assertEqual(report.recommendation.difference, 70)
        self.assertEqual(report.recommendation.advice, "Fair")

    def test_measure(self):
        """Test a profile test uses four sizes and leaves the link alone."""
        self.prober.default_latency = 30
        results = self.probe.measure("8.8.8.8", 1400)

        self.assertEqual([s for _, s, _ in self.prober.sent], [64, 512, 1024, 1372])
        self.assertEqual(results.ping_success_rate, 100)
        self.assertEqual(results.packet_loss, 0)
        self.assertEqual(results.average_latency, 30)
        self.assertEqual(self.links.history, [])

    def test_measure_slow_replies(self):
        """Test replies over 100 ms count as answered but not successful."""
        self.prober.default_latency = 150
        results = self.probe.measure("8.8.8.8", 1400)

        self.assertEqual(results.ping_success_rate, 0)
        self.assertEqual(results.packet_loss, 0)


class TestRecommend(unittest.TestCase):
    """Test the provider heuristic table."""

    def test_advice_bands(self):
        """Test Good, Fair and Poor boundaries."""
        self.assertEqual(recommend(1450, Provider.MPT).advice, "Good")
        self.assertEqual(recommend(1451, Provider.MPT).advice, "Fair")
        self.assertEqual(recommend(1500, Provider.MPT).advice, "Fair")
        self.assertEqual(recommend(1501, Provider.MPT).advice, "Poor")

    def test_unknown_provider_uses_mpt(self):
        """Test providers without a baseline fall back to MPT."""
        rec = recommend(1280, Provider.UNKNOWN)

        self.assertEqual(rec.provider_mtu, 1400)
        self.assertEqual(rec.difference, 120)
        self.assertEqual(rec.advice, "Poor")
        self.assertIn("Consider using 1400", rec.message)

    def test_optimal_message(self):
        """Test a close match is reported as optimal."""
        rec = recommend(1420, Provider.OOREDOO)

        self.assertEqual(rec.difference, 0)
        self.assertEqual(rec.message, "Current MTU 1420 is optimal")
        self.assertEqual(rec.provider_range, "1300-1440")


if __name__ == "__main__":
    unittest.main()
