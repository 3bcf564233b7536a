#!/usr/bin/env python3
"""
Unit tests for the command line entry point.
"""

import io
from datetime import datetime, timezone
import unittest
from unittest.mock import patch

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from fakes import make_context
from src.common.models import Provider
from src.server.main import build_parser, main, run_command


class TestParser(unittest.TestCase):
    """Test argument parsing."""

    def test_candidates_and_provider(self):
        """Test MTU lists and provider names are converted."""
        parser = build_parser()

        args = parser.parse_args(["test-mtu", "wg0", "--candidates", "1280,1400"])
        self.assertEqual(args.candidates, [1280, 1400])

        args = parser.parse_args(["generate-profiles", "mytel"])
        self.assertEqual(args.provider, Provider.MYTEL)

    def test_expiry_time(self):
        """Test expiry times without an offset are read as UTC."""
        args = build_parser().parse_args(["peer-limits", "abc", "--expires", "2026-03-01T08:30:00"])
        self.assertEqual(args.expires, datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc))
        self.assertIsNone(args.data_limit)

    def test_bad_provider(self):
        """Test an unknown provider is a usage error."""
        with patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                build_parser().parse_args(["recommend", "nowhere"])


class TestRunCommand(unittest.TestCase):
    """Test commands against a context of fakes."""

    def setUp(self):
        """Set up test fixtures."""
        self.ctx, self.fakes = make_context(mtus={"wg2": 1420})
        self.parser = build_parser()

    def run_args(self, *argv):
        return run_command(self.ctx, self.parser.parse_args(list(argv)))

    def test_create_and_add_peer(self):
        """Test provisioning commands return public views."""
        created = self.run_args("create", "wg2", "--address", "10.2.0.1/24", "--dns", "1.1.1.1, 9.9.9.9")
        self.assertEqual(created["dns"], ["1.1.1.1", "9.9.9.9"])
        self.assertNotIn("private_key", created)

        peer = self.run_args("add-peer", "wg2", "laptop")
        self.assertEqual(peer["assigned_ip"], "10.2.0.2")
        self.assertNotIn("private_key", peer)

        text = self.run_args("client-config", peer["id"])
        self.assertIn("Address = 10.2.0.2/32", text)

        usage = self.run_args("usage", "wg2")
        self.assertEqual((usage["assigned"], usage["available"]), (1, 252))

    def test_peer_lifecycle_commands(self):
        """Test allowance, expiry and fleet-wide preset commands."""
        self.run_args("create", "wg2", "--address", "10.2.0.1/24")
        peer = self.run_args(
            "add-peer", "wg2", "laptop", "--data-limit", "4096", "--expires", "2026-01-01T11:00:00"
        )
        self.assertEqual(peer["data_limit"]["monthly"], 4096)
        self.assertTrue(peer["expired"])
        self.assertFalse(peer["needs_key_rotation"])

        self.assertEqual(self.run_args("disable-expired"), ["laptop"])

        updated = self.run_args("peer-limits", peer["id"], "--data-limit", "0")
        self.assertEqual(updated["data_limit"]["monthly"], 0)
        self.assertEqual(self.run_args("rotation-due"), [])

        report = self.run_args("apply-preset-all", "mytel")
        self.assertEqual((report["total"], report["successful"]), (1, 1))

    def test_profiles_and_stats(self):
        """Test profile and reporting commands."""
        names = self.run_args("generate-profiles", "ATOM")
        self.assertEqual(len(names), 12)

        stats = self.run_args("stats")
        self.assertEqual(stats["interfaces"]["discovered"], 1)


class TestMain(unittest.TestCase):
    """Test the process entry point."""

    def setUp(self):
        """Set up test fixtures."""
        self.ctx, self.fakes = make_context()

    def run_main(self, argv):
        stdout, stderr = io.StringIO(), io.StringIO()
        with patch("src.server.main.configure_logging"), \
                patch("src.server.main.get_settings", return_value=self.ctx.settings), \
                patch("src.server.main.build_context", return_value=self.ctx), \
                patch("sys.stdout", stdout), patch("sys.stderr", stderr):
            code = main(argv)
        return code, stdout.getvalue(), stderr.getvalue()

    def test_json_output(self):
        """Test results are printed as JSON."""
        code, out, _ = self.run_main(["health"])

        self.assertEqual(code, 0)
        self.assertIn("\"score\": 70", out)

    def test_error_exit_code(self):
        """Test a failed command exits 1 with the error on stderr."""
        code, _, err = self.run_main(["start", "wg9"])

        self.assertEqual(code, 1)
        self.assertIn("wg9", err)


if __name__ == "__main__":
    unittest.main()
