#!/usr/bin/env python3
"""
Unit tests for the subprocess-backed host tools: executor, wg wrapper and ping.
"""

import subprocess
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.common.errors import CommandTimeoutError, ExternalCommandError, ProbeError
from src.server.executor import CommandExecutor, CommandResult
from src.server.prober import IcmpProber
from src.server.wireguard import WireGuardTool, parse_dump


DUMP = (
    "c2VydmVyLXByaXZhdGU=\tc2VydmVyLXB1YmxpYw==\t51820\toff\n"
    "cGVlci1vbmU=\t(none)\t203.0.113.5:40000\t10.5.0.2/32\t1767268800\t1024\t2048\t25\n"
    "cGVlci10d28=\tcHNr\t(none)\t10.5.0.3/32,192.168.1.0/24\t0\t0\t0\toff\n"
)


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestCommandExecutor(unittest.TestCase):
    """Test bounded command execution."""

    def setUp(self):
        """Set up test fixtures."""
        self.executor = CommandExecutor(timeout=5)

    @patch("src.server.executor.subprocess.run")
    def test_success(self, mock_run):
        """Test output is captured and the default timeout applied."""
        mock_run.return_value = completed(stdout="interface: wg0\n")

        result = self.executor.run(["wg", "show", "wg0"])

        self.assertTrue(result.ok)
        self.assertEqual(result.stdout, "interface: wg0\n")
        self.assertEqual(mock_run.call_args.kwargs["timeout"], 5)

    @patch("src.server.executor.subprocess.run")
    def test_non_zero_exit(self, mock_run):
        """Test a failing command raises with its stderr."""
        mock_run.return_value = completed(returncode=1, stderr="Unable to access interface: No such device")

        with self.assertRaises(ExternalCommandError) as ctx:
            self.executor.run(["wg", "show", "wg9"])

        self.assertEqual(ctx.exception.returncode, 1)
        self.assertIn("No such device", str(ctx.exception))

    @patch("src.server.executor.subprocess.run")
    def test_non_zero_exit_unchecked(self, mock_run):
        """Test check=False returns the failed result."""
        mock_run.return_value = completed(returncode=1)
        self.assertFalse(self.executor.run(["wg", "show", "wg9"], check=False).ok)

    @patch("src.server.executor.subprocess.run")
    def test_timeout(self, mock_run):
        """Test an overrunning command raises CommandTimeoutError."""
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="wg-quick", timeout=5)

        with self.assertRaises(CommandTimeoutError):
            self.executor.run(["wg-quick", "up", "wg0"])

    @patch("src.server.executor.subprocess.run")
    def test_missing_binary(self, mock_run):
        """Test a missing executable raises ExternalCommandError."""
        mock_run.side_effect = FileNotFoundError("wg")

        with self.assertRaises(ExternalCommandError):
            self.executor.run(["wg", "--version"])


class TestParseDump(unittest.TestCase):
    """Test parsing `wg show dump` output."""

    def test_parse(self):
        """Test peer lines are parsed and the interface line skipped."""
        peers = parse_dump(DUMP)

        self.assertEqual(len(peers), 2)
        first, second = peers
        self.assertEqual(first.public_key, "cGVlci1vbmU=")
        self.assertEqual(first.endpoint, "203.0.113.5:40000")
        self.assertEqual(first.latest_handshake, datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))
        self.assertEqual((first.rx, first.tx, first.keepalive), (1024, 2048, 25))

        self.assertIsNone(second.endpoint)
        self.assertIsNone(second.latest_handshake)
        self.assertEqual(second.allowed_ips, ["10.5.0.3/32", "192.168.1.0/24"])
        self.assertEqual(second.keepalive, 0)

    def test_handshake_window(self):
        """Test the window boundary is inclusive."""
        peer = parse_dump(DUMP)[0]
        handshake = peer.latest_handshake

        self.assertTrue(peer.is_handshaking(handshake + timedelta(seconds=180), 180))
        self.assertFalse(peer.is_handshaking(handshake + timedelta(seconds=181), 180))
        self.assertFalse(parse_dump(DUMP)[1].is_handshaking(handshake, 180))

    def test_empty(self):
        """Test an interface without peers parses to nothing."""
        self.assertEqual(parse_dump(DUMP.splitlines()[0]), [])
        self.assertEqual(parse_dump(""), [])


class TestWireGuardTool(unittest.TestCase):
    """Test the wg/wg-quick command lines."""

    def setUp(self):
        """Set up test fixtures."""
        self.executor = MagicMock()
        self.tool = WireGuardTool(self.executor, Path("/etc/wireguard"))

    def test_up_down_use_config_path(self):
        """Test wg-quick is pointed at the config file."""
        self.tool.up("wg0")
        self.tool.down("wg0")

        self.executor.run.assert_any_call(["wg-quick", "up", "/etc/wireguard/wg0.conf"])
        self.executor.run.assert_any_call(["wg-quick", "down", "/etc/wireguard/wg0.conf"])

    def test_is_running(self):
        """Test liveness comes from the exit status of `wg show`."""
        self.executor.run.return_value = CommandResult(["wg"], 1, "", "No such device")
        self.assertFalse(self.tool.is_running("wg0"))
        self.executor.run.assert_called_with(["wg", "show", "wg0"], check=False)

    def test_show_dump(self):
        """Test dump output is parsed."""
        self.executor.run.return_value = CommandResult(["wg"], 0, DUMP, "")
        self.assertEqual(len(self.tool.show_dump("wg0")), 2)

    def test_set_peer_with_preshared_key(self):
        """Test the preshared key goes through stdin, not argv."""
        self.tool.set_peer("wg0", "cGVlci1vbmU=", ["10.5.0.2/32"], preshared_key="c2VjcmV0", keepalive=25)

        args, kwargs = self.executor.run.call_args
        self.assertEqual(
            args[0],
            ["wg", "set", "wg0", "peer", "cGVlci1vbmU=", "allowed-ips", "10.5.0.2/32",
             "persistent-keepalive", "25", "preshared-key", "/dev/stdin"]
        )
        self.assertNotIn("c2VjcmV0", args[0])
        self.assertEqual(kwargs["input"], "c2VjcmV0")

    def test_remove_peer(self):
        """Test peer removal command line."""
        self.tool.remove_peer("wg0", "cGVlci1vbmU=")
        self.executor.run.assert_called_with(["wg", "set", "wg0", "peer", "cGVlci1vbmU=", "remove"])

    def test_is_available(self):
        """Test a missing wg binary reports unavailable."""
        self.executor.run.side_effect = ExternalCommandError("wg not found")
        self.assertFalse(self.tool.is_available())


class TestIcmpProber(unittest.TestCase):
    """Test ping invocation and output parsing."""

    def setUp(self):
        """Set up test fixtures."""
        self.executor = MagicMock()
        self.prober = IcmpProber(self.executor)

    def test_reply(self):
        """Test the round trip time is read from ping output."""
        self.executor.run.return_value = CommandResult(
            ["ping"], 0,
            "PING 8.8.8.8 (8.8.8.8) 1372(1400) bytes of data.\n"
            "1380 bytes from 8.8.8.8: icmp_seq=1 ttl=117 time=23.4 ms\n",
            "",
        )

        result = self.prober.ping("8.8.8.8", 1372, timeout=2.0, interface="wg0")

        self.assertTrue(result.alive)
        self.assertEqual(result.latency_ms, 23.4)
        args = self.executor.run.call_args.args[0]
        self.assertEqual(
            args, ["ping", "-n", "-M", "do", "-c", "1", "-W", "2", "-s", "1372", "-I", "wg0", "8.8.8.8"]
        )

    def test_no_reply(self):
        """Test a non-zero exit means no reply."""
        self.executor.run.return_value = CommandResult(["ping"], 1, "", "")
        self.assertFalse(self.prober.ping("8.8.8.8", 64).alive)

    def test_timeout(self):
        """Test a hung ping raises ProbeError."""
        self.executor.run.side_effect = CommandTimeoutError("ping timed out")
        with self.assertRaises(ProbeError):
            self.prober.ping("8.8.8.8", 64)


if __name__ == "__main__":
    unittest.main()
