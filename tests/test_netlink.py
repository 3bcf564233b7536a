#!/usr/bin/env python3
"""
Unit tests for netlink link management.
"""

import unittest
from unittest.mock import MagicMock, patch

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pyroute2.netlink.exceptions import NetlinkError

from src.common.errors import ExternalCommandError, NotFoundError
from src.server.netlink import LinkManager


def make_link(name, index, mtu):
    attrs = {"IFLA_IFNAME": name, "IFLA_MTU": mtu, "IFLA_STATS64": {"rx_bytes": 10, "tx_bytes": 20}}
    link = MagicMock()
    link.get_attr.side_effect = attrs.get
    link.__getitem__.side_effect = {"index": index}.__getitem__
    return link


class TestLinkManager(unittest.TestCase):
    """Test MTU reads and writes through a mocked IPRoute."""

    def setUp(self):
        """Set up test fixtures."""
        patcher = patch("src.server.netlink.IPRoute")
        self.addCleanup(patcher.stop)
        self.ipr = patcher.start().return_value.__enter__.return_value
        self.links = {"wg0": make_link("wg0", 7, 1420)}
        self.ipr.link.side_effect = self.fake_link
        self.ipr.get_links.return_value = [make_link("lo", 1, 65536), self.links["wg0"]]
        self.manager = LinkManager()

    def fake_link(self, command, **kwargs):
        if command == "dump":
            link = self.links.get(kwargs["ifname"])
            return [link] if link else []
        return None

    def test_list_links(self):
        """Test link names are listed."""
        self.assertEqual(self.manager.list_links(), ["lo", "wg0"])

    def test_get_mtu(self):
        """Test the MTU attribute is read."""
        self.assertEqual(self.manager.get_mtu("wg0"), 1420)

    def test_set_mtu(self):
        """Test the MTU is set by link index."""
        self.manager.set_mtu("wg0", 1380)
        self.ipr.link.assert_called_with("set", index=7, mtu=1380)

    def test_missing_link(self):
        """Test an unknown link raises NotFoundError."""
        with self.assertRaises(NotFoundError):
            self.manager.set_mtu("wg9", 1380)

    def test_kernel_rejects(self):
        """Test netlink errors become ExternalCommandError."""
        def reject(command, **kwargs):
            if command == "set":
                raise NetlinkError(22, "Invalid argument")
            return self.fake_link(command, **kwargs)

        self.ipr.link.side_effect = reject
        with self.assertRaises(ExternalCommandError):
            self.manager.set_mtu("wg0", 100000)

    def test_link_stats(self):
        """Test byte counters are read from the 64-bit stats."""
        self.assertEqual(self.manager.link_stats("wg0"), {"rx_bytes": 10, "tx_bytes": 20})


if __name__ == "__main__":
    unittest.main()
