"""
Link discovery and MTU control over netlink.
"""

from typing import Dict, List

from pyroute2 import IPRoute
from pyroute2.netlink.exceptions import NetlinkError
from structlog import get_logger

from src.common.errors import ExternalCommandError, NotFoundError

logger = get_logger()


class LinkManager:
    """Reads and changes network links with pyroute2."""

    def _lookup(self, ipr: IPRoute, name: str):
        links = ipr.link("dump", ifname=name)
        if not links:
            raise NotFoundError(f"link {name} not found")
        return links[0]

    def list_links(self) -> List[str]:
        """Names of every link on the host."""
        try:
            with IPRoute() as ipr:
                return [link.get_attr("IFLA_IFNAME") for link in ipr.get_links()]
        except (NetlinkError, OSError) as e:
            raise ExternalCommandError(f"cannot list links: {e}") from e

    def get_mtu(self, name: str) -> int:
        try:
            with IPRoute() as ipr:
                return int(self._lookup(ipr, name).get_attr("IFLA_MTU"))
        except (NetlinkError, OSError) as e:
            raise ExternalCommandError(f"cannot read MTU of {name}: {e}") from e

    def set_mtu(self, name: str, mtu: int):
        """
        Set a link's MTU.

        Args:
            name: Link name
            mtu: New MTU

        Raises:
            NotFoundError: If the link does not exist
            ExternalCommandError: If the kernel rejects the change
        """
        try:
            with IPRoute() as ipr:
                idx = self._lookup(ipr, name)["index"]
                ipr.link("set", index=idx, mtu=mtu)
        except (NetlinkError, OSError) as e:
            raise ExternalCommandError(f"cannot set MTU {mtu} on {name}: {e}") from e

        logger.debug("link mtu set", link=name, mtu=mtu)

    def link_stats(self, name: str) -> Dict[str, int]:
        """Byte counters of a link."""
        try:
            with IPRoute() as ipr:
                link = self._lookup(ipr, name)
        except (NetlinkError, OSError) as e:
            raise ExternalCommandError(f"cannot read counters of {name}: {e}") from e

        stats = link.get_attr("IFLA_STATS64") or link.get_attr("IFLA_STATS") or {}
        return {
            "rx_bytes": int(stats.get("rx_bytes", 0)),
            "tx_bytes": int(stats.get("tx_bytes", 0)),
        }
