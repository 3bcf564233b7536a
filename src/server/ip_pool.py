"""
Peer address allocation within an interface subnet.
"""

import threading
from typing import Dict, Iterable, Set, Union
from ipaddress import IPv4Network, IPv4Address, ip_network

from structlog import get_logger

from src.common.errors import AddressSpaceExhausted, ValidationError
from src.common.locks import KeyedLock

logger = get_logger()

SubnetLike = Union[str, IPv4Network]


def _as_network(subnet: SubnetLike) -> IPv4Network:
    if isinstance(subnet, IPv4Network):
        return subnet
    try:
        network = ip_network(str(subnet), strict=False)
    except ValueError as e:
        raise ValidationError(f"invalid subnet {subnet}: {e}") from e
    if not isinstance(network, IPv4Network):
        raise ValidationError(f"only IPv4 subnets are supported: {subnet}")
    return network


def _candidates(network: IPv4Network) -> Iterable[IPv4Address]:
    # the first usable address belongs to the server
    hosts = network.hosts()
    next(hosts, None)
    return hosts


def next_available(subnet: SubnetLike, used: Iterable[str]) -> str:
    """
    Find the lowest free host address of a subnet.

    Scanning starts at the second usable address, so in 10.5.0.0/24 the
    first candidate is 10.5.0.2.

    Args:
        subnet: Interface subnet in CIDR notation
        used: Addresses already assigned, including the server's own

    Returns:
        Free address

    Raises:
        ValidationError: If the subnet is malformed
        AddressSpaceExhausted: If every host address is taken
    """
    network = _as_network(subnet)
    taken = {str(ip) for ip in used}

    for ip in _candidates(network):
        if str(ip) not in taken:
            return str(ip)

    raise AddressSpaceExhausted(f"no free address left in {network}")


class AddressAllocator:
    """Hands out peer addresses without collisions between concurrent callers."""

    def __init__(self):
        """Initialize allocator."""
        self.locks = KeyedLock()
        self.lock = threading.Lock()

        # interface name -> addresses handed out but not yet persisted
        self.reserved: Dict[str, Set[str]] = {}

    def allocate(self, interface_name: str, subnet: SubnetLike, used: Iterable[str]) -> str:
        """
        Allocate an address and reserve it until released.

        Args:
            interface_name: Interface the peer belongs to
            subnet: Interface subnet
            used: Addresses already persisted on the interface

        Returns:
            Allocated address
        """
        with self.locks.get(interface_name):
            with self.lock:
                reserved = set(self.reserved.get(interface_name, set()))

            try:
                ip = next_available(subnet, set(used) | reserved)
            except AddressSpaceExhausted:
                logger.error("address space exhausted", interface=interface_name, subnet=str(subnet))
                raise

            with self.lock:
                self.reserved.setdefault(interface_name, set()).add(ip)

            logger.debug(f"allocated {ip} on {interface_name}")
            return ip

    def release(self, interface_name: str, address: str):
        """Drop a reservation once the address is persisted or abandoned."""
        with self.lock:
            reserved = self.reserved.get(interface_name)
            if reserved is None:
                return
            reserved.discard(address)
            if not reserved:
                del self.reserved[interface_name]

    def usage(self, subnet: SubnetLike, used: Iterable[str]) -> Dict:
        """
        Get address usage of a subnet.

        Returns:
            Status dictionary
        """
        network = _as_network(subnet)
        taken = {str(ip) for ip in used}
        total = sum(1 for _ in _candidates(network))
        assigned = sum(1 for ip in _candidates(network) if str(ip) in taken)
        return {
            "subnet": str(network),
            "total": total,
            "assigned": assigned,
            "available": total - assigned,
        }
