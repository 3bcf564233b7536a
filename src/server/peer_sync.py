"""
Merges configuration entries and live handshake state into peer records.
"""

from datetime import datetime
from ipaddress import ip_interface
from typing import Dict, Iterable, List, Optional

from structlog import get_logger

from src.common.config_codec import split_list
from src.common.errors import ExternalCommandError
from src.common.models import (
    InterfaceRecord,
    PeerRecord,
    PeerStatus,
    TransferStats,
    build,
)

logger = get_logger()


def mark_connected(peer: PeerRecord, now: datetime, handshake: Optional[datetime] = None) -> bool:
    """
    Move a peer into the connected state.

    Sets the handshake and last-seen timestamps, the first-seen timestamp
    when missing, and counts the connection. A peer that is already
    connected only has last_seen refreshed.

    Returns:
        True when this call performed the transition
    """
    if peer.status == PeerStatus.CONNECTED:
        peer.last_seen = now
        return False

    peer.status = PeerStatus.CONNECTED
    peer.last_handshake = handshake or now
    peer.last_seen = now
    if peer.first_seen is None:
        peer.first_seen = now
    peer.connection_count += 1
    return True


def mark_disconnected(peer: PeerRecord, now: datetime) -> bool:
    """
    Move a connected peer into the disconnected state.

    The time since the handshake that opened the connection is added to the
    peer's uptime.

    Returns:
        True when this call performed the transition
    """
    if peer.status != PeerStatus.CONNECTED:
        return False

    if peer.last_handshake is not None:
        peer.total_uptime += max(0.0, (now - peer.last_handshake).total_seconds())
    peer.status = PeerStatus.DISCONNECTED
    return True


def _counter_delta(current: int, previous: int) -> int:
    # a counter lower than last time means the interface was recreated
    if current >= previous:
        return current - previous
    return current


def _address_from_allowed(allowed_ips: List[str], record: InterfaceRecord, used: Iterable[str]) -> Optional[str]:
    """First IPv4 host of AllowedIPs that lies in the subnet and is free."""
    taken = set(used)
    subnet = record.subnet
    for entry in allowed_ips:
        try:
            address = ip_interface(entry).ip
        except ValueError:
            continue
        if address.version != 4 or address not in subnet:
            continue
        if address in (subnet.network_address, subnet.broadcast_address):
            continue
        if str(address) == record.server_ip or str(address) in taken:
            continue
        return str(address)
    return None


class PeerSyncEngine:
    """Keeps peer records in line with config files and the live interface."""

    def __init__(self, store, wireguard, keys, allocator, clock, settings):
        """
        Initialize sync engine.

        Args:
            store: Fleet store
            wireguard: WireGuard tool used for live state queries
            keys: Key generator for peers discovered from config files
            allocator: Address allocator
            clock: Clock
            settings: Server settings
        """
        self.store = store
        self.wireguard = wireguard
        self.keys = keys
        self.allocator = allocator
        self.clock = clock
        self.settings = settings

    def reconcile_from_config(self, record: InterfaceRecord, entries: List[Dict[str, str]]) -> List[PeerRecord]:
        """
        Create or refresh peer records from parsed [Peer] entries.

        Existing peers have AllowedIPs and PersistentKeepalive refreshed.
        Unknown public keys become new pending peers with a freshly generated
        private key and an address taken from AllowedIPs when it is usable,
        otherwise allocated from the subnet.

        Args:
            record: Interface the entries belong to
            entries: Peer field maps from the config codec

        Returns:
            Peer records touched by this call
        """
        touched = []

        with self.store.transaction():
            for entry in entries:
                public_key = entry.get("PublicKey")
                if not public_key:
                    logger.warning("peer entry without public key skipped", interface=record.name)
                    continue

                allowed = split_list(entry.get("AllowedIPs"))
                keepalive = entry.get("PersistentKeepalive")

                peer = self.store.find_peer_by_key(public_key, record.name)
                if peer is not None:
                    if allowed:
                        peer.allowed_ips = allowed
                    if keepalive and keepalive.isdigit():
                        peer.persistent_keepalive = int(keepalive)
                    touched.append(self.store.save_peer(peer))
                    continue

                if self.store.find_peer_by_key(public_key) is not None:
                    logger.warning(
                        "peer key already attached to another interface",
                        interface=record.name,
                        public_key=public_key,
                    )
                    continue

                touched.append(self._create_from_entry(record, public_key, allowed, keepalive, entry))

        return touched

    def _create_from_entry(self, record, public_key, allowed, keepalive, entry) -> PeerRecord:
        used = self.store.used_addresses(record.name) + [record.server_ip]
        assigned = _address_from_allowed(allowed, record, used)
        reserved = assigned is None
        if reserved:
            assigned = self.allocator.allocate(record.name, record.subnet, used)

        try:
            private_key, _ = self.keys.generate_keypair()
            peer = build(
                PeerRecord,
                name=f"peer-{public_key[:8]}",
                interface_name=record.name,
                public_key=public_key,
                private_key=private_key,
                preshared_key=entry.get("PresharedKey"),
                use_preshared_key=bool(entry.get("PresharedKey")),
                allowed_ips=allowed or [f"{assigned}/32"],
                endpoint=entry.get("Endpoint"),
                persistent_keepalive=(
                    int(keepalive) if keepalive and keepalive.isdigit()
                    else self.settings.DEFAULT_KEEPALIVE
                ),
                assigned_ip=assigned,
                status=PeerStatus.PENDING,
            )
            self.store.add_peer(peer)
        finally:
            if reserved:
                self.allocator.release(record.name, assigned)

        logger.info("peer discovered from config", interface=record.name, peer=peer.name, ip=assigned)
        return peer

    def reconcile_live_status(self, interface_name: str) -> InterfaceRecord:
        """
        Apply live handshake state to every peer of an interface.

        Peers whose latest handshake lies inside HANDSHAKE_WINDOW become
        connected, connected peers missing from that set become
        disconnected. Transfer counters are folded in as deltas. When the
        live query fails every connected peer is marked disconnected.

        Returns:
            Interface record with recomputed counters
        """
        now = self.clock.now()

        try:
            live = self.wireguard.show_dump(interface_name)
        except ExternalCommandError as e:
            logger.warning("live peer query failed", interface=interface_name, error=str(e))
            with self.store.transaction():
                for peer in self.store.peers_for(interface_name):
                    if mark_disconnected(peer, now):
                        self.store.save_peer(peer)
                return self.store.refresh_counters(interface_name)

        by_key = {p.public_key: p for p in live}
        handshaking = {
            p.public_key for p in live
            if p.is_handshaking(now, self.settings.HANDSHAKE_WINDOW)
        }

        connected = disconnected = 0
        with self.store.transaction():
            for peer in self.store.peers_for(interface_name):
                observed = by_key.get(peer.public_key)
                if observed is not None:
                    received = _counter_delta(observed.rx, peer.observed_rx)
                    sent = _counter_delta(observed.tx, peer.observed_tx)
                    peer.transfer = TransferStats(
                        received=peer.transfer.received + received,
                        sent=peer.transfer.sent + sent,
                    )
                    if peer.data_limit.monthly > 0:
                        peer.data_limit.used += received + sent
                    peer.observed_rx = observed.rx
                    peer.observed_tx = observed.tx
                    if observed.endpoint:
                        peer.endpoint = observed.endpoint

                if peer.enabled and peer.public_key in handshaking:
                    if mark_connected(peer, now, observed.latest_handshake):
                        connected += 1
                elif mark_disconnected(peer, now):
                    disconnected += 1

                self.store.save_peer(peer)

            record = self.store.refresh_counters(interface_name)
            record.last_sync = now
            self.store.save_interface(record)

        logger.info(
            "live peer status reconciled",
            interface=interface_name,
            connected=connected,
            disconnected=disconnected,
            active=record.active_peers,
        )
        return record
