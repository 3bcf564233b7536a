"""
Peer provisioning: create, enable, disable, delete and re-key peers.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from structlog import get_logger

from src.common import config_codec as codec
from src.common.errors import ExternalCommandError, ValidationError
from src.common.models import PeerRecord, PeerStatus, build
from src.server.peer_sync import mark_disconnected

logger = get_logger()


class PeerService:
    """Provisions peers on managed interfaces."""

    def __init__(self, store, wireguard, keys, allocator, reconciler, clock, settings):
        self.store = store
        self.wireguard = wireguard
        self.keys = keys
        self.allocator = allocator
        self.reconciler = reconciler
        self.clock = clock
        self.settings = settings

    def _push(self, peer: PeerRecord):
        self.wireguard.set_peer(
            peer.interface_name,
            peer.public_key,
            peer.allowed_ips or [f"{peer.assigned_ip}/32"],
            preshared_key=peer.preshared_key if peer.use_preshared_key else None,
            keepalive=peer.persistent_keepalive,
        )

    def _commit(self, interface_name: str, change):
        """
        Apply a record change, rewrite the config and update the live interface.

        If the live update fails the records roll back and the config file
        is rewritten from the restored records.
        """
        try:
            with self.store.transaction():
                result = change()
                self.store.refresh_counters(interface_name)
                self.reconciler.write_config(interface_name)
                return result
        except ExternalCommandError:
            self.reconciler.write_config(interface_name)
            raise

    def add_peer(
        self,
        interface_name: str,
        name: str,
        dns: Optional[List[str]] = None,
        mtu: Optional[int] = None,
        persistent_keepalive: Optional[int] = None,
        use_preshared_key: bool = False,
        client_allowed_ips: Optional[List[str]] = None,
        endpoint: Optional[str] = None,
        monthly_limit: int = 0,
        expires_at: Optional[datetime] = None
    ) -> PeerRecord:
        """
        Create a peer with a fresh key pair and the next free address.

        Args:
            interface_name: Interface to attach to
            name: Display name
            dns: DNS servers for the client config
            mtu: MTU for the client config, defaults to the interface MTU
            persistent_keepalive: Keepalive seconds
            use_preshared_key: Generate and use a preshared key
            client_allowed_ips: Ranges the client routes through the tunnel
            endpoint: Known endpoint of the peer
            monthly_limit: Transfer allowance in bytes per month, 0 for none
            expires_at: Time after which the peer counts as expired

        Returns:
            Created peer

        Raises:
            NotFoundError: If the interface does not exist
            AddressSpaceExhausted: If the subnet is full
        """
        with self.store.interface_lock(interface_name):
            record = self.store.get_interface(interface_name)
            used = self.store.used_addresses(interface_name) + [record.server_ip]
            address = self.allocator.allocate(interface_name, record.subnet, used)

            try:
                private_key, public_key = self.keys.generate_keypair()
                fields = dict(
                    name=name,
                    interface_name=interface_name,
                    public_key=public_key,
                    private_key=private_key,
                    use_preshared_key=use_preshared_key,
                    preshared_key=self.keys.generate_preshared_key() if use_preshared_key else None,
                    allowed_ips=[f"{address}/32"],
                    endpoint=endpoint,
                    persistent_keepalive=(
                        persistent_keepalive if persistent_keepalive is not None
                        else record.persistent_keepalive
                    ),
                    assigned_ip=address,
                    dns=dns or [],
                    mtu=mtu,
                    last_key_rotation=self.clock.now(),
                    data_limit={"monthly": monthly_limit, "reset_date": self.clock.now()},
                    expires_at=expires_at,
                )
                if client_allowed_ips:
                    fields["client_allowed_ips"] = client_allowed_ips
                peer = build(PeerRecord, **fields)

                def change():
                    self.store.add_peer(peer)
                    if self.wireguard.is_running(interface_name):
                        self._push(peer)
                    return peer

                self._commit(interface_name, change)
            finally:
                self.allocator.release(interface_name, address)

        logger.info("peer created", interface=interface_name, peer=name, ip=address)
        return self.store.get_peer(peer.id)

    def get_peer(self, peer_id: str) -> PeerRecord:
        return self.store.get_peer(peer_id)

    def list_peers(self, interface_name: str) -> List[PeerRecord]:
        self.store.get_interface(interface_name)
        return self.store.peers_for(interface_name)

    def enable(self, peer_id: str) -> PeerRecord:
        peer = self.store.get_peer(peer_id)
        if peer.enabled:
            return peer

        with self.store.interface_lock(peer.interface_name):
            def change():
                peer.enabled = True
                peer.status = PeerStatus.PENDING
                self.store.save_peer(peer)
                if self.wireguard.is_running(peer.interface_name):
                    self._push(peer)

            self._commit(peer.interface_name, change)

        logger.info("peer enabled", interface=peer.interface_name, peer=peer.name)
        return self.store.get_peer(peer_id)

    def disable(self, peer_id: str) -> PeerRecord:
        """Keep the record but remove the peer from the live interface."""
        peer = self.store.get_peer(peer_id)
        if not peer.enabled:
            return peer

        with self.store.interface_lock(peer.interface_name):
            def change():
                mark_disconnected(peer, self.clock.now())
                peer.enabled = False
                peer.status = PeerStatus.DISABLED
                self.store.save_peer(peer)
                if self.wireguard.is_running(peer.interface_name):
                    self.wireguard.remove_peer(peer.interface_name, peer.public_key)

            self._commit(peer.interface_name, change)

        logger.info("peer disabled", interface=peer.interface_name, peer=peer.name)
        return self.store.get_peer(peer_id)

    def delete(self, peer_id: str):
        peer = self.store.get_peer(peer_id)

        with self.store.interface_lock(peer.interface_name):
            def change():
                self.store.delete_peer(peer_id)
                if peer.enabled and self.wireguard.is_running(peer.interface_name):
                    self.wireguard.remove_peer(peer.interface_name, peer.public_key)

            self._commit(peer.interface_name, change)

        logger.info("peer deleted", interface=peer.interface_name, peer=peer.name)

    def rotate_keys(self, peer_id: str) -> PeerRecord:
        """
        Replace a peer's key pair in place.

        The peer keeps its id, name and address; it returns to pending until
        the client handshakes with the new key.
        """
        peer = self.store.get_peer(peer_id)
        old_public_key = peer.public_key

        with self.store.interface_lock(peer.interface_name):
            def change():
                now = self.clock.now()
                mark_disconnected(peer, now)
                peer.private_key, peer.public_key = self.keys.generate_keypair()
                if peer.use_preshared_key:
                    peer.preshared_key = self.keys.generate_preshared_key()
                peer.last_key_rotation = now
                peer.observed_rx = 0
                peer.observed_tx = 0
                if peer.enabled:
                    peer.status = PeerStatus.PENDING
                self.store.save_peer(peer)

                if peer.enabled and self.wireguard.is_running(peer.interface_name):
                    self.wireguard.remove_peer(peer.interface_name, old_public_key)
                    self._push(peer)

            self._commit(peer.interface_name, change)

        logger.info("peer keys rotated", interface=peer.interface_name, peer=peer.name)
        return self.store.get_peer(peer_id)

    def set_limits(
        self,
        peer_id: str,
        monthly_limit: Optional[int] = None,
        expires_at: Optional[datetime] = None
    ) -> PeerRecord:
        """
        Change a peer's monthly transfer allowance or expiry time.

        A monthly_limit of 0 removes the allowance.
        """
        peer = self.store.get_peer(peer_id)

        with self.store.interface_lock(peer.interface_name):
            with self.store.transaction():
                peer = self.store.get_peer(peer_id)
                if monthly_limit is not None:
                    if monthly_limit < 0:
                        raise ValidationError("monthly limit must not be negative")
                    peer.data_limit.monthly = monthly_limit
                if expires_at is not None:
                    peer.expires_at = expires_at
                self.store.save_peer(peer)

        logger.info(
            "peer limits set",
            interface=peer.interface_name,
            peer=peer.name,
            monthly_limit=peer.data_limit.monthly,
            expires_at=peer.expires_at,
        )
        return self.store.get_peer(peer_id)

    def reset_data_limit(self, peer_id: str) -> PeerRecord:
        """Start a new allowance period for a peer."""
        peer = self.store.get_peer(peer_id)

        with self.store.interface_lock(peer.interface_name):
            with self.store.transaction():
                peer = self.store.get_peer(peer_id)
                peer.data_limit.used = 0
                peer.data_limit.reset_date = self.clock.now()
                self.store.save_peer(peer)

        logger.info("peer data usage reset", interface=peer.interface_name, peer=peer.name)
        return self.store.get_peer(peer_id)

    def disable_expired(self) -> List[PeerRecord]:
        """Disable every enabled peer whose expiry time has passed."""
        now = self.clock.now()
        expired = [p for p in self.store.list_peers() if p.enabled and p.is_expired(now)]
        disabled = [self.disable(p.id) for p in expired]
        if disabled:
            logger.info("expired peers disabled", count=len(disabled))
        return disabled

    def rotation_due(self) -> List[PeerRecord]:
        """Peers whose keys are older than the rotation interval."""
        now = self.clock.now()
        return [p for p in self.store.list_peers() if p.needs_key_rotation(now)]

    def view(self, peer: PeerRecord) -> Dict[str, Any]:
        """Public view of a peer with its lifecycle state."""
        now = self.clock.now()
        return {
            "id": peer.id,
            **peer.to_public_dict(),
            "expired": peer.is_expired(now),
            "needs_key_rotation": peer.needs_key_rotation(now),
            "data_limit_percentage": peer.data_limit_percentage,
        }

    def client_config(self, peer_id: str) -> str:
        """Client configuration text for a peer."""
        peer = self.store.get_peer(peer_id)
        record = self.store.get_interface(peer.interface_name)
        return codec.render_client(peer, record, self.settings.ENDPOINT_HOST)
