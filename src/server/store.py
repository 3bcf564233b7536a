"""
Persisted record store for interfaces, peers and MTU profiles.

Holds every record in memory behind one re-entrant lock and writes the whole
state as a JSON document after each committed change.
"""

import copy
import json
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from structlog import get_logger

from src.common.errors import (
    DuplicateAddressError,
    DuplicateInterfaceError,
    DuplicatePeerError,
    DuplicateProfileError,
    NotFoundError,
    ValidationError,
)
from src.common.locks import KeyedLock
from src.common.models import (
    InterfaceRecord,
    MTUProfile,
    PeerRecord,
    PeerStatus,
    Provider,
    TransferStats,
    utcnow,
)

logger = get_logger()

STATE_VERSION = 1


class FleetStore:
    """Thread-safe store with atomic multi-record transactions."""

    def __init__(self, state_file: Optional[Path] = None):
        """
        Initialize the store.

        Args:
            state_file: JSON document to load from and persist to; the store
                stays in memory only when omitted
        """
        self.state_file = Path(state_file) if state_file else None
        self.lock = threading.RLock()
        self.interface_locks = KeyedLock()

        self.interfaces: Dict[str, InterfaceRecord] = {}
        self.peers: Dict[str, PeerRecord] = {}
        self.profiles: Dict[str, MTUProfile] = {}

        self._depth = 0

        if self.state_file and self.state_file.exists():
            self._load()

    # ---------- transactions ----------

    @contextmanager
    def transaction(self) -> Iterator["FleetStore"]:
        """
        Group several mutations into one atomic change.

        On an exception every record is rolled back to its state before the
        outermost transaction began; on success the state is persisted once.
        """
        with self.lock:
            outermost = self._depth == 0
            if outermost:
                saved = (
                    copy.deepcopy(self.interfaces),
                    copy.deepcopy(self.peers),
                    copy.deepcopy(self.profiles),
                )
            self._depth += 1
            try:
                yield self
            except BaseException:
                if outermost:
                    self.interfaces, self.peers, self.profiles = saved
                raise
            finally:
                self._depth -= 1
            if outermost:
                self._persist()

    def interface_lock(self, name: str) -> threading.RLock:
        """Lock serializing lifecycle and provisioning work on one interface."""
        return self.interface_locks.get(name)

    # ---------- interfaces ----------

    def get_interface(self, name: str) -> InterfaceRecord:
        with self.lock:
            record = self.interfaces.get(name)
            if record is None:
                raise NotFoundError(f"interface {name} not found")
            return record.model_copy(deep=True)

    def find_interface(self, name: str) -> Optional[InterfaceRecord]:
        with self.lock:
            record = self.interfaces.get(name)
            return record.model_copy(deep=True) if record else None

    def list_interfaces(self) -> List[InterfaceRecord]:
        with self.lock:
            return [r.model_copy(deep=True) for r in sorted(self.interfaces.values(), key=lambda r: r.name)]

    def add_interface(self, record: InterfaceRecord) -> InterfaceRecord:
        with self.transaction():
            if record.name in self.interfaces:
                raise DuplicateInterfaceError(f"interface {record.name} already exists")
            for other in self.interfaces.values():
                if other.public_key == record.public_key:
                    raise DuplicateInterfaceError(
                        f"public key already used by interface {other.name}"
                    )
            self.interfaces[record.name] = record.model_copy(deep=True)
            logger.info("interface record created", interface=record.name)
            return record

    def save_interface(self, record: InterfaceRecord) -> InterfaceRecord:
        with self.transaction():
            if record.name not in self.interfaces:
                raise NotFoundError(f"interface {record.name} not found")
            for other in self.interfaces.values():
                if other.name != record.name and other.public_key == record.public_key:
                    raise DuplicateInterfaceError(
                        f"public key already used by interface {other.name}"
                    )
            record.updated_at = utcnow()
            self.interfaces[record.name] = record.model_copy(deep=True)
            return record

    def delete_interface(self, name: str) -> int:
        """
        Delete an interface and every peer attached to it.

        Returns:
            Number of peers removed with it
        """
        with self.transaction():
            if name not in self.interfaces:
                raise NotFoundError(f"interface {name} not found")
            doomed = [pid for pid, p in self.peers.items() if p.interface_name == name]
            for pid in doomed:
                del self.peers[pid]
            del self.interfaces[name]
            logger.info("interface record deleted", interface=name, peers=len(doomed))
            return len(doomed)

    # ---------- peers ----------

    def get_peer(self, peer_id: str) -> PeerRecord:
        with self.lock:
            peer = self.peers.get(peer_id)
            if peer is None:
                raise NotFoundError(f"peer {peer_id} not found")
            return peer.model_copy(deep=True)

    def find_peer_by_key(self, public_key: str, interface_name: Optional[str] = None) -> Optional[PeerRecord]:
        with self.lock:
            for peer in self.peers.values():
                if peer.public_key != public_key:
                    continue
                if interface_name is None or peer.interface_name == interface_name:
                    return peer.model_copy(deep=True)
            return None

    def peers_for(self, interface_name: str) -> List[PeerRecord]:
        with self.lock:
            found = [p for p in self.peers.values() if p.interface_name == interface_name]
            return [p.model_copy(deep=True) for p in sorted(found, key=lambda p: p.created_at)]

    def list_peers(self) -> List[PeerRecord]:
        with self.lock:
            return [p.model_copy(deep=True) for p in self.peers.values()]

    def used_addresses(self, interface_name: str) -> List[str]:
        with self.lock:
            return [p.assigned_ip for p in self.peers.values() if p.interface_name == interface_name]

    def _check_peer(self, peer: PeerRecord):
        if peer.interface_name not in self.interfaces:
            raise NotFoundError(f"interface {peer.interface_name} not found")
        for other in self.peers.values():
            if other.id == peer.id:
                continue
            if other.public_key == peer.public_key:
                raise DuplicatePeerError(f"public key already used by peer {other.name}")
            if other.interface_name == peer.interface_name and other.assigned_ip == peer.assigned_ip:
                raise DuplicateAddressError(
                    f"{peer.assigned_ip} already assigned on {peer.interface_name}"
                )

    def add_peer(self, peer: PeerRecord) -> PeerRecord:
        with self.transaction():
            if peer.id in self.peers:
                raise DuplicatePeerError(f"peer {peer.id} already exists")
            self._check_peer(peer)
            self.peers[peer.id] = peer.model_copy(deep=True)
            return peer

    def save_peer(self, peer: PeerRecord) -> PeerRecord:
        with self.transaction():
            if peer.id not in self.peers:
                raise NotFoundError(f"peer {peer.id} not found")
            self._check_peer(peer)
            peer.updated_at = utcnow()
            self.peers[peer.id] = peer.model_copy(deep=True)
            return peer

    def delete_peer(self, peer_id: str):
        with self.transaction():
            if peer_id not in self.peers:
                raise NotFoundError(f"peer {peer_id} not found")
            del self.peers[peer_id]

    def refresh_counters(self, interface_name: str) -> InterfaceRecord:
        """
        Recompute an interface's derived counters from its peer records.

        peer_count counts enabled peers, active_peers the enabled ones that
        are connected, and the transfer totals sum every peer's counters.
        """
        with self.transaction():
            record = self.interfaces.get(interface_name)
            if record is None:
                raise NotFoundError(f"interface {interface_name} not found")
            peers = [p for p in self.peers.values() if p.interface_name == interface_name]
            record.peer_count = sum(1 for p in peers if p.enabled)
            record.active_peers = sum(
                1 for p in peers if p.enabled and p.status == PeerStatus.CONNECTED
            )
            record.transfer = TransferStats(
                received=sum(p.transfer.received for p in peers),
                sent=sum(p.transfer.sent for p in peers),
            )
            return record.model_copy(deep=True)

    # ---------- profiles ----------

    def get_profile(self, name: str) -> MTUProfile:
        with self.lock:
            profile = self.profiles.get(name)
            if profile is None:
                raise NotFoundError(f"MTU profile {name} not found")
            return profile.model_copy(deep=True)

    def list_profiles(self, provider: Optional[Provider] = None) -> List[MTUProfile]:
        with self.lock:
            found = [
                p for p in self.profiles.values()
                if provider is None or p.provider == provider
            ]
            return [p.model_copy(deep=True) for p in sorted(found, key=lambda p: (p.provider.value, p.mtu, p.name))]

    def add_profile(self, profile: MTUProfile) -> MTUProfile:
        with self.transaction():
            if profile.name in self.profiles:
                raise DuplicateProfileError(f"MTU profile {profile.name} already exists")
            self.profiles[profile.name] = profile.model_copy(deep=True)
            return profile

    def save_profile(self, profile: MTUProfile) -> MTUProfile:
        with self.transaction():
            if profile.name not in self.profiles:
                raise NotFoundError(f"MTU profile {profile.name} not found")
            profile.updated_at = utcnow()
            self.profiles[profile.name] = profile.model_copy(deep=True)
            return profile

    def delete_profile(self, name: str):
        with self.transaction():
            if name not in self.profiles:
                raise NotFoundError(f"MTU profile {name} not found")
            del self.profiles[name]

    # ---------- persistence ----------

    def _persist(self):
        """Write the state document atomically with owner-only permissions."""
        if not self.state_file:
            return

        data = {
            "version": STATE_VERSION,
            "interfaces": [r.model_dump(mode="json") for r in self.interfaces.values()],
            "peers": [p.model_dump(mode="json") for p in self.peers.values()],
            "profiles": [p.model_dump(mode="json") for p in self.profiles.values()],
        }

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.state_file.with_name(self.state_file.name + ".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, self.state_file)

    def _load(self):
        """Load records from the state document."""
        try:
            data = json.loads(self.state_file.read_text(encoding="utf-8"))
            interfaces = [InterfaceRecord.model_validate(r) for r in data.get("interfaces", [])]
            peers = [PeerRecord.model_validate(p) for p in data.get("peers", [])]
            profiles = [MTUProfile.model_validate(p) for p in data.get("profiles", [])]
        except (ValueError, TypeError) as e:
            raise ValidationError(f"cannot load state file {self.state_file}: {e}") from e

        self.interfaces = {r.name: r for r in interfaces}
        self.peers = {p.id: p for p in peers}
        self.profiles = {p.name: p for p in profiles}

        logger.info(
            "loaded fleet state",
            interfaces=len(self.interfaces),
            peers=len(self.peers),
            profiles=len(self.profiles),
        )
