"""
Interface backup and restore.
"""

import json
from pathlib import Path
from typing import List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError
from structlog import get_logger

from src.common import config_codec as codec
from src.common.errors import DuplicateInterfaceError, NotFoundError, ValidationError
from src.common.models import (
    InterfaceRecord,
    InterfaceStatus,
    PeerRecord,
    PeerStatus,
    Snapshot,
    TransferStats,
    build,
)

logger = get_logger()

SNAPSHOT_VERSION = "1.0"


class SnapshotService:
    """Writes and restores point-in-time exports of one interface."""

    def __init__(self, store, filesystem, clock, settings):
        self.store = store
        self.fs = filesystem
        self.clock = clock
        self.settings = settings

    def create(self, interface_name: str) -> Tuple[Snapshot, Path]:
        """
        Export an interface, its config text and its peers.

        The interface keeps its private key so it can be restored; peers
        are exported without secrets.

        Returns:
            Tuple of (snapshot, path of the written backup file)
        """
        with self.store.interface_lock(interface_name):
            record = self.store.get_interface(interface_name)
            peers = self.store.peers_for(interface_name)

            path = self.settings.config_path(interface_name)
            if self.fs.exists(path):
                config = self.fs.read_text(path)
            else:
                config = codec.render_interface(record, peers)

            now = self.clock.now()
            snapshot = Snapshot(
                server=record.model_dump(mode="json", exclude={"id"}),
                config=config,
                peers=[peer.to_public_dict() for peer in peers],
                timestamp=now.isoformat(),
                version=SNAPSHOT_VERSION,
            )

            backup_dir = self.settings.backup_dir
            self.fs.mkdir(backup_dir)
            backup_file = backup_dir / f"{interface_name}_{int(now.timestamp() * 1000)}.json"
            self.fs.write_text(backup_file, json.dumps(snapshot.model_dump(mode="json"), indent=2), mode=0o600)

        logger.info("backup created", interface=interface_name, path=str(backup_file), peers=len(peers))
        return snapshot, backup_file

    def load(self, path: Union[str, Path]) -> Snapshot:
        """
        Read a backup file.

        Raises:
            NotFoundError: If the file does not exist
            ValidationError: If it is not a snapshot document
        """
        try:
            text = self.fs.read_text(Path(path))
        except FileNotFoundError as e:
            raise NotFoundError(f"backup file {path} not found") from e

        try:
            return Snapshot.model_validate(json.loads(text))
        except (ValueError, PydanticValidationError) as e:
            raise ValidationError(f"invalid backup file {path}: {e}") from e

    def restore(self, snapshot: Snapshot) -> InterfaceRecord:
        """
        Recreate an interface and its peers from a snapshot.

        The interface comes back inactive and every peer pending. Peers have
        no private key after a restore.

        Raises:
            DuplicateInterfaceError: If the interface exists; nothing is
                changed in that case
        """
        name = snapshot.server.get("name")
        if not name:
            raise ValidationError("snapshot has no interface name")

        with self.store.interface_lock(name):
            if self.store.find_interface(name) is not None:
                raise DuplicateInterfaceError(f"interface {name} already exists")

            record = build(InterfaceRecord, **{
                **snapshot.server,
                "status": InterfaceStatus.INACTIVE,
                "peer_count": 0,
                "active_peers": 0,
                "last_sync": None,
            })

            with self.store.transaction():
                self.store.add_interface(record)

                for data in snapshot.peers:
                    peer = build(PeerRecord, **{
                        **data,
                        "interface_name": name,
                        "status": PeerStatus.PENDING,
                        "observed_rx": 0,
                        "observed_tx": 0,
                        "transfer": data.get("transfer") or TransferStats(),
                    })
                    self.store.add_peer(peer)

                record = self.store.refresh_counters(name)
                self.fs.write_text(self.settings.config_path(name), snapshot.config, mode=0o600)

        logger.info("backup restored", interface=name, peers=len(snapshot.peers))
        return record

    def list_backups(self, interface_name: Optional[str] = None) -> List[Path]:
        pattern = f"{interface_name}_*.json" if interface_name else "*.json"
        return self.fs.list(self.settings.backup_dir, pattern)
