"""
Interface lifecycle and reconciliation.

Keeps interface records in line with the host: discovers live interfaces,
syncs records from their config files, and drives start/stop/restart.
"""

import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from structlog import get_logger

from src.common import config_codec as codec
from src.common.errors import ExternalCommandError, FleetError, NotFoundError, ValidationError
from src.common.logging import bind_interface, clear_interface
from src.common.metrics import collect_fleet_statistics
from src.common.models import InterfaceRecord, InterfaceStatus, Provider, build
from src.server.peer_sync import mark_disconnected

logger = get_logger()


@dataclass
class SyncReport:
    """Outcome of a bulk sync."""
    synced: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced": sorted(self.synced),
            "skipped": sorted(self.skipped),
            "failed": dict(sorted(self.failed.items())),
        }


def _int_field(fields: Dict[str, str], key: str, default: int) -> int:
    value = fields.get(key)
    if not value:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValidationError(f"{key} must be an integer, got {value!r}") from e


class InterfaceReconciler:
    """Drives interface lifecycle and keeps records synced with the host."""

    def __init__(self, store, wireguard, links, keys, peer_sync, filesystem, clock, settings):
        """
        Initialize reconciler.

        Args:
            store: Fleet store
            wireguard: WireGuard tool (up/down/is_running/show_dump)
            links: Link manager used for discovery
            keys: Key generator
            peer_sync: Peer sync engine
            filesystem: Config file access
            clock: Clock
            settings: Server settings
        """
        self.store = store
        self.wireguard = wireguard
        self.links = links
        self.keys = keys
        self.peer_sync = peer_sync
        self.fs = filesystem
        self.clock = clock
        self.settings = settings

        self.name_pattern = re.compile(rf"^{re.escape(settings.INTERFACE_PREFIX)}\d+$")

    # ---------- lifecycle ----------

    def _fail(self, name: str, action: str, error: Exception):
        logger.error(f"failed to {action} interface", interface=name, error=str(error))
        record = self.store.find_interface(name)
        if record is not None:
            record.status = InterfaceStatus.ERROR
            self.store.save_interface(record)

    def start(self, name: str) -> InterfaceRecord:
        """
        Bring an interface up and mark it active.

        Raises:
            NotFoundError: If no record exists
            ExternalCommandError: If bring-up fails; the record is left in
                status error
        """
        with self.store.interface_lock(name):
            record = self.store.get_interface(name)

            try:
                if self.wireguard.is_running(name):
                    logger.info("interface already running", interface=name)
                else:
                    self.wireguard.up(name)
            except ExternalCommandError as e:
                self._fail(name, "start", e)
                raise

            if record.status != InterfaceStatus.ACTIVE or record.last_start_time is None:
                record.last_start_time = self.clock.now()
            record.status = InterfaceStatus.ACTIVE
            self.store.save_interface(record)

            self.peer_sync.reconcile_live_status(name)
            return self.store.get_interface(name)

    def _settle_stopped(self, record: InterfaceRecord, now: datetime) -> InterfaceRecord:
        """Record a stopped interface: uptime, disconnected peers, counters."""
        with self.store.transaction():
            if record.status == InterfaceStatus.ACTIVE and record.last_start_time:
                record.total_uptime += max(0.0, (now - record.last_start_time).total_seconds())
            record.status = InterfaceStatus.INACTIVE
            record.last_stop_time = now
            self.store.save_interface(record)

            for peer in self.store.peers_for(record.name):
                mark_disconnected(peer, now)
                # live counters vanish with the interface
                peer.observed_rx = 0
                peer.observed_tx = 0
                self.store.save_peer(peer)

            return self.store.refresh_counters(record.name)

    def stop(self, name: str) -> InterfaceRecord:
        """
        Bring an interface down and mark it inactive.

        Connected peers become disconnected and the active peer counter
        drops to zero.

        Raises:
            NotFoundError: If no record exists
            ExternalCommandError: If bring-down fails; the record is left in
                status error
        """
        with self.store.interface_lock(name):
            record = self.store.get_interface(name)

            try:
                if self.wireguard.is_running(name):
                    self.wireguard.down(name)
                else:
                    logger.info("interface already down", interface=name)
            except ExternalCommandError as e:
                self._fail(name, "stop", e)
                raise

            record = self._settle_stopped(record, self.clock.now())
            logger.info("interface stopped", interface=name, uptime=record.total_uptime)
            return record

    def restart(self, name: str) -> InterfaceRecord:
        """
        Stop, pause, then start an interface.

        Ends in status active, or in status error with the failure raised.
        """
        with self.store.interface_lock(name):
            record = self.store.get_interface(name)
            if self.wireguard.is_running(name) or record.status == InterfaceStatus.ACTIVE:
                self.stop(name)
            self.clock.sleep(self.settings.RESTART_PAUSE)
            return self.start(name)

    # ---------- discovery and sync ----------

    def discover(self) -> List[str]:
        """Names of host links that follow the managed naming convention."""
        names = [n for n in self.links.list_links() if n and self.name_pattern.match(n)]
        logger.debug("interfaces discovered", interfaces=names)
        return sorted(names)

    def _read_config(self, name: str) -> Optional[codec.WireGuardConfig]:
        path = self.settings.config_path(name)
        try:
            text = self.fs.read_text(path)
        except FileNotFoundError:
            logger.info("config file not found", interface=name, path=str(path))
            return None
        return codec.parse(text)

    def _fields_from_config(self, iface: Dict[str, str], current: Optional[InterfaceRecord]) -> Dict[str, Any]:
        s = self.settings
        dns = codec.split_list(iface.get("DNS"))
        fields = {
            "address": iface.get("Address") or (current.address if current else s.DEFAULT_ADDRESS),
            "listen_port": _int_field(iface, "ListenPort", current.listen_port if current else s.DEFAULT_LISTEN_PORT),
            "private_key": iface["PrivateKey"],
            "public_key": self.keys.public_key(iface["PrivateKey"]),
            "mtu": _int_field(iface, "MTU", current.mtu if current else s.DEFAULT_MTU),
            "dns": dns or (current.dns if current else list(s.DEFAULT_DNS)),
        }
        if "DisableIPv6" in iface:
            fields["enable_ipv6"] = iface["DisableIPv6"].lower() != "true"
        return fields

    def sync_one(self, name: str) -> Optional[InterfaceRecord]:
        """
        Sync one interface record from its config file and live state.

        Args:
            name: Interface name

        Returns:
            Synced record, or None when the interface has no config file

        Raises:
            MalformedConfigError: If the config file cannot be parsed
            ValidationError: If the config holds out-of-range values
        """
        config = self._read_config(name)
        if config is None:
            return None

        with self.store.interface_lock(name):
            bind_interface(name)
            try:
                return self._sync_locked(name, config)
            finally:
                clear_interface()

    def _sync_locked(self, name: str, config: codec.WireGuardConfig) -> InterfaceRecord:
        running = self.wireguard.is_running(name)
        now = self.clock.now()

        with self.store.transaction():
            current = self.store.find_interface(name)
            fields = self._fields_from_config(config.interface, current)

            if current is None:
                record = build(
                    InterfaceRecord,
                    name=name,
                    status=InterfaceStatus.ACTIVE if running else InterfaceStatus.INACTIVE,
                    last_start_time=now if running else None,
                    persistent_keepalive=self.settings.DEFAULT_KEEPALIVE,
                    last_sync=now,
                    **fields,
                )
                self.store.add_interface(record)
                logger.info("interface record created from config", interface=name)
            else:
                was_active = current.status == InterfaceStatus.ACTIVE
                record = build(InterfaceRecord, **{**current.model_dump(), **fields, "last_sync": now})
                if running:
                    if not was_active:
                        record.last_start_time = now
                    record.status = InterfaceStatus.ACTIVE
                    self.store.save_interface(record)
                elif was_active:
                    self.store.save_interface(record)
                    self._settle_stopped(record, now)
                else:
                    record.status = InterfaceStatus.INACTIVE
                    self.store.save_interface(record)

            self.peer_sync.reconcile_from_config(record, config.peers)
            self.store.refresh_counters(name)

        if running:
            self.peer_sync.reconcile_live_status(name)

        return self.store.get_interface(name)

    def sync_all(self) -> SyncReport:
        """
        Sync every discovered interface in parallel.

        Interfaces without a config file are skipped; a failure in one
        interface is reported without aborting the others.
        """
        report = SyncReport()
        names = self.discover()
        if not names:
            return report

        with ThreadPoolExecutor(max_workers=self.settings.SYNC_WORKERS) as pool:
            futures = {pool.submit(self.sync_one, name): name for name in names}
            for future in as_completed(futures):
                name = futures[future]
                try:
                    record = future.result()
                except FleetError as e:
                    logger.error("interface sync failed", interface=name, error=str(e))
                    report.failed[name] = str(e)
                    continue
                except (OSError, ValueError) as e:
                    logger.exception("interface sync failed", interface=name)
                    report.failed[name] = f"{type(e).__name__}: {e}"
                    continue
                if record is None:
                    report.skipped.append(name)
                else:
                    report.synced.append(name)

        logger.info(
            "bulk sync finished",
            synced=len(report.synced),
            skipped=len(report.skipped),
            failed=len(report.failed),
        )
        return report

    # ---------- provisioning ----------

    def write_config(self, name: str) -> Path:
        """Regenerate an interface's config file from its records."""
        record = self.store.get_interface(name)
        text = codec.render_interface(record, self.store.peers_for(name))
        path = self.settings.config_path(name)
        self.fs.write_text(path, text, mode=0o600)
        logger.debug("config written", interface=name, path=str(path))
        return path

    def create_interface(
        self,
        name: str,
        address: Optional[str] = None,
        listen_port: Optional[int] = None,
        mtu: Optional[int] = None,
        dns: Optional[List[str]] = None,
        persistent_keepalive: Optional[int] = None,
        provider: Provider = Provider.UNKNOWN,
        description: Optional[str] = None,
        enable_ipv6: bool = False,
        start: bool = False
    ) -> InterfaceRecord:
        """
        Provision a new interface with a fresh key pair.

        Raises:
            ValidationError: If the name or a value is rejected
            DuplicateInterfaceError: If the name is taken
        """
        if not self.name_pattern.match(name):
            raise ValidationError(
                f"interface name must be {self.settings.INTERFACE_PREFIX} followed by a number"
            )

        s = self.settings
        port = listen_port or s.DEFAULT_LISTEN_PORT
        for other in self.store.list_interfaces():
            if other.listen_port == port and other.name != name:
                raise ValidationError(f"listen port {port} already used by {other.name}")

        private_key, public_key = self.keys.generate_keypair()
        record = build(
            InterfaceRecord,
            name=name,
            description=description,
            address=address or s.DEFAULT_ADDRESS,
            listen_port=port,
            private_key=private_key,
            public_key=public_key,
            mtu=mtu or s.DEFAULT_MTU,
            dns=dns or list(s.DEFAULT_DNS),
            persistent_keepalive=(
                persistent_keepalive if persistent_keepalive is not None else s.DEFAULT_KEEPALIVE
            ),
            provider=provider,
            enable_ipv6=enable_ipv6,
        )

        with self.store.interface_lock(name):
            with self.store.transaction():
                self.store.add_interface(record)
                self.write_config(name)

        logger.info("interface created", interface=name, address=record.address, port=port)

        if start:
            return self.start(name)
        return self.store.get_interface(name)

    def delete_interface(self, name: str) -> int:
        """
        Remove an interface, its peers and its config file.

        Returns:
            Number of peers removed
        """
        with self.store.interface_lock(name):
            self.store.get_interface(name)

            try:
                if self.wireguard.is_running(name):
                    self.wireguard.down(name)
            except ExternalCommandError as e:
                self._fail(name, "stop", e)
                raise

            path = self.settings.config_path(name)
            if self.fs.exists(path):
                self.fs.remove(path)

            removed = self.store.delete_interface(name)

        logger.info("interface deleted", interface=name, peers=removed)
        return removed

    # ---------- reporting ----------

    def health_check(self) -> Dict[str, Any]:
        """
        Report tool availability and per-interface liveness.

        The score gives 40 points for a usable store, 30 for an installed
        wg tool and up to 30 for the share of discovered interfaces that
        are running.
        """
        state_file = self.store.state_file
        store_ok = state_file is None or self.fs.exists(state_file.parent)
        wireguard_ok = self.wireguard.is_available()

        interfaces = []
        try:
            names = self.discover()
        except ExternalCommandError as e:
            logger.warning("discovery failed during health check", error=str(e))
            names = []

        for name in names:
            entry = {
                "name": name,
                "running": self.wireguard.is_running(name),
                "config_exists": self.fs.exists(self.settings.config_path(name)),
            }
            if entry["running"]:
                try:
                    entry.update(self.links.link_stats(name))
                except (NotFoundError, ExternalCommandError) as e:
                    logger.warning("link counters unavailable", interface=name, error=str(e))
            interfaces.append(entry)

        score = (40 if store_ok else 0) + (30 if wireguard_ok else 0)
        if interfaces:
            running = sum(1 for i in interfaces if i["running"])
            score += round(30 * running / len(interfaces))

        return {
            "store": store_ok,
            "wireguard": wireguard_ok,
            "interfaces": interfaces,
            "status": "healthy" if store_ok and wireguard_ok else "unhealthy",
            "score": score,
            "timestamp": self.clock.now().isoformat(),
        }

    def statistics(self) -> Dict[str, Any]:
        try:
            discovered = self.discover()
        except ExternalCommandError:
            discovered = []
        return collect_fleet_statistics(
            self.store.list_interfaces(), self.store.list_peers(), discovered
        )
