"""
Service wiring.

Builds every service once, with its collaborators injected, so callers hold
one explicit context value instead of reaching for module-level singletons.
"""

from dataclasses import dataclass
from typing import Any, Optional

from src.server.config import ServerSettings, get_settings
from src.server.executor import CommandExecutor, LocalFilesystem, SystemClock
from src.server.ip_pool import AddressAllocator
from src.server.keys import KeyGenerator
from src.server.mtu_probe import MTUProbe
from src.server.netlink import LinkManager
from src.server.peer_sync import PeerSyncEngine
from src.server.peers import PeerService
from src.server.prober import IcmpProber
from src.server.profiles import ProfileManager
from src.server.reconciler import InterfaceReconciler
from src.server.snapshot import SnapshotService
from src.server.store import FleetStore
from src.server.wireguard import WireGuardTool


@dataclass
class ServiceContext:
    settings: ServerSettings
    store: FleetStore
    allocator: AddressAllocator
    peer_sync: PeerSyncEngine
    reconciler: InterfaceReconciler
    peers: PeerService
    probe: MTUProbe
    profiles: ProfileManager
    snapshots: SnapshotService


def build_context(settings: Optional[ServerSettings] = None, **overrides: Any) -> ServiceContext:
    """
    Build the services.

    Args:
        settings: Settings, defaults to the cached environment settings
        **overrides: Replacement collaborators by name: store, executor,
            wireguard, links, keys, prober, filesystem, clock

    Returns:
        Service context
    """
    settings = settings or get_settings()

    executor = overrides.get("executor") or CommandExecutor(timeout=settings.COMMAND_TIMEOUT)
    store = overrides.get("store") or FleetStore(settings.STATE_FILE)
    wireguard = overrides.get("wireguard") or WireGuardTool(executor, settings.WG_CONFIG_DIR)
    links = overrides.get("links") or LinkManager()
    keys = overrides.get("keys") or KeyGenerator()
    prober = overrides.get("prober") or IcmpProber(executor)
    filesystem = overrides.get("filesystem") or LocalFilesystem()
    clock = overrides.get("clock") or SystemClock()

    allocator = AddressAllocator()
    peer_sync = PeerSyncEngine(store, wireguard, keys, allocator, clock, settings)
    reconciler = InterfaceReconciler(store, wireguard, links, keys, peer_sync, filesystem, clock, settings)
    probe = MTUProbe(links, prober, clock, settings)

    return ServiceContext(
        settings=settings,
        store=store,
        allocator=allocator,
        peer_sync=peer_sync,
        reconciler=reconciler,
        peers=PeerService(store, wireguard, keys, allocator, reconciler, clock, settings),
        probe=probe,
        profiles=ProfileManager(store, probe, reconciler, wireguard, filesystem, clock, settings),
        snapshots=SnapshotService(store, filesystem, clock, settings),
    )
