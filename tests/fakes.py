"""
In-memory collaborators for service tests.
"""

import fnmatch
from datetime import datetime, timedelta, timezone
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.common.errors import ExternalCommandError, NotFoundError, ProbeError
from src.server.config import ServerSettings
from src.server.context import build_context
from src.server.prober import PingResult
from src.server.store import FleetStore
from src.server.wireguard import LivePeer

EPOCH = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when told to, or when something sleeps."""

    def __init__(self, start=EPOCH):
        self.current = start
        self.sleeps = []

    def now(self):
        return self.current

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.advance(seconds)

    def advance(self, seconds):
        self.current = self.current + timedelta(seconds=seconds)


class FakeWireGuard:
    def __init__(self):
        self.running = set()
        self.dumps = {}
        self.fail_up = set()
        self.fail_down = set()
        self.fail_dump = set()
        self.calls = []
        self.live_peers = {}

    def up(self, name):
        self.calls.append(("up", name))
        if name in self.fail_up:
            raise ExternalCommandError(f"wg-quick up {name} failed", stderr="RTNETLINK answers: File exists")
        self.running.add(name)

    def down(self, name):
        self.calls.append(("down", name))
        if name in self.fail_down:
            raise ExternalCommandError(f"wg-quick down {name} failed")
        self.running.discard(name)

    def is_running(self, name):
        return name in self.running

    def show_dump(self, name):
        if name not in self.running or name in self.fail_dump:
            raise ExternalCommandError(f"wg show {name} dump failed", stderr="No such device")
        return list(self.dumps.get(name, []))

    def set_peer(self, name, public_key, allowed_ips, preshared_key=None, keepalive=0):
        self.calls.append(("set_peer", name, public_key))
        self.live_peers.setdefault(name, set()).add(public_key)

    def remove_peer(self, name, public_key):
        self.calls.append(("remove_peer", name, public_key))
        self.live_peers.get(name, set()).discard(public_key)

    def is_available(self):
        return True

    def handshake(self, name, public_key, at, rx=0, tx=0):
        """Put a live peer with the given handshake time into the dump."""
        peers = [p for p in self.dumps.get(name, []) if p.public_key != public_key]
        peers.append(LivePeer(public_key=public_key, latest_handshake=at, rx=rx, tx=tx))
        self.dumps[name] = peers


class FakeLinks:
    def __init__(self, mtus=None):
        self.mtus = dict(mtus or {})
        self.history = []
        self.reject = set()

    def list_links(self):
        return ["lo", "eth0"] + sorted(self.mtus)

    def get_mtu(self, name):
        if name not in self.mtus:
            raise NotFoundError(f"link {name} not found")
        return self.mtus[name]

    def set_mtu(self, name, mtu):
        self.history.append((name, mtu))
        if mtu in self.reject:
            raise ExternalCommandError(f"cannot set MTU {mtu} on {name}")
        self.mtus[name] = mtu

    def link_stats(self, name):
        return {"rx_bytes": 0, "tx_bytes": 0}


class FakeProber:
    """
    Answers pings according to the link's current MTU.

    latencies maps an MTU to the reply latency; MTUs missing from the map
    never answer.
    """

    def __init__(self, links, latencies=None, default_latency=None):
        self.links = links
        self.latencies = dict(latencies or {})
        self.default_latency = default_latency
        self.timeouts = set()
        self.sent = []
        # called with the interface before each reply is computed
        self.on_ping = None

    def ping(self, host, payload_size, timeout=2.0, interface=None):
        self.sent.append((host, payload_size, interface))
        if self.on_ping is not None:
            self.on_ping(interface)
        if payload_size in self.timeouts:
            raise ProbeError(f"ping {host} timed out")
        mtu = self.links.mtus.get(interface) if interface else None
        latency = self.latencies.get(mtu, self.default_latency)
        if latency is None:
            return PingResult(alive=False, payload_size=payload_size)
        return PingResult(alive=True, latency_ms=latency, payload_size=payload_size)


class FakeKeys:
    def __init__(self):
        self.counter = 0

    def generate_keypair(self):
        self.counter += 1
        private = f"priv{self.counter}"
        return private, self.public_key(private)

    def public_key(self, private_key):
        return f"pub-{private_key}"

    def generate_preshared_key(self):
        self.counter += 1
        return f"psk{self.counter}"


class MemoryFilesystem:
    def __init__(self):
        self.files = {}
        self.modes = {}
        self.dirs = set()

    def read_text(self, path):
        key = str(path)
        if key not in self.files:
            raise FileNotFoundError(key)
        return self.files[key]

    def write_text(self, path, text, mode=0o600):
        self.files[str(path)] = text
        self.modes[str(path)] = mode

    def exists(self, path):
        key = str(path)
        return key in self.files or key in self.dirs

    def remove(self, path):
        del self.files[str(path)]

    def list(self, directory, pattern="*"):
        directory = Path(directory)
        found = [
            Path(p) for p in self.files
            if Path(p).parent == directory and fnmatch.fnmatch(Path(p).name, pattern)
        ]
        return sorted(found)

    def mkdir(self, directory, mode=0o700):
        self.dirs.add(str(directory))


def make_settings(**overrides):
    values = dict(
        WG_CONFIG_DIR=Path("/etc/wireguard"),
        STATE_FILE=None,
        RESTART_PAUSE=1.0,
        PROBE_SETTLE_DELAY=0.1,
        PROBE_STEP_DELAY=0.2,
        PROBE_CANDIDATE_DELAY=0.5,
    )
    values.update(overrides)
    return ServerSettings(**values)


def make_context(settings=None, mtus=None, latencies=None):
    """Service context wired to fakes; the fakes hang off the context."""
    settings = settings or make_settings()
    links = FakeLinks(mtus)
    fakes = dict(
        store=FleetStore(),
        wireguard=FakeWireGuard(),
        links=links,
        keys=FakeKeys(),
        prober=FakeProber(links, latencies),
        filesystem=MemoryFilesystem(),
        clock=FakeClock(),
    )
    ctx = build_context(settings, **fakes)
    return ctx, fakes
