"""
WireGuard tooling: wg-quick lifecycle and live peer state from `wg show`.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from structlog import get_logger

from src.common.errors import ExternalCommandError
from src.server.executor import CommandExecutor

logger = get_logger()


@dataclass
class LivePeer:
    """One peer line of `wg show <iface> dump`."""
    public_key: str
    endpoint: Optional[str] = None
    allowed_ips: List[str] = field(default_factory=list)
    latest_handshake: Optional[datetime] = None
    rx: int = 0
    tx: int = 0
    keepalive: int = 0

    def is_handshaking(self, now: datetime, window: int) -> bool:
        """Whether the last handshake lies within `window` seconds of now."""
        if self.latest_handshake is None:
            return False
        return now - self.latest_handshake <= timedelta(seconds=window)


def _none_if_unset(value: str) -> Optional[str]:
    return None if value in ("", "(none)", "off") else value


def parse_dump(text: str) -> List[LivePeer]:
    """
    Parse `wg show <iface> dump` output.

    The first line describes the interface itself; every following line is
    tab separated: public key, preshared key, endpoint, allowed ips, latest
    handshake (unix seconds, 0 when never), rx bytes, tx bytes, keepalive.

    Args:
        text: Raw dump output

    Returns:
        Live peers in output order
    """
    peers = []
    for line in text.splitlines()[1:]:
        parts = line.split("\t")
        if len(parts) < 8:
            continue

        handshake = int(parts[4]) if parts[4].isdigit() else 0
        allowed = _none_if_unset(parts[3])
        keepalive = parts[7]

        peers.append(LivePeer(
            public_key=parts[0],
            endpoint=_none_if_unset(parts[2]),
            allowed_ips=[a for a in allowed.split(",") if a] if allowed else [],
            latest_handshake=(
                datetime.fromtimestamp(handshake, tz=timezone.utc) if handshake else None
            ),
            rx=int(parts[5]) if parts[5].isdigit() else 0,
            tx=int(parts[6]) if parts[6].isdigit() else 0,
            keepalive=int(keepalive) if keepalive.isdigit() else 0,
        ))
    return peers


class WireGuardTool:
    """Wraps the `wg` and `wg-quick` command line tools."""

    def __init__(self, executor: CommandExecutor, config_dir: Optional[Path] = None):
        """
        Initialize tool wrapper.

        Args:
            executor: Command runner
            config_dir: Directory of <iface>.conf files; wg-quick resolves a
                bare interface name against /etc/wireguard when omitted
        """
        self.executor = executor
        self.config_dir = Path(config_dir) if config_dir else None

    def _target(self, name: str) -> str:
        if self.config_dir:
            return str(self.config_dir / f"{name}.conf")
        return name

    def up(self, name: str):
        self.executor.run(["wg-quick", "up", self._target(name)])
        logger.info("interface raised", interface=name)

    def down(self, name: str):
        self.executor.run(["wg-quick", "down", self._target(name)])
        logger.info("interface lowered", interface=name)

    def is_running(self, name: str) -> bool:
        result = self.executor.run(["wg", "show", name], check=False)
        return result.ok

    def show_dump(self, name: str) -> List[LivePeer]:
        """
        Query live peer state.

        Raises:
            ExternalCommandError: If the interface is down or wg fails
        """
        result = self.executor.run(["wg", "show", name, "dump"])
        return parse_dump(result.stdout)

    def set_peer(
        self,
        name: str,
        public_key: str,
        allowed_ips: Sequence[str],
        preshared_key: Optional[str] = None,
        keepalive: int = 0
    ):
        """Add or update a peer on the live interface."""
        args = ["wg", "set", name, "peer", public_key, "allowed-ips", ",".join(allowed_ips)]
        if keepalive:
            args += ["persistent-keepalive", str(keepalive)]
        if preshared_key:
            # keep the secret off the process list
            args += ["preshared-key", "/dev/stdin"]
            self.executor.run(args, input=preshared_key)
        else:
            self.executor.run(args)

    def remove_peer(self, name: str, public_key: str):
        self.executor.run(["wg", "set", name, "peer", public_key, "remove"])

    def is_available(self) -> bool:
        try:
            self.executor.run(["wg", "--version"])
        except ExternalCommandError:
            return False
        return True
