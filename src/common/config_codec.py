"""
WireGuard configuration text codec.

Parses the INI-like interface/peer format into ordered field maps and renders
it back with a canonical key order. Unknown keys survive a round trip.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from src.common.errors import MalformedConfigError

INTERFACE_SECTION = "Interface"
PEER_SECTION = "Peer"

INTERFACE_KEYS = ["Address", "ListenPort", "PrivateKey", "MTU", "DNS", "DisableIPv6"]
PEER_KEYS = ["PublicKey", "AllowedIPs", "PersistentKeepalive", "PresharedKey", "Endpoint"]

# wg-quick keys are case-insensitive; map them back to the canonical spelling
_CANONICAL = {key.lower(): key for key in INTERFACE_KEYS + PEER_KEYS}


@dataclass
class WireGuardConfig:
    """Parsed configuration: one interface field map plus peer field maps."""
    interface: Dict[str, str] = field(default_factory=dict)
    peers: List[Dict[str, str]] = field(default_factory=list)

    @property
    def private_key(self) -> Optional[str]:
        return self.interface.get("PrivateKey")


def _canonical_key(key: str) -> str:
    return _CANONICAL.get(key.lower(), key)


def _strip_comment(line: str) -> str:
    index = line.find("#")
    if index >= 0:
        line = line[:index]
    return line.strip()


def split_list(value: Optional[str]) -> List[str]:
    """Split a comma separated value such as AllowedIPs or DNS."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def join_list(values: Sequence[str]) -> str:
    return ", ".join(values)


def parse(text: str) -> WireGuardConfig:
    """
    Parse configuration text.

    Args:
        text: Raw configuration text

    Returns:
        Parsed configuration

    Raises:
        MalformedConfigError: If the text has no [Interface] section, no
            PrivateKey, or a line that cannot be interpreted
    """
    config = WireGuardConfig()
    current: Optional[Dict[str, str]] = None
    seen_interface = False

    for lineno, raw in enumerate(text.splitlines(), start=1):
        stripped = raw.strip()
        if not stripped or stripped.startswith(("#", ";")):
            continue

        line = _strip_comment(stripped)
        if not line:
            continue

        if line.startswith("[") and line.endswith("]"):
            section = line[1:-1].strip()
            if section.lower() == INTERFACE_SECTION.lower():
                if seen_interface:
                    raise MalformedConfigError(f"line {lineno}: duplicate [Interface] section")
                seen_interface = True
                current = config.interface
            elif section.lower() == PEER_SECTION.lower():
                current = {}
                config.peers.append(current)
            else:
                raise MalformedConfigError(f"line {lineno}: unknown section [{section}]")
            continue

        if current is None:
            raise MalformedConfigError(f"line {lineno}: entry outside of any section")

        key, sep, value = line.partition("=")
        if not sep or not key.strip():
            raise MalformedConfigError(f"line {lineno}: expected 'key = value'")
        current[_canonical_key(key.strip())] = value.strip()

    if not seen_interface:
        raise MalformedConfigError("no [Interface] section found")
    if not config.interface.get("PrivateKey"):
        raise MalformedConfigError("no PrivateKey found in [Interface] section")

    return config


def _render_section(name: str, fields: Dict[str, str], order: Sequence[str]) -> List[str]:
    lines = [f"[{name}]"]
    for key in order:
        value = fields.get(key)
        if value is not None and value != "":
            lines.append(f"{key} = {value}")
    for key, value in fields.items():
        if key not in order and value is not None:
            lines.append(f"{key} = {value}")
    return lines


def serialize(config: WireGuardConfig) -> str:
    """
    Render configuration text with canonical key order.

    Args:
        config: Configuration to render

    Returns:
        Configuration text ending with a newline
    """
    lines = _render_section(INTERFACE_SECTION, config.interface, INTERFACE_KEYS)
    for peer in config.peers:
        lines.append("")
        lines.extend(_render_section(PEER_SECTION, peer, PEER_KEYS))
    return "\n".join(lines) + "\n"


def interface_fields(record) -> Dict[str, str]:
    """Field map of an InterfaceRecord's [Interface] section."""
    fields = {
        "Address": record.address,
        "ListenPort": str(record.listen_port),
        "PrivateKey": record.private_key,
        "MTU": str(record.mtu),
    }
    if record.dns:
        fields["DNS"] = join_list(record.dns)
    if not record.enable_ipv6:
        fields["DisableIPv6"] = "true"
    return fields


def peer_fields(peer) -> Dict[str, str]:
    """Field map of a PeerRecord's [Peer] block on the server side."""
    fields = {
        "PublicKey": peer.public_key,
        "AllowedIPs": join_list(peer.allowed_ips or [f"{peer.assigned_ip}/32"]),
    }
    if peer.persistent_keepalive:
        fields["PersistentKeepalive"] = str(peer.persistent_keepalive)
    if peer.use_preshared_key and peer.preshared_key:
        fields["PresharedKey"] = peer.preshared_key
    if peer.endpoint:
        fields["Endpoint"] = peer.endpoint
    return fields


def render_interface(record, peers) -> str:
    """Server configuration for an interface and its enabled peers."""
    config = WireGuardConfig(
        interface=interface_fields(record),
        peers=[peer_fields(peer) for peer in peers if peer.enabled],
    )
    return serialize(config)


def render_client(peer, record, endpoint_host: Optional[str] = None) -> str:
    """
    Client configuration for one peer.

    Args:
        peer: Peer record, must carry its private key
        record: Interface the peer belongs to
        endpoint_host: Public host clients connect to; defaults to the
            interface address

    Returns:
        Client configuration text
    """
    if not peer.private_key:
        raise MalformedConfigError(f"peer {peer.name} has no private key on record")

    interface = {
        "Address": f"{peer.assigned_ip}/32",
        "PrivateKey": peer.private_key,
    }
    mtu = peer.mtu or record.mtu
    if mtu:
        interface["MTU"] = str(mtu)
    dns = peer.dns or record.dns
    if dns:
        interface["DNS"] = join_list(dns)

    server = {
        "PublicKey": record.public_key,
        "AllowedIPs": join_list(peer.client_allowed_ips),
    }
    if peer.persistent_keepalive:
        server["PersistentKeepalive"] = str(peer.persistent_keepalive)
    if peer.use_preshared_key and peer.preshared_key:
        server["PresharedKey"] = peer.preshared_key
    host = endpoint_host or record.server_ip
    server["Endpoint"] = f"{host}:{record.listen_port}"

    return serialize(WireGuardConfig(interface=interface, peers=[server]))


def set_interface_value(text: str, key: str, value: str) -> str:
    """
    Replace or insert one key of the [Interface] section in place.

    Comments, blank lines and peer sections are left untouched.

    Args:
        text: Configuration text
        key: Canonical key name, e.g. "MTU"
        value: New value

    Returns:
        Updated configuration text
    """
    lines = text.split("\n")
    in_interface = False
    header_index = None
    last_entry_index = None

    for index, raw in enumerate(lines):
        line = _strip_comment(raw.strip())
        if line.startswith("[") and line.endswith("]"):
            in_interface = line[1:-1].strip().lower() == INTERFACE_SECTION.lower()
            if in_interface:
                header_index = index
            continue
        if not in_interface or "=" not in line:
            continue
        last_entry_index = index
        name = line.split("=", 1)[0].strip()
        if name.lower() == key.lower():
            lines[index] = f"{key} = {value}"
            return "\n".join(lines)

    if header_index is None:
        raise MalformedConfigError("no [Interface] section found")

    insert_at = (last_entry_index if last_entry_index is not None else header_index) + 1
    lines.insert(insert_at, f"{key} = {value}")
    return "\n".join(lines)
