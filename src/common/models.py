"""
Common Data Models

Pydantic models for persisted interface, peer and MTU profile records,
probe results and snapshots.
"""

import re
import uuid
from typing import Optional, List, Dict, Any
from datetime import datetime, timedelta, timezone
from enum import Enum
from ipaddress import ip_interface, ip_network, IPv4Address, IPv4Interface, IPv4Network
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from src.common.errors import ValidationError

INTERFACE_NAME_PATTERN = re.compile(r"^[a-z]+\d+$")

MIN_MTU = 576
MAX_MTU = 9000

DEFAULT_DNS = ["8.8.8.8", "8.8.4.4"]

# peers are due for new keys this long after the last rotation
KEY_ROTATION_INTERVAL = timedelta(days=30)

# fields never exported outside the store
PEER_SECRET_FIELDS = {"private_key", "preshared_key"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def build(model, **fields):
    """Construct a record, reporting rejected input as ValidationError."""
    try:
        return model(**fields)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid {model.__name__}: {e}") from e


class InterfaceStatus(str, Enum):
    """Interface lifecycle status."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    MAINTENANCE = "maintenance"


class PeerStatus(str, Enum):
    """Peer connection status."""
    PENDING = "pending"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    DISABLED = "disabled"


class Provider(str, Enum):
    """Network provider tags used by MTU profiles."""
    MPT = "MPT"
    OOREDOO = "OOREDOO"
    MYTEL = "MYTEL"
    ATOM = "ATOM"
    TELENOR = "TELENOR"
    CUSTOM = "CUSTOM"
    UNKNOWN = "UNKNOWN"


def _check_ipv4_list(values: List[str]) -> List[str]:
    for value in values:
        IPv4Address(value)
    return values


def _check_cidr_list(values: List[str]) -> List[str]:
    for value in values:
        ip_network(value, strict=False)
    return values


class TransferStats(BaseModel):
    """Cumulative byte counters."""
    received: int = Field(default=0, ge=0)
    sent: int = Field(default=0, ge=0)


class InterfaceRecord(BaseModel):
    """Persisted state of one VPN server interface."""
    id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = Field(default=None, max_length=500)
    address: str = "10.0.0.1/24"
    listen_port: int = Field(default=51820, ge=1024, le=65535)
    private_key: str
    public_key: str
    mtu: int = Field(default=1420, ge=MIN_MTU, le=MAX_MTU)
    dns: List[str] = Field(default_factory=lambda: list(DEFAULT_DNS))
    persistent_keepalive: int = Field(default=25, ge=0, le=300)
    status: InterfaceStatus = InterfaceStatus.INACTIVE
    last_start_time: Optional[datetime] = None
    last_stop_time: Optional[datetime] = None
    total_uptime: float = 0.0
    transfer: TransferStats = Field(default_factory=TransferStats)
    peer_count: int = Field(default=0, ge=0)
    active_peers: int = Field(default=0, ge=0)
    provider: Provider = Provider.UNKNOWN
    enable_ipv6: bool = False
    last_sync: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not INTERFACE_NAME_PATTERN.match(v):
            raise ValueError("interface name must be a prefix followed by a number, e.g. wg0")
        return v

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        if "/" not in v:
            raise ValueError("address must be in CIDR notation")
        if not isinstance(ip_interface(v), IPv4Interface):
            raise ValueError("only IPv4 interface addresses are supported")
        return v

    @field_validator("dns")
    @classmethod
    def validate_dns(cls, v: List[str]) -> List[str]:
        # an empty list falls back to the public resolvers
        return _check_ipv4_list(v) if v else list(DEFAULT_DNS)

    @property
    def subnet(self) -> IPv4Network:
        return ip_interface(self.address).network

    @property
    def server_ip(self) -> str:
        return str(ip_interface(self.address).ip)

    def to_public_dict(self) -> Dict[str, Any]:
        """Export without the private key or internal id."""
        return self.model_dump(mode="json", exclude={"id", "private_key"})


class DataLimit(BaseModel):
    """Monthly transfer allowance of a peer; 0 means unlimited."""
    monthly: int = Field(default=0, ge=0)
    used: int = Field(default=0, ge=0)
    reset_date: datetime = Field(default_factory=utcnow)


class PeerRecord(BaseModel):
    """Persisted state of one peer attached to an interface."""
    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=2, max_length=100)
    interface_name: str
    public_key: str
    private_key: Optional[str] = None
    preshared_key: Optional[str] = None
    use_preshared_key: bool = False
    allowed_ips: List[str] = Field(default_factory=list)
    client_allowed_ips: List[str] = Field(default_factory=lambda: ["0.0.0.0/0"])
    endpoint: Optional[str] = None
    persistent_keepalive: int = Field(default=25, ge=0, le=300)
    assigned_ip: str
    dns: List[str] = Field(default_factory=list)
    mtu: Optional[int] = Field(default=None, ge=MIN_MTU, le=MAX_MTU)
    status: PeerStatus = PeerStatus.PENDING
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    last_handshake: Optional[datetime] = None
    connection_count: int = Field(default=0, ge=0)
    total_uptime: float = 0.0
    transfer: TransferStats = Field(default_factory=TransferStats)
    # raw counters from the last live observation, used to compute deltas
    observed_rx: int = 0
    observed_tx: int = 0
    enabled: bool = True
    last_key_rotation: Optional[datetime] = None
    data_limit: DataLimit = Field(default_factory=DataLimit)
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("assigned_ip")
    @classmethod
    def validate_assigned_ip(cls, v: str) -> str:
        IPv4Address(v)
        return v

    @field_validator("allowed_ips", "client_allowed_ips")
    @classmethod
    def validate_ranges(cls, v: List[str]) -> List[str]:
        return _check_cidr_list(v)

    @field_validator("dns")
    @classmethod
    def validate_dns(cls, v: List[str]) -> List[str]:
        return _check_ipv4_list(v)

    def to_public_dict(self) -> Dict[str, Any]:
        """Export without secrets or internal id."""
        return self.model_dump(mode="json", exclude=PEER_SECRET_FIELDS | {"id"})

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at

    def needs_key_rotation(self, now: Optional[datetime] = None) -> bool:
        rotated = self.last_key_rotation or self.created_at
        return (now or utcnow()) > rotated + KEY_ROTATION_INTERVAL

    @property
    def data_limit_percentage(self) -> float:
        if self.data_limit.monthly == 0:
            return 0.0
        return self.data_limit.used / self.data_limit.monthly * 100


class RecommendedRange(BaseModel):
    min: int = Field(ge=MIN_MTU)
    max: int = Field(le=MAX_MTU)
    step: int = Field(default=20, ge=1)


class ProfileTestResults(BaseModel):
    """Most recent probe result recorded on a profile."""
    ping_success_rate: float = Field(default=0, ge=0, le=100)
    average_latency: float = Field(default=0, ge=0)
    packet_loss: float = Field(default=0, ge=0, le=100)
    last_tested: Optional[datetime] = None
    test_duration: float = 0


class AppliedProfile(BaseModel):
    """One entry of a profile's application log."""
    interface_name: str
    applied_at: datetime = Field(default_factory=utcnow)
    success: bool
    error: Optional[str] = None
    previous_mtu: Optional[int] = None


class MTUProfile(BaseModel):
    """Named, provider-tagged MTU recommendation."""
    name: str = Field(min_length=1)
    description: Optional[str] = None
    provider: Provider = Provider.UNKNOWN
    mtu: int = Field(ge=MIN_MTU, le=MAX_MTU)
    recommended_range: RecommendedRange
    dns: List[str] = Field(default_factory=list)
    persistent_keepalive: int = Field(default=25, ge=0, le=300)
    test_results: Optional[ProfileTestResults] = None
    applied_to: List[AppliedProfile] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    notes: Optional[str] = Field(default=None, max_length=2000)
    is_default: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("dns")
    @classmethod
    def validate_dns(cls, v: List[str]) -> List[str]:
        return _check_ipv4_list(v)

    @property
    def is_optimal(self) -> bool:
        results = self.test_results
        if results is None:
            return False
        return (
            results.ping_success_rate >= 95
            and results.packet_loss <= 5
            and results.average_latency <= 100
        )

    @property
    def success_rate(self) -> float:
        if not self.applied_to:
            return 0.0
        successes = sum(1 for entry in self.applied_to if entry.success)
        return successes / len(self.applied_to) * 100


class ProbeSample(BaseModel):
    """Result of probing one candidate MTU."""
    mtu: int
    success: bool
    latency: float = 0.0
    packet_loss: float = 100.0
    score: float = 0.0
    error: Optional[str] = None


class Recommendation(BaseModel):
    """Comparison of the measured optimum against a provider's known-good MTU."""
    optimal_mtu: int
    provider: Provider
    provider_mtu: int
    provider_range: str
    difference: int
    advice: str
    notes: str
    message: str


class ProbeReport(BaseModel):
    """Outcome of a full MTU sweep over one interface."""
    interface_name: str
    original_mtu: int
    best_mtu: int
    results: List[ProbeSample]
    recommendation: Recommendation
    started_at: datetime
    duration: float = 0.0

    @property
    def successful(self) -> List[ProbeSample]:
        return [sample for sample in self.results if sample.success]


class Snapshot(BaseModel):
    """Exported backup of one interface and its peers."""
    server: Dict[str, Any]
    config: str
    peers: List[Dict[str, Any]] = Field(default_factory=list)
    timestamp: str
    version: str = "1.0"
