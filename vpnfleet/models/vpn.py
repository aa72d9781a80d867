# vpnfleet/models/vpn.py
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, Field, SecretStr, field_validator

from vpnfleet.settings import settings


class VpnType(str, Enum):
    WIREGUARD = "wireguard"
    OUTLINE = "outline"


class AccessMethod(str, Enum):
    LOCAL = "local"
    SSH = "ssh"
    API = "api"


class PeerStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    DISABLED = "DISABLED"
    EXPIRED = "EXPIRED"


class LimitMode(str, Enum):
    CAPPED = "capped"
    SUSPENDED = "suspended"
    UNLIMITED = "unlimited"


def _new_id() -> str:
    return uuid4().hex


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Naive values are taken as UTC so they compare with the scheduler clock
UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


# --- Server side ---


class PasswordAuth(BaseModel):
    """SSH password credential."""

    kind: Literal["password"] = "password"
    password: SecretStr


class PrivateKeyAuth(BaseModel):
    """SSH private key credential (OpenSSH/PEM text, not a path)."""

    kind: Literal["private_key"] = "private_key"
    private_key: SecretStr
    passphrase: Optional[SecretStr] = None


SSHAuth = Annotated[Union[PasswordAuth, PrivateKeyAuth], Field(discriminator="kind")]


class SSHConfig(BaseModel):
    """
    Remote shell target for a server.

    ``host`` falls back to the server host when unset. ``auth`` may be missing on
    records coming from persistence; execution then fails with
    SSHAuthenticationNotProvided.
    """

    username: str = Field(..., min_length=1, description="Remote login name.")
    host: Optional[str] = Field(None, description="SSH host, defaults to the server host.")
    port: int = Field(
        default_factory=lambda: settings.ssh_default_port, ge=1, le=65535, description="SSH port."
    )
    auth: Optional[SSHAuth] = Field(None, description="Password or private key credential.")


class WireGuardConfig(BaseModel):
    interface_name: str = Field(
        default_factory=lambda: settings.wireguard_interface,
        description="WireGuard interface on the server.",
    )
    ip_range: str = Field(
        default_factory=lambda: settings.wireguard_ip_range,
        description="IPv4 CIDR peers are allocated from.",
    )
    port: int = Field(
        default_factory=lambda: settings.wireguard_port,
        ge=1,
        le=65535,
        description="UDP listen port clients connect to.",
    )
    server_public_key: Optional[str] = None
    server_private_key: Optional[SecretStr] = None
    access_method: AccessMethod = AccessMethod.LOCAL
    ssh: Optional[SSHConfig] = None

    @field_validator("access_method")
    @classmethod
    def validate_access_method(cls, v: AccessMethod) -> AccessMethod:
        if v not in (AccessMethod.LOCAL, AccessMethod.SSH):
            raise ValueError("WireGuard servers are reached locally or over SSH")
        return v


class OutlineConfig(BaseModel):
    api_host: Optional[str] = Field(
        None, description="Management API host, defaults to the server host."
    )
    api_port: int = Field(
        default_factory=lambda: settings.outline_api_port,
        ge=1,
        le=65535,
        description="Management API port.",
    )
    admin_access_key: SecretStr = Field(..., description="Secret path prefix of the API.")
    cert_sha256: Optional[str] = Field(None, description="Self-signed certificate fingerprint.")
    access_method: AccessMethod = AccessMethod.API

    @field_validator("access_method")
    @classmethod
    def validate_access_method(cls, v: AccessMethod) -> AccessMethod:
        if v != AccessMethod.API:
            raise ValueError("Outline servers are managed through the API")
        return v


class ServerHealth(BaseModel):
    is_healthy: bool = True
    last_health_check: Optional[datetime] = None
    total_users: int = Field(0, ge=0)
    total_data_transferred: int = Field(0, ge=0)


class VpnServer(BaseModel):
    """
    A VPN server of the fleet, as handed to the core by persistence.

    Treated as an immutable value for the duration of one operation; updates
    go back through the store.
    """

    id: str = Field(default_factory=_new_id)
    name: str
    vpn_type: VpnType = VpnType.WIREGUARD
    host: str = Field(..., description="Public hostname or IP clients connect to.")
    port: int = Field(51820, ge=1, le=65535)
    is_active: bool = True
    wireguard: Optional[WireGuardConfig] = None
    outline: Optional[OutlineConfig] = None
    stats: ServerHealth = Field(default_factory=ServerHealth)

    model_config = {"frozen": True}

    @property
    def label(self) -> str:
        return f"{self.name} ({self.host})"


# --- Peer side ---


class Plan(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    data_limit_bytes: Optional[int] = Field(None, ge=0)
    is_unlimited: bool = False


class DataLimit(BaseModel):
    bytes: Optional[int] = Field(None, ge=0)
    is_enabled: bool = False


class Usage(BaseModel):
    bytes_sent: int = Field(0, ge=0)
    bytes_received: int = Field(0, ge=0)
    last_sync: Optional[datetime] = None

    @property
    def total(self) -> int:
        return self.bytes_sent + self.bytes_received


class Connectivity(BaseModel):
    last_handshake: Optional[datetime] = None
    is_connected: bool = False


class AccessKey(BaseModel):
    """Outline analogue of a WireGuard peer."""

    key_id: str = Field(..., description="Backend-assigned id, always held as a string.")
    access_url: str
    name: str
    data_limit: Optional[DataLimit] = None
    usage: Usage = Field(default_factory=Usage)
    status: PeerStatus = PeerStatus.ACTIVE
    limit_before_suspend: Optional[int] = Field(
        None, description="Device limit saved on suspend, restored on resume."
    )

    @field_validator("key_id", mode="before")
    @classmethod
    def normalize_key_id(cls, v):
        """Outline returns ids as strings or numbers depending on version."""
        if isinstance(v, bool) or v is None:
            raise ValueError("key_id must be a string or a number")
        return str(v)


class Device(BaseModel):
    """A provisioned peer (WireGuard) or access key holder (Outline)."""

    id: str = Field(default_factory=_new_id)
    name: str
    server_id: str
    plan: Optional[Plan] = None
    public_key: Optional[str] = None
    private_key: Optional[SecretStr] = None
    vpn_ip: Optional[str] = None
    status: PeerStatus = PeerStatus.ACTIVE
    is_enabled: bool = True
    usage: Usage = Field(default_factory=Usage)
    data_limit: Optional[DataLimit] = None
    is_unlimited: bool = False
    expires_at: Optional[UtcDatetime] = None
    connectivity: Connectivity = Field(default_factory=Connectivity)
    config_file: Optional[str] = None
    access_key: Optional[AccessKey] = None

    @property
    def backend_id(self) -> Optional[str]:
        """Id the backend knows this device by."""
        if self.access_key is not None:
            return self.access_key.key_id
        return self.public_key

    def effective_limit(self) -> Optional[int]:
        """
        Device override if set, otherwise the plan limit. None means unlimited;
        an override of 0 bytes means suspended.
        """
        if self.is_unlimited:
            return None
        override = self.data_limit
        if override is not None and override.is_enabled and override.bytes is not None:
            return override.bytes
        if self.plan is not None and not self.plan.is_unlimited and self.plan.data_limit_bytes:
            return self.plan.data_limit_bytes
        return None

    def has_exceeded_limit(self) -> bool:
        limit = self.effective_limit()
        return limit is not None and self.usage.total >= limit


# --- Backend results ---


class Keypair(BaseModel):
    private_key: SecretStr
    public_key: str


class PeerUsage(BaseModel):
    """Per-peer telemetry, same shape for both backends."""

    peer_id: str
    bytes_received: int = Field(0, ge=0)
    bytes_sent: int = Field(0, ge=0)
    last_handshake: Optional[datetime] = None
    is_connected: bool = False
    data_limit: Optional[int] = None
    name: Optional[str] = None


class ProvisionedPeer(BaseModel):
    """What the backend created for a subject."""

    peer_id: str = Field(..., description="Public key (WireGuard) or access key id (Outline).")
    name: Optional[str] = None
    access_url: Optional[str] = None
    data_limit: Optional[int] = None


class ServerTelemetry(BaseModel):
    is_healthy: bool
    total_users: int = Field(0, ge=0)
    total_data_transferred: int = Field(0, ge=0)
    server_id: Optional[str] = None
    version: Optional[str] = None
    interface_name: Optional[str] = None
    port_for_new_access_keys: Optional[int] = None


class LimitChange(BaseModel):
    """Outcome of a data-limit request, see resolve_limit()."""

    mode: LimitMode
    bytes: Optional[int] = None


class InitializationResult(BaseModel):
    success: bool
    message: str
    public_key: Optional[str] = None
    generated_private_key: Optional[SecretStr] = None
    server_id: Optional[str] = None
    version: Optional[str] = None
    port_for_new_access_keys: Optional[int] = None


class PeerConfigPatch(BaseModel):
    """
    Partial peer update. Only fields explicitly set are applied, so
    ``PeerConfigPatch(data_limit=None)`` removes the limit while
    ``PeerConfigPatch(name="x")`` leaves it untouched.
    """

    name: Optional[str] = None
    data_limit: Optional[int] = None
    expires_at: Optional[UtcDatetime] = None


class ProvisionRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    plan: Optional[Plan] = None
    data_limit: Optional[int] = Field(None, ge=0, description="Bytes, None = unlimited.")
    expires_at: Optional[UtcDatetime] = None


class AccessArtifact(BaseModel):
    config: str
    qr_code: str = Field(..., description="PNG data URL of the config.")
    filename: str


class RevocationResult(BaseModel):
    device_id: str
    backend_removed: bool
    error: Optional[str] = None
