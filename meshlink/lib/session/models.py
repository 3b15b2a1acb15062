import ipaddress
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum


class SessionStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    FAILED = "FAILED"  # grant never confirmed
    ARCHIVED = "ARCHIVED"


LIVE_STATUSES = frozenset({SessionStatus.PENDING, SessionStatus.ACTIVE})
TERMINAL_STATUSES = frozenset(
    {
        SessionStatus.EXPIRED,
        SessionStatus.REVOKED,
        SessionStatus.QUOTA_EXCEEDED,
        SessionStatus.FAILED,
    }
)


@dataclass(frozen=True)
class Tier:
    name: str
    duration_seconds: int
    download_kbit: int
    upload_kbit: int
    data_quota_bytes: int | None = None  # None means unmetered
    price: float = 0.0

    def has_quota(self) -> bool:
        return self.data_quota_bytes is not None and self.data_quota_bytes > 0


@dataclass
class Session:
    client_address: str
    tier: str
    created_at: float
    expires_at: float
    client_mac: str | None = None

    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    data_used_bytes: int = 0
    status: SessionStatus = SessionStatus.PENDING
    end_reason: SessionStatus | None = None
    ended_at: float | None = None
    archived_at: float | None = None

    # Bumped on every write; lets callers detect a row changed under them
    version: int = 1

    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def to_dict(self) -> dict:
        out = asdict(self)
        out["status"] = self.status.value
        out["end_reason"] = self.end_reason.value if self.end_reason else None
        return out


def normalize_address(address: str) -> str:
    """
    Return the canonical text form of an IPv4 address; raises ValueError otherwise.
    The enforcement sets are created as inet (IPv4) sets.
    """
    cleaned = str(address).replace("\x00", "").strip()
    try:
        return str(ipaddress.IPv4Address(cleaned))
    except ValueError:
        # Dual-stack listeners report IPv4 peers as ::ffff:a.b.c.d
        mapped = ipaddress.IPv6Address(cleaned).ipv4_mapped
        if mapped is None:
            raise ValueError(f"not an IPv4 address: {address!r}")
        return str(mapped)


def normalize_mac(mac: str | None) -> str | None:
    if not mac:
        return None
    hex_only = "".join(c for c in mac.lower() if c in "0123456789abcdef")
    if len(hex_only) != 12:
        raise ValueError(f"invalid MAC address: {mac!r}")
    return ":".join(hex_only[i:i + 2] for i in range(0, 12, 2))
