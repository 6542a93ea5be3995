"""Stored document shapes and the staleness predicate."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

LIGHT = "light"
RICH = "rich"
_LEVEL_RANK = {LIGHT: 0, RICH: 1}

FREE = "free"
PREMIUM = "premium"

Timestamp = Union[datetime, str]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def parse_ts(value: Optional[Timestamp]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_stale(expires_at: Optional[Timestamp], now: Optional[datetime] = None) -> bool:
    """True once ``now`` is past ``expires_at``. A missing expiry is stale."""
    expires = parse_ts(expires_at)
    if expires is None:
        return True
    return (now or utc_now()) > expires


def higher_level(a: Optional[str], b: Optional[str]) -> str:
    a = a or LIGHT
    b = b or LIGHT
    return a if _LEVEL_RANK.get(a, 0) >= _LEVEL_RANK.get(b, 0) else b


@dataclass
class Freshness:
    fetched_at: datetime
    expires_at: datetime

    @classmethod
    def starting_now(cls, ttl_seconds: int, now: Optional[datetime] = None) -> "Freshness":
        fetched = now or utc_now()
        return cls(fetched_at=fetched, expires_at=fetched + timedelta(seconds=ttl_seconds))

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        return is_stale(self.expires_at, now)

    def to_dict(self) -> Dict[str, Any]:
        return {"fetched_at": to_iso(self.fetched_at), "expires_at": to_iso(self.expires_at)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Freshness":
        return cls(fetched_at=parse_ts(data.get("fetched_at")), expires_at=parse_ts(data.get("expires_at")))


@dataclass
class EntitySummary:
    name: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    address: Optional[str] = None
    types: List[str] = field(default_factory=list)
    rating: Optional[float] = None
    user_rating_count: Optional[int] = None
    price_level: Optional[int] = None
    business_status: Optional[str] = None
    opening_hours: Optional[Dict[str, Any]] = None
    # Opaque provider tokens, never resolved URLs.
    photos: List[str] = field(default_factory=list)

    def has_geometry(self) -> bool:
        if self.lat is None or self.lng is None:
            return False
        return not (float(self.lat) == 0.0 and float(self.lng) == 0.0)

    def is_complete(self) -> bool:
        return bool((self.name or "").strip()) and self.has_geometry()


@dataclass
class RichDetails:
    reviews: List[Dict[str, Any]] = field(default_factory=list)
    opening_hours_schedule: Optional[Dict[str, Any]] = None
    editorial_summary: Optional[str] = None
    website: Optional[str] = None
    phone: Optional[str] = None

    def is_structurally_rich(self) -> bool:
        return bool(self.reviews) or bool(self.opening_hours_schedule) or bool(self.editorial_summary)

    def is_empty(self) -> bool:
        return not (self.is_structurally_rich() or self.website or self.phone)


@dataclass
class ClaimOverlay:
    """Operator-edited fields. ``None`` means "fall through to upstream"."""

    claimed_by: str
    claimed_at: Optional[datetime] = None
    name: Optional[str] = None
    address: Optional[str] = None
    avg_check: Optional[float] = None
    cuisine_tags: Optional[List[str]] = None
    opening_hours: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    website: Optional[str] = None
    phone: Optional[str] = None
    menu_items: Optional[List[Dict[str, Any]]] = None
    table_config: Optional[Dict[str, Any]] = None
    custom_photos: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["claimed_at"] = to_iso(self.claimed_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClaimOverlay":
        values = {k: data.get(k) for k in cls.__dataclass_fields__ if k in data}
        values["claimed_at"] = parse_ts(data.get("claimed_at"))
        values["custom_photos"] = list(data.get("custom_photos") or [])
        return cls(**values)


@dataclass
class EntityRecord:
    identity: str
    summary: EntitySummary
    enrichment_level: str
    freshness: Freshness
    spatial_token: str
    rich: RichDetails = field(default_factory=RichDetails)
    claim: Optional[ClaimOverlay] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_claimed(self) -> bool:
        return self.claim is not None and bool(self.claim.claimed_by)

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        return self.freshness.is_stale(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "summary": asdict(self.summary),
            "rich": asdict(self.rich),
            "enrichment_level": self.enrichment_level,
            "freshness": self.freshness.to_dict(),
            "spatial_token": self.spatial_token,
            "claim": self.claim.to_dict() if self.claim else None,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityRecord":
        summary = data.get("summary") or {}
        rich = data.get("rich") or {}
        claim = data.get("claim")
        return cls(
            identity=data["identity"],
            summary=EntitySummary(**{k: v for k, v in summary.items() if k in EntitySummary.__dataclass_fields__}),
            rich=RichDetails(**{k: v for k, v in rich.items() if k in RichDetails.__dataclass_fields__}),
            enrichment_level=data.get("enrichment_level") or LIGHT,
            freshness=Freshness.from_dict(data.get("freshness") or {}),
            spatial_token=data.get("spatial_token") or "",
            claim=ClaimOverlay.from_dict(claim) if claim else None,
            created_at=parse_ts(data.get("created_at")),
            updated_at=parse_ts(data.get("updated_at")),
        )


@dataclass
class PartitionRecord:
    partition_key: str
    member_identities: List[str]
    freshness: Freshness
    originating_params: Dict[str, Any]

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        return self.freshness.is_stale(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partition_key": self.partition_key,
            "member_identities": list(self.member_identities),
            "freshness": self.freshness.to_dict(),
            "originating_params": dict(self.originating_params),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PartitionRecord":
        return cls(
            partition_key=data["partition_key"],
            member_identities=list(data.get("member_identities") or []),
            freshness=Freshness.from_dict(data.get("freshness") or {}),
            originating_params=dict(data.get("originating_params") or {}),
        )


@dataclass
class QuotaRecord:
    user_id: str
    tier: str
    remaining: int
    used: int
    limit: int
    reset_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reset_at"] = to_iso(self.reset_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuotaRecord":
        return cls(
            user_id=data["user_id"],
            tier=data.get("tier") or FREE,
            remaining=int(data.get("remaining", 0)),
            used=int(data.get("used", 0)),
            limit=int(data.get("limit", 0)),
            reset_at=parse_ts(data.get("reset_at")) or utc_now(),
        )


@dataclass(frozen=True)
class QuotaStatus:
    tier: str
    can_use: bool
    remaining: int
    used: int
    limit: int
    reset_at: datetime
    limit_reached: bool


@dataclass(frozen=True)
class ReserveResult:
    authorized: bool
    tier: str
    remaining: int


@dataclass(frozen=True)
class RefundResult:
    refunded: bool
    remaining: int


@dataclass
class ResolvedView:
    """What a detail page renders: base record with the claim overlay applied."""

    identity: str
    name: Optional[str]
    address: Optional[str]
    lat: Optional[float]
    lng: Optional[float]
    types: List[str]
    rating: Optional[float]
    user_rating_count: Optional[int]
    price_level: Optional[int]
    business_status: Optional[str]
    opening_hours: Optional[Dict[str, Any]]
    photos: List[Dict[str, Any]]
    reviews: List[Dict[str, Any]]
    description: Optional[str]
    website: Optional[str]
    phone: Optional[str]
    enrichment_level: str
    claimed: bool = False
    claimed_by: Optional[str] = None
    menu_items: List[Dict[str, Any]] = field(default_factory=list)
    table_config: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResolvedView":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})
