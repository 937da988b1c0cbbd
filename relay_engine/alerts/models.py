"""
Relay Engine — Watchlist & Alert Models
────────────────────────────────────────
Canonical shapes for watch items as the store holds them and for the
transient values the scheduler passes around.
"""

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def _parse_ts(value: Any) -> Optional[datetime]:
    """Accept datetimes, ISO strings, epoch seconds or {"_seconds": n} documents."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, dict) and "_seconds" in value:
        return datetime.fromtimestamp(value["_seconds"], tz=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _fmt_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class ItemRef:
    """Provider-specific identity of a marketplace item."""
    appid:     int
    hash_name: str

    def __str__(self) -> str:
        return f"{self.appid}/{self.hash_name}"


@dataclass
class PricePoint:
    price:     float
    timestamp: datetime

    def to_dict(self) -> dict:
        return {"price": self.price, "timestamp": _fmt_ts(self.timestamp)}

    @classmethod
    def from_dict(cls, d: dict) -> "PricePoint":
        return cls(price=float(d.get("price", 0)), timestamp=_parse_ts(d.get("timestamp")))


@dataclass
class PriceQuote:
    success: bool
    price:   Optional[float] = None
    source:  str = "market"


@dataclass
class WatchItem:
    id:               str
    owner_id:         str
    appid:            int
    hash_name:        str
    name:             str = ""
    target_price:     float = 0.0
    current_price:    float = 0.0
    price_history:    List[PricePoint] = field(default_factory=list)
    alerts_enabled:   bool = True
    last_alert_at:    Optional[datetime] = None
    last_alert_price: Optional[float] = None
    last_alert_target: Optional[float] = None
    last_price_check: Optional[datetime] = None

    @property
    def ref(self) -> ItemRef:
        return ItemRef(appid=self.appid, hash_name=self.hash_name)

    @property
    def display_name(self) -> str:
        return self.name or self.hash_name

    def to_dict(self) -> dict:
        d = asdict(self)
        d["price_history"]    = [p.to_dict() for p in self.price_history]
        d["last_alert_at"]    = _fmt_ts(self.last_alert_at)
        d["last_price_check"] = _fmt_ts(self.last_price_check)
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "WatchItem":
        return cls(
            id=str(d["id"]),
            owner_id=str(d.get("owner_id", "")),
            appid=int(d.get("appid", 730)),
            hash_name=d.get("hash_name", ""),
            name=d.get("name", ""),
            target_price=float(d.get("target_price") or 0),
            current_price=float(d.get("current_price") or 0),
            price_history=[PricePoint.from_dict(p) for p in d.get("price_history") or []],
            alerts_enabled=bool(d.get("alerts_enabled", True)),
            last_alert_at=_parse_ts(d.get("last_alert_at")),
            last_alert_price=d.get("last_alert_price"),
            last_alert_target=d.get("last_alert_target"),
            last_price_check=_parse_ts(d.get("last_price_check")),
        )


@dataclass
class AlertEvent:
    """Handed to the notification sink; never persisted by the scheduler."""
    item:      WatchItem
    old_price: float
    new_price: float
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id":      self.item.id,
            "owner_id":     self.item.owner_id,
            "name":         self.item.display_name,
            "target_price": self.item.target_price,
            "old_price":    self.old_price,
            "new_price":    self.new_price,
            "timestamp":    _fmt_ts(self.timestamp),
        }


class UpdateOutcome(str, enum.Enum):
    UPDATED = "updated"
    ALERTED = "alerted"
    FAILED  = "failed"


@dataclass
class SweepReport:
    total:      int = 0
    updated:    int = 0    # prices written, alerted items included
    alerted:    int = 0
    failed:     int = 0
    duration_s: float = 0.0

    def record(self, outcome: UpdateOutcome):
        if outcome is UpdateOutcome.FAILED:
            self.failed += 1
            return
        self.updated += 1
        if outcome is UpdateOutcome.ALERTED:
            self.alerted += 1
