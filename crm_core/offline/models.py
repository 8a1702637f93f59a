"""
Data models for the paginated offline cache.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from crm_core.errors import FetchError


@dataclass
class Page:
    """One page of an append-only list query."""
    items: List[Any] = field(default_factory=list)
    next_offset: Optional[int] = None  # None when this is the last page
    total: int = 0

    @classmethod
    def from_response(cls, data: Any) -> "Page":
        """Accept either a Page or a {"items", "next_offset", "total"} mapping."""
        if isinstance(data, Page):
            return data
        if not isinstance(data, dict):
            raise FetchError(f"Unusable page response: {type(data).__name__}")
        return cls(
            items=list(data.get("items") or []),
            next_offset=data.get("next_offset"),
            total=data.get("total") or 0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"items": self.items, "next_offset": self.next_offset, "total": self.total}


@dataclass
class PersistedPageSnapshot:
    """
    Every page fetched for one owner, as written to the durable store.

    Pages are kept in increasing offset order with no gaps.
    """
    owner_key: str
    pages: List[Page]
    captured_at: float

    def age_seconds(self, now: float) -> float:
        return now - self.captured_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_key": self.owner_key,
            "pages": [p.to_dict() for p in self.pages],
            "captured_at": self.captured_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistedPageSnapshot":
        return cls(
            owner_key=data["owner_key"],
            pages=[Page.from_response(p) for p in data.get("pages", [])],
            captured_at=float(data["captured_at"]),
        )
