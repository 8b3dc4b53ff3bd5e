"""
Shared data containers and exceptions for the adaptive listing search engine.

Items are supplied by the catalog layer and are never modified by the engine.
Interactions are the unit of learning: every click batch or feedback rating
becomes one Interaction appended to the bounded interaction log.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple


class LearningStateError(Exception):
    """Base exception for learning state operations."""
    pass


class StateLoadError(LearningStateError):
    """Raised when a persisted learning state is unreadable or malformed."""
    pass


class StatePersistError(LearningStateError):
    """Raised when the learning state cannot be written."""
    pass


def normalize_text(value: Any) -> str:
    """Lower-case and trim a textual key."""
    if value is None:
        return ""
    return str(value).lower().strip()


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _as_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes', 'on')
    return bool(value)


def _pick(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


@dataclass(frozen=True)
class Item:
    """Read-only listing snapshot as supplied by the catalog layer."""
    id: str
    title: str = ""
    description: str = ""
    area: float = 0.0
    price: float = 0.0
    location: str = ""
    type: str = ""
    floor: int = 0
    has_parking: bool = False
    has_storage: bool = False

    def __post_init__(self):
        # Absent or malformed fields read as "feature absent" instead of failing scoring
        object.__setattr__(self, 'id', '' if self.id is None else str(self.id))
        for name in ('title', 'description', 'location', 'type'):
            value = getattr(self, name)
            object.__setattr__(self, name, '' if value is None else str(value))
        object.__setattr__(self, 'area', _as_float(self.area))
        object.__setattr__(self, 'price', _as_float(self.price))
        object.__setattr__(self, 'floor', _as_int(self.floor))
        object.__setattr__(self, 'has_parking', _as_bool(self.has_parking))
        object.__setattr__(self, 'has_storage', _as_bool(self.has_storage))

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> 'Item':
        """
        Build an Item from a loosely typed mapping.

        Accepts snake_case and camelCase keys. Values that cannot be parsed
        fall back to the "feature absent" default instead of raising.
        """
        return cls(
            id=str(_pick(payload, 'id', 'item_id', 'listing_id') or ''),
            title=str(_pick(payload, 'title') or ''),
            description=str(_pick(payload, 'description') or ''),
            area=_as_float(_pick(payload, 'area')),
            price=_as_float(_pick(payload, 'price')),
            location=str(_pick(payload, 'location') or ''),
            type=str(_pick(payload, 'type', 'category') or ''),
            floor=_as_int(_pick(payload, 'floor')),
            has_parking=_as_bool(_pick(payload, 'has_parking', 'hasParking')),
            has_storage=_as_bool(_pick(payload, 'has_storage', 'hasStorage')),
        )

    def searchable_text(self) -> str:
        """Lower-cased text the query is matched against."""
        return f"{self.title} {self.description} {self.location} {self.type}".lower()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'area': self.area,
            'price': self.price,
            'location': self.location,
            'type': self.type,
            'floor': self.floor,
            'has_parking': self.has_parking,
            'has_storage': self.has_storage,
        }


@dataclass(frozen=True)
class Interaction:
    """One recorded user event used for pattern mining and weight adaptation."""
    query: str
    timestamp: float = field(default_factory=time.time)
    result_count: int = 0
    clicked_item_ids: Tuple[str, ...] = ()
    feedback_rating: Optional[int] = None
    session_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'query': self.query,
            'timestamp': self.timestamp,
            'result_count': self.result_count,
            'clicked_item_ids': list(self.clicked_item_ids),
            'feedback_rating': self.feedback_rating,
            'session_id': self.session_id,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> 'Interaction':
        rating = payload.get('feedback_rating')
        return cls(
            query=normalize_text(payload.get('query')),
            timestamp=float(payload.get('timestamp') or 0.0),
            result_count=int(payload.get('result_count') or 0),
            clicked_item_ids=tuple(str(i) for i in payload.get('clicked_item_ids') or []),
            feedback_rating=int(rating) if rating is not None else None,
            session_id=str(payload.get('session_id') or ''),
        )


@dataclass
class ScoreResult:
    """Relevance score of one item with the factors that produced it."""
    score: float
    matched_factors: Set[str] = field(default_factory=set)
    components: Dict[str, float] = field(default_factory=dict)


@dataclass
class RankedItem:
    """Item with its relevance score and the post-hoc ranking bonuses."""
    item: Item
    score: float
    final_score: float
    matched_factors: Set[str] = field(default_factory=set)
    type_bonus: float = 0.0
    popularity_bonus: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'item': self.item.to_dict(),
            'score': round(self.score, 4),
            'final_score': round(self.final_score, 4),
            'matched_factors': sorted(self.matched_factors),
            'type_bonus': self.type_bonus,
            'popularity_bonus': self.popularity_bonus,
        }


@dataclass
class LearningStats:
    """Summary of what the engine has learned so far."""
    total_queries: int
    unique_patterns: int
    learned_weights: Dict[str, float]
    top_patterns: List[Tuple[str, int]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_queries': self.total_queries,
            'unique_patterns': self.unique_patterns,
            'learned_weights': dict(self.learned_weights),
            'top_patterns': [list(pair) for pair in self.top_patterns],
        }


@dataclass
class SearchResponse:
    """Ranked results of one search together with diagnostic metadata."""
    query: str
    session_id: str
    results: List[RankedItem]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def items(self) -> List[Item]:
        return [ranked.item for ranked in self.results]


__all__ = [
    "LearningStateError",
    "StateLoadError",
    "StatePersistError",
    "normalize_text",
    "Item",
    "Interaction",
    "ScoreResult",
    "RankedItem",
    "LearningStats",
    "SearchResponse",
]
