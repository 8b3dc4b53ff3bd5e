"""
Durable learning state for the adaptive search engine.

The LearningState holds everything the engine has learned: query token
frequencies, adaptive feature weights, user preferences, query to clicked-item
associations and a bounded interaction log.

Concurrency model:
- LearningStore is the single writer. Every mutation runs under one re-entrant
  lock, works on a copy of the current generation, and publishes the copy once
  invariants are enforced and the state has been handed to the repository.
- Readers take the current generation reference without locking. A published
  generation is never modified again, so a ranking pass sees one consistent
  state even while feedback is being written.

Persistence:
- JsonStateRepository writes one JSON document per scope, atomically, with
  tenacity-based retries. The document shape is validated with jsonschema on
  load; anything unreadable is reported as StateLoadError and replaced with
  the default state by the store.
"""

import json
import logging
import re
import threading
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from jsonschema import ValidationError, validate
from tenacity import Retrying, stop_after_attempt, wait_exponential

from .models import Interaction, StateLoadError, StatePersistError, normalize_text


FEATURE_FACTORS: Tuple[str, ...] = (
    'exact_match',
    'type_match',
    'size_match',
    'price_match',
    'feature_match',
    'location_match',
    'number_match',
    'word_match',
)

DEFAULT_FEATURE_WEIGHTS: Dict[str, float] = {
    'exact_match': 100,
    'type_match': 50,
    'size_match': 30,
    'price_match': 30,
    'feature_match': 25,
    'location_match': 20,
    'number_match': 40,
    'word_match': 20,
}

MIN_WEIGHT = 5
MAX_WEIGHT = 150
DEFAULT_INTERACTION_LOG_LIMIT = 1000
STATE_FORMAT_VERSION = 1

_SCOPE_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")

_PAIR_LIST = {
    "type": "array",
    "items": {
        "type": "array",
        "items": [{"type": "string"}, {"type": "number"}],
        "minItems": 2,
        "maxItems": 2,
    },
}

STATE_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": [
        "pattern_frequency",
        "feature_weights",
        "user_preferences",
        "contextual_mappings",
        "interaction_log",
    ],
    "properties": {
        "version": {"type": "integer", "enum": [STATE_FORMAT_VERSION]},
        "pattern_frequency": _PAIR_LIST,
        "feature_weights": _PAIR_LIST,
        "user_preferences": _PAIR_LIST,
        "contextual_mappings": {
            "type": "array",
            "items": {
                "type": "array",
                "items": [
                    {"type": "string"},
                    {"type": "array", "items": {"type": "string"}},
                ],
                "minItems": 2,
                "maxItems": 2,
            },
        },
        "interaction_log": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["query", "clicked_item_ids"],
                "properties": {
                    "query": {"type": "string"},
                    "timestamp": {"type": "number"},
                    "result_count": {"type": "integer"},
                    "clicked_item_ids": {"type": "array", "items": {"type": "string"}},
                    "feedback_rating": {"type": ["integer", "null"]},
                    "session_id": {"type": "string"},
                },
            },
        },
    },
}


def clamp_weight(value: float) -> float:
    """Clamp a feature weight into the allowed range."""
    return max(MIN_WEIGHT, min(MAX_WEIGHT, value))


def _dedupe(ids: List[str]) -> List[str]:
    seen = set()
    unique = []
    for item_id in ids:
        if item_id not in seen:
            seen.add(item_id)
            unique.append(item_id)
    return unique


@dataclass
class LearningState:
    """Everything the engine has learned, as one value."""
    pattern_frequency: Dict[str, int] = field(default_factory=dict)
    feature_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_FEATURE_WEIGHTS))
    user_preferences: Dict[str, float] = field(default_factory=dict)
    contextual_mappings: Dict[str, List[str]] = field(default_factory=dict)
    interaction_log: List[Interaction] = field(default_factory=list)

    @classmethod
    def default(cls) -> 'LearningState':
        return cls()

    def copy(self) -> 'LearningState':
        """Copy deep enough that mutating the copy never touches this state."""
        return LearningState(
            pattern_frequency=dict(self.pattern_frequency),
            feature_weights=dict(self.feature_weights),
            user_preferences=dict(self.user_preferences),
            contextual_mappings={query: list(ids) for query, ids in self.contextual_mappings.items()},
            interaction_log=list(self.interaction_log),
        )

    def weight(self, factor: str) -> float:
        """Current weight of a factor; falls back to the default table."""
        return self.feature_weights.get(factor) or DEFAULT_FEATURE_WEIGHTS.get(factor, 0)

    def click_counts(self) -> Counter:
        """Number of logged interactions in which each item id was clicked."""
        counts: Counter = Counter()
        for interaction in self.interaction_log:
            counts.update(set(interaction.clicked_item_ids))
        return counts

    def top_patterns(self, limit: int = 10) -> List[Tuple[str, int]]:
        return sorted(self.pattern_frequency.items(), key=lambda x: x[1], reverse=True)[:limit]

    def enforce_invariants(self,
                           interaction_log_limit: int = DEFAULT_INTERACTION_LOG_LIMIT,
                           pattern_limit: int = 0) -> None:
        """Clamp weights, truncate the log and, when bounded, evict rare patterns."""
        for factor, weight in self.feature_weights.items():
            self.feature_weights[factor] = clamp_weight(weight)

        if len(self.interaction_log) > interaction_log_limit:
            self.interaction_log = self.interaction_log[-interaction_log_limit:]

        if pattern_limit > 0 and len(self.pattern_frequency) > pattern_limit:
            # Lowest frequency goes first; among equals the newest token goes first.
            ranked = sorted(self.pattern_frequency.items(), key=lambda x: x[1], reverse=True)
            keep = {token for token, _ in ranked[:pattern_limit]}
            self.pattern_frequency = {
                token: count for token, count in self.pattern_frequency.items() if token in keep
            }

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form; mappings are stored as lists of [key, value] pairs."""
        return {
            'version': STATE_FORMAT_VERSION,
            'pattern_frequency': [[k, v] for k, v in self.pattern_frequency.items()],
            'feature_weights': [[k, v] for k, v in self.feature_weights.items()],
            'user_preferences': [[k, v] for k, v in self.user_preferences.items()],
            'contextual_mappings': [[k, list(v)] for k, v in self.contextual_mappings.items()],
            'interaction_log': [interaction.to_dict() for interaction in self.interaction_log],
        }

    @classmethod
    def from_dict(cls,
                  payload: Dict[str, Any],
                  interaction_log_limit: int = DEFAULT_INTERACTION_LOG_LIMIT) -> 'LearningState':
        """
        Rebuild a state from its serialized form.

        Keys are normalized, unknown factors are dropped, missing factors get
        their default weight, and all invariants are re-established.

        Raises:
            StateLoadError: If the payload cannot be interpreted.
        """
        try:
            patterns: Dict[str, int] = {}
            for token, count in payload['pattern_frequency']:
                key = normalize_text(token)
                if key:
                    patterns[key] = patterns.get(key, 0) + int(count)

            weights = {factor: DEFAULT_FEATURE_WEIGHTS[factor] for factor in FEATURE_FACTORS}
            for factor, weight in payload['feature_weights']:
                key = normalize_text(factor)
                if key in FEATURE_FACTORS:
                    weights[key] = weight

            preferences = {
                normalize_text(key): value
                for key, value in payload['user_preferences']
                if normalize_text(key)
            }

            mappings: Dict[str, List[str]] = {}
            for query, ids in payload['contextual_mappings']:
                key = normalize_text(query)
                if key:
                    mappings[key] = _dedupe(mappings.get(key, []) + [str(i) for i in ids])

            log = [Interaction.from_dict(entry) for entry in payload['interaction_log']]
        except (KeyError, TypeError, ValueError) as e:
            raise StateLoadError(f"Malformed learning state: {e}") from e

        state = cls(
            pattern_frequency=patterns,
            feature_weights=weights,
            user_preferences=preferences,
            contextual_mappings=mappings,
            interaction_log=log,
        )
        state.enforce_invariants(interaction_log_limit)
        return state


class JsonStateRepository:
    """Stores one learning state document per scope as a JSON file."""

    def __init__(self,
                 directory: Union[str, Path],
                 scope: str = 'global',
                 max_attempts: int = 3):
        if not _SCOPE_PATTERN.match(scope):
            raise ValueError(f"Invalid learning scope '{scope}'")
        self.directory = Path(directory)
        self.scope = scope
        self.max_attempts = max(1, max_attempts)
        self.logger = logging.getLogger(f"{__name__}.JsonStateRepository")

    @property
    def path(self) -> Path:
        return self.directory / f"{self.scope}.json"

    def load(self) -> Optional[Dict[str, Any]]:
        """
        Read and validate the persisted document.

        Returns:
            The validated payload, or None when nothing has been persisted yet.

        Raises:
            StateLoadError: If the file is unreadable or does not match the schema.
        """
        if not self.path.exists():
            return None

        try:
            payload = json.loads(self.path.read_text(encoding='utf-8'))
            validate(instance=payload, schema=STATE_SCHEMA)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StateLoadError(f"Cannot read learning state from {self.path}: {e}") from e
        except ValidationError as e:
            raise StateLoadError(f"Invalid learning state in {self.path}: {e.message}") from e

        return payload

    def save(self, payload: Dict[str, Any]) -> None:
        """
        Atomically write the document, retrying transient failures.

        Raises:
            StatePersistError: If every attempt failed.
        """
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
                reraise=True,
            ):
                with attempt:
                    self._write(payload)
        except (OSError, TypeError, ValueError) as e:
            raise StatePersistError(f"Failed to persist learning state to {self.path}: {e}") from e

    def _write(self, payload: Dict[str, Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=False), encoding='utf-8')
        tmp_path.replace(self.path)


class LearningStore:
    """Single-writer owner of the current LearningState generation."""

    def __init__(self,
                 repository: Optional[JsonStateRepository] = None,
                 interaction_log_limit: int = DEFAULT_INTERACTION_LOG_LIMIT,
                 pattern_limit: int = 0,
                 on_persist_error: Optional[Callable[[StatePersistError], None]] = None):
        """
        Args:
            repository: Where the state is persisted; None keeps it in memory only
            interaction_log_limit: Maximum number of retained interactions
            pattern_limit: Maximum number of pattern tokens, 0 for unbounded
            on_persist_error: Called after a failed write, e.g. to count it
        """
        self.repository = repository
        self.interaction_log_limit = interaction_log_limit
        self.pattern_limit = pattern_limit
        self.on_persist_error = on_persist_error
        self.persist_failures = 0
        self.logger = logging.getLogger(f"{__name__}.LearningStore")

        self._lock = threading.RLock()
        self._state: Optional[LearningState] = None

    def load(self) -> LearningState:
        """Load the persisted state, falling back to defaults."""
        with self._lock:
            state = LearningState.default()
            if self.repository is not None:
                try:
                    payload = self.repository.load()
                    if payload is not None:
                        state = LearningState.from_dict(payload, self.interaction_log_limit)
                        self.logger.info(
                            f"Loaded learning state '{self.repository.scope}': "
                            f"{len(state.interaction_log)} interactions, "
                            f"{len(state.pattern_frequency)} patterns"
                        )
                    else:
                        self.logger.info(f"No learning state for '{self.repository.scope}', using defaults")
                except StateLoadError as e:
                    self.logger.warning(f"{e}; starting from default learning state")
                    state = LearningState.default()

            state.enforce_invariants(self.interaction_log_limit, self.pattern_limit)
            self._state = state
            return state

    @property
    def is_loaded(self) -> bool:
        return self._state is not None

    def snapshot(self) -> LearningState:
        """
        Current generation of the state.

        The returned object is shared and must be treated as read-only.
        """
        state = self._state
        if state is None:
            state = self.load()
        return state

    @contextmanager
    def mutate(self) -> Iterator[LearningState]:
        """
        Serialized read-modify-write of the state.

        Yields a private draft. When the block completes the draft's invariants
        are enforced, it is persisted, and it becomes the current generation.
        If the block raises, the draft is discarded.
        """
        with self._lock:
            draft = self.snapshot().copy()
            yield draft
            draft.enforce_invariants(self.interaction_log_limit, self.pattern_limit)
            self._state = draft
            self._persist(draft)

    def flush(self) -> bool:
        """Write the current generation. Returns False if the write failed."""
        with self._lock:
            if self._state is None:
                return True
            return self._persist(self._state)

    def _persist(self, state: LearningState) -> bool:
        if self.repository is None:
            return True

        try:
            self.repository.save(state.to_dict())
            return True
        except StatePersistError as e:
            self.persist_failures += 1
            self.logger.error(f"{e}; in-memory learning state is kept")
            if self.on_persist_error is not None:
                self.on_persist_error(e)
            return False


__all__ = [
    "FEATURE_FACTORS",
    "DEFAULT_FEATURE_WEIGHTS",
    "MIN_WEIGHT",
    "MAX_WEIGHT",
    "DEFAULT_INTERACTION_LOG_LIMIT",
    "STATE_SCHEMA",
    "clamp_weight",
    "LearningState",
    "JsonStateRepository",
    "LearningStore",
]
