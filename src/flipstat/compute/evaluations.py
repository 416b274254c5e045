# src/flipstat/compute/evaluations.py
"""User quality evaluations for sold objects.

Each evaluated object carries one tag; each tag carries a weight used by the
reference price calculation. Objects without a tag are left out of pricing.
"""

import logging
import threading
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

FLIPPING = 'flipping'
DESIGNER_RENOVATION = 'designer_renovation'
EURO_RENOVATION = 'euro_renovation'

DEFAULT_WEIGHTS: Dict[str, float] = {
    FLIPPING: 1.0,
    DESIGNER_RENOVATION: 0.9,
    EURO_RENOVATION: 0.8,
}


class UnknownEvaluationTagError(KeyError):
    """Raised for a tag that has no entry in the weight table."""

    def __init__(self, tag: str):
        super().__init__(tag)
        self.tag = tag

    def __str__(self) -> str:
        return f"No weight configured for evaluation tag '{self.tag}'"


def load_weights_from_config(config: dict) -> Dict[str, float]:
    """
    Load the evaluation weight table from a config dictionary.

    Args:
        config: Parsed config.yml dictionary

    Returns:
        Dict mapping tag -> weight (defaults when the section is absent)
    """
    weights_config = config.get('weights', {})
    if not weights_config:
        return dict(DEFAULT_WEIGHTS)
    return {str(tag): float(weight) for tag, weight in weights_config.items()}


def _validate_weights(weights: Mapping[str, float]) -> Dict[str, float]:
    if not weights:
        raise ValueError("Weight table is empty")
    for tag, weight in weights.items():
        if weight <= 0:
            raise ValueError(f"Weight for '{tag}' must be positive, got {weight}")
    return dict(weights)


class EvaluationSnapshot:
    """Read-only view of the store taken at the start of a computation pass."""

    def __init__(self, tags: Mapping[str, str], weights: Mapping[str, float]):
        self._tags = MappingProxyType(dict(tags))
        self._weights = MappingProxyType(dict(weights))

    def get(self, object_id: str) -> Optional[str]:
        return self._tags.get(object_id)

    def weight_of(self, tag: str) -> float:
        try:
            return self._weights[tag]
        except KeyError:
            raise UnknownEvaluationTagError(tag) from None

    def __len__(self) -> int:
        return len(self._tags)

    def __contains__(self, object_id: object) -> bool:
        return object_id in self._tags


class EvaluationStore:
    """In-memory map of object id -> evaluation tag, safe to write concurrently."""

    def __init__(
        self,
        weights: Optional[Mapping[str, float]] = None,
        tags: Optional[Mapping[str, str]] = None,
    ):
        self._weights = _validate_weights(weights if weights is not None else DEFAULT_WEIGHTS)
        self._tags: Dict[str, str] = {}
        self._lock = threading.Lock()
        for object_id, tag in (tags or {}).items():
            self.set(object_id, tag)

    @property
    def weights(self) -> Mapping[str, float]:
        return MappingProxyType(self._weights)

    def get(self, object_id: str) -> Optional[str]:
        with self._lock:
            return self._tags.get(object_id)

    def set(self, object_id: str, tag: str) -> None:
        """Tag an object. Unknown tags are rejected."""
        if tag not in self._weights:
            raise UnknownEvaluationTagError(tag)
        with self._lock:
            self._tags[str(object_id)] = tag
        logger.debug(f"Evaluated object {object_id} as {tag}")

    def remove(self, object_id: str) -> bool:
        """Drop an object's evaluation. Returns True if one existed."""
        with self._lock:
            return self._tags.pop(str(object_id), None) is not None

    def weight_of(self, tag: str) -> float:
        try:
            return self._weights[tag]
        except KeyError:
            raise UnknownEvaluationTagError(tag) from None

    def items(self) -> Iterable[Tuple[str, str]]:
        with self._lock:
            return list(self._tags.items())

    def snapshot(self) -> EvaluationSnapshot:
        """Copy the tags once so a computation pass sees a consistent view."""
        with self._lock:
            return EvaluationSnapshot(self._tags, self._weights)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tags)
