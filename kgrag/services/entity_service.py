"""
EntityService - Discovery, curation and merge-of-duplicates for the graph.
"""

import difflib
import logging
import threading
from typing import Any, Dict, List, Optional, Set

from kgrag import config
from kgrag.exceptions import InvalidArgumentError, MergeConflictError, NotFoundError
from kgrag.models import (
    Entity,
    MergeResult,
    Relationship,
    canonical_name,
    unique_items,
)
from kgrag.services.interfaces import IGraphRepository

logger = logging.getLogger(__name__)

ENTITY_EDITABLE_FIELDS = {"name", "entity_type", "description", "source_chunk_ids", "file_paths"}
RELATIONSHIP_EDITABLE_FIELDS = {
    "description",
    "keywords",
    "weight",
    "source_chunk_ids",
    "file_paths",
}


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def _require_name(value: Any, field_name: str = "name") -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgumentError(f"{field_name} must be a non-empty string")
    return " ".join(value.split())


def _string_tuple(value: Any, field_name: str) -> tuple:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, (list, tuple, set)):
        raise InvalidArgumentError(f"{field_name} must be a list of strings")
    if not all(isinstance(item, str) for item in value):
        raise InvalidArgumentError(f"{field_name} must only contain strings")
    return unique_items(value)


def _weight(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidArgumentError("weight must be a number")
    if not 0.0 <= float(value) <= 1.0:
        raise InvalidArgumentError(f"weight must be within [0, 1], got {value}")
    return float(value)


def _positive_limit(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidArgumentError(f"limit must be a positive integer, got {value!r}")
    return value


def _clean_updates(updates: Dict[str, Any], allowed: Set[str]) -> Dict[str, Any]:
    if not isinstance(updates, dict) or not updates:
        raise InvalidArgumentError("updates must be a non-empty mapping")
    unknown = set(updates) - allowed
    if unknown:
        raise InvalidArgumentError(
            f"Cannot update field(s): {', '.join(sorted(unknown))}. "
            f"Editable: {', '.join(sorted(allowed))}"
        )

    cleaned: Dict[str, Any] = {}
    for key, value in updates.items():
        if key == "name":
            cleaned[key] = _require_name(value)
        elif key in ("source_chunk_ids", "file_paths", "keywords"):
            cleaned[key] = _string_tuple(value, key)
        elif key == "weight":
            cleaned[key] = _weight(value)
        elif key == "entity_type":
            cleaned[key] = _require_name(value, "entity_type")
        else:
            if not isinstance(value, str):
                raise InvalidArgumentError(f"{key} must be a string")
            cleaned[key] = value.strip()
    return cleaned


class EntityService:
    """
    Entity reconciliation on top of a graph repository.

    Reads go straight to the store's snapshot. Merges additionally hold a
    claim on every identity they touch, so two merges over overlapping
    entities never run at the same time.
    """

    def __init__(self, repo: IGraphRepository):
        self.repo = repo
        self._claims_lock = threading.Lock()
        self._claimed: Set[str] = set()

    # =========================================================================
    # DISCOVERY
    # =========================================================================

    def list_labels(self) -> List[str]:
        return sorted(self.repo.list_labels(), key=lambda name: (name.casefold(), name))

    def search_labels(self, query: str, limit: int = config.LABEL_SEARCH_LIMIT) -> List[str]:
        """
        Fuzzy label search.

        Ranking: exact match, then prefix, then substring, then edit-distance
        similarity above LABEL_SEARCH_MIN_SIMILARITY. Shorter labels first
        within a tier.
        """
        if not isinstance(query, str):
            raise InvalidArgumentError("query must be a string")
        limit = _positive_limit(limit)
        needle = canonical_name(query)
        if not needle:
            return []

        scored = []
        for label in self.repo.list_labels():
            key = canonical_name(label)
            if key == needle:
                scored.append((0, 0.0, len(key), key, label))
            elif key.startswith(needle):
                scored.append((1, 0.0, len(key), key, label))
            elif needle in key:
                scored.append((2, 0.0, len(key), key, label))
            else:
                ratio = difflib.SequenceMatcher(None, needle, key).ratio()
                if ratio >= config.LABEL_SEARCH_MIN_SIMILARITY:
                    scored.append((3, -ratio, len(key), key, label))

        scored.sort()
        return [item[-1] for item in scored[:limit]]

    def popular_labels(self, limit: int = config.POPULAR_LABELS_LIMIT) -> List[str]:
        """Most connected entity names, highest rank first."""
        limit = _positive_limit(limit)
        return [name for name, _ in self.repo.popular_labels(limit)]

    def entity_exists(self, name: str) -> bool:
        if not isinstance(name, str) or not name.strip():
            return False
        return self.repo.entity_exists(name)

    def get_entity(self, name: str) -> Entity:
        entity = self.repo.get_entity(_require_name(name))
        if entity is None:
            raise NotFoundError(f"Entity '{name}' not found")
        return entity

    # =========================================================================
    # CREATE / EDIT
    # =========================================================================

    def create_entity(
        self,
        name: str,
        entity_type: str = "UNKNOWN",
        description: str = "",
        source_chunk_ids: Optional[List[str]] = None,
        file_paths: Optional[List[str]] = None,
    ) -> Entity:
        """Create an entity; EntityExistsError if the identity is taken."""
        entity = Entity(
            name=_require_name(name),
            entity_type=_require_name(entity_type, "entity_type"),
            description=(description or "").strip(),
            source_chunk_ids=_string_tuple(source_chunk_ids, "source_chunk_ids"),
            file_paths=_string_tuple(file_paths, "file_paths"),
        )
        created = self.repo.create_entity(entity)
        logger.info("Created entity '%s'", created.name)
        return created

    def edit_entity(self, name: str, updates: Dict[str, Any]) -> Entity:
        """
        Update entity fields. A ``name`` update renames the entity and
        rewrites its relationships; EntityExistsError if the new name is taken.
        """
        name = _require_name(name)
        cleaned = _clean_updates(updates, ENTITY_EDITABLE_FIELDS)
        updated = self.repo.update_entity(name, cleaned)
        logger.info("Updated entity '%s' (%s)", updated.name, ", ".join(sorted(cleaned)))
        return updated

    def create_relationship(
        self,
        source: str,
        target: str,
        description: str = "",
        keywords: Optional[List[str]] = None,
        weight: float = 1.0,
        source_chunk_ids: Optional[List[str]] = None,
        file_paths: Optional[List[str]] = None,
    ) -> Relationship:
        """Connect two existing entities; NotFoundError if an endpoint is missing."""
        relationship = Relationship(
            source=_require_name(source, "source"),
            target=_require_name(target, "target"),
            description=(description or "").strip(),
            keywords=_string_tuple(keywords, "keywords"),
            weight=_weight(weight),
            source_chunk_ids=_string_tuple(source_chunk_ids, "source_chunk_ids"),
            file_paths=_string_tuple(file_paths, "file_paths"),
        )
        created = self.repo.create_relationship(relationship)
        logger.info("Created relationship %s (%s -> %s)", created.id, created.source, created.target)
        return created

    def edit_relationship(self, relationship_id: str, updates: Dict[str, Any]) -> Relationship:
        relationship_id = _require_name(relationship_id, "relationship_id")
        cleaned = _clean_updates(updates, RELATIONSHIP_EDITABLE_FIELDS)
        return self.repo.update_relationship(relationship_id, cleaned)

    # =========================================================================
    # MERGE
    # =========================================================================

    def merge_entities(self, source_names: List[str], target_name: str) -> MergeResult:
        """
        Fold duplicate entities into one.

        A target that also appears among the sources survives. Sources that
        no longer exist are skipped, so repeating a merge is a no-op.

        Raises:
            InvalidArgumentError: empty or malformed source list
            MergeConflictError: the target is the only source, or another merge
                touching the same entities is in progress
            NotFoundError: neither the target nor any source exists
        """
        target_name = _require_name(target_name, "target_name")
        if isinstance(source_names, str) or not isinstance(source_names, (list, tuple)):
            raise InvalidArgumentError("source_names must be a list of entity names")
        if not source_names:
            raise InvalidArgumentError("Merge requires at least one source entity")
        sources = [_require_name(name, "source name") for name in source_names]

        claim = {canonical_name(target_name)} | {canonical_name(name) for name in sources}
        with self._claims_lock:
            overlap = claim & self._claimed
            if overlap:
                raise MergeConflictError(
                    f"Another merge is in progress for: {', '.join(sorted(overlap))}"
                )
            self._claimed |= claim

        try:
            result = self.repo.merge_entities(sources, target_name)
        finally:
            with self._claims_lock:
                self._claimed -= claim

        if result.is_noop:
            logger.info(
                "Merge into '%s' was a no-op (absent sources: %s)",
                result.target.name,
                ", ".join(result.skipped_sources) or "none",
            )
        else:
            logger.info(
                "Merged %s into '%s': %d relationship(s) rewritten, %d self-loop(s) collapsed",
                ", ".join(result.merged_sources),
                result.target.name,
                result.relationships_rewritten,
                result.self_loops_collapsed,
            )
        return result
