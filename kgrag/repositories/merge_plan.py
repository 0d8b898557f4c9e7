"""
Merge planning - computes the post-merge records without touching a store.

Backends read the affected entities and relationships, call ``plan_merge`` or
``plan_rename``, and commit the resulting ``MergePlan`` in one atomic step.
"""

import time
from dataclasses import dataclass, field, replace
from typing import List, Dict, Optional, Set

from kgrag.exceptions import InvalidArgumentError, MergeConflictError, NotFoundError
from kgrag.models import Entity, Relationship, canonical_name, relationship_id, unique_items


@dataclass
class MergePlan:
    target: Optional[Entity]
    removed_keys: List[str] = field(default_factory=list)
    merged_sources: List[str] = field(default_factory=list)
    skipped_sources: List[str] = field(default_factory=list)
    removed_relationship_ids: List[str] = field(default_factory=list)
    new_relationships: List[Relationship] = field(default_factory=list)
    relationships_rewritten: int = 0
    self_loops_collapsed: int = 0

    @property
    def is_noop(self) -> bool:
        return not self.removed_keys and not self.new_relationships


def _join_descriptions(*descriptions: str) -> str:
    return "\n".join(unique_items(descriptions))


def _fold_pair(kept: Relationship, other: Relationship) -> Relationship:
    """Combine two records of the same edge; ``kept`` supplies the metadata."""
    return replace(
        kept,
        keywords=unique_items(kept.keywords, other.keywords),
        weight=max(kept.weight, other.weight),
        source_chunk_ids=unique_items(kept.source_chunk_ids, other.source_chunk_ids),
        file_paths=unique_items(kept.file_paths, other.file_paths),
    )


def _reidentify(rel: Relationship, **changes) -> Relationship:
    """Copy ``rel`` with new fields and the id those fields now imply."""
    moved = replace(rel, **changes)
    return replace(moved, id=relationship_id(moved.source, moved.target, moved.description))


def _rewrite_endpoints(
    relationships: List[Relationship],
    removed_keys: Set[str],
    target: Entity,
    existing: Optional[Dict[str, Relationship]] = None,
) -> Dict[str, object]:
    """
    Point every edge at ``target`` instead of a removed key, collapsing loops.

    Rewritten edges get the id of their new (source, target, description)
    triple. Edges that end up with the same id, including one already held
    by the target in ``existing``, are folded into a single record.
    """
    existing = existing or {}
    rewritten: List[Relationship] = []
    self_loops: List[Relationship] = []

    for rel in relationships:
        new_source = target.name if rel.source_key in removed_keys else rel.source
        new_target = target.name if rel.target_key in removed_keys else rel.target
        if canonical_name(new_source) == target.key and canonical_name(new_target) == target.key:
            self_loops.append(rel)
            continue
        rewritten.append(_reidentify(rel, source=new_source, target=new_target))

    if len(self_loops) == 1:
        rewritten.append(_reidentify(self_loops[0], source=target.name, target=target.name))
    elif self_loops:
        rewritten.append(
            _reidentify(
                self_loops[0],
                source=target.name,
                target=target.name,
                description=_join_descriptions(*(rel.description for rel in self_loops)),
                keywords=unique_items(*(rel.keywords for rel in self_loops)),
                weight=max(rel.weight for rel in self_loops),
                source_chunk_ids=unique_items(
                    *(rel.source_chunk_ids for rel in self_loops)
                ),
                file_paths=unique_items(*(rel.file_paths for rel in self_loops)),
            )
        )

    folded: Dict[str, Relationship] = {}
    for rel in rewritten:
        current = folded.get(rel.id) or existing.get(rel.id)
        folded[rel.id] = rel if current is None else _fold_pair(current, rel)

    return {
        "relationships": list(folded.values()),
        "rewritten": len(relationships) - len(self_loops),
        "self_loops": len(self_loops) if len(self_loops) > 1 else 0,
    }


def _affected_relationships(
    keys: List[str], incident: Dict[str, List[Relationship]]
) -> List[Relationship]:
    seen: Dict[str, Relationship] = {}
    for key in keys:
        for rel in incident.get(key, []):
            seen.setdefault(rel.id, rel)
    return list(seen.values())


def plan_merge(
    source_names: List[str],
    target_name: str,
    entities: Dict[str, Entity],
    incident: Dict[str, List[Relationship]],
) -> MergePlan:
    """
    Plan folding ``source_names`` into ``target_name``.

    Args:
        source_names: Entities to absorb. The target may appear here; it is
            then treated as the surviving entity.
        target_name: Surviving entity, created from the sources if absent.
        entities: Current records for the target and sources (canonical keys).
        incident: Current edges of every source and of the target, keyed by
            canonical name.

    Raises:
        InvalidArgumentError: empty source list or blank target.
        MergeConflictError: the only source is the target itself.
        NotFoundError: neither the target nor any source exists.
    """
    if not str(target_name or "").strip():
        raise InvalidArgumentError("Merge target must be a non-empty name")
    if not source_names:
        raise InvalidArgumentError("Merge requires at least one source entity")

    target_key = canonical_name(target_name)
    source_keys: List[str] = []
    names_by_key: Dict[str, str] = {}
    for name in source_names:
        key = canonical_name(name)
        if not key:
            raise InvalidArgumentError("Merge source names must be non-empty")
        if key != target_key and key not in names_by_key:
            source_keys.append(key)
            names_by_key[key] = str(name).strip()

    if not source_keys:
        raise MergeConflictError(
            f"Cannot merge '{target_name}' into itself: no other source entities given"
        )

    present = [key for key in source_keys if key in entities]
    skipped = [names_by_key[key] for key in source_keys if key not in entities]
    existing_target = entities.get(target_key)

    if not present:
        if existing_target is None:
            raise NotFoundError(
                f"Neither target '{target_name}' nor any source entity exists"
            )
        return MergePlan(target=existing_target, skipped_sources=skipped)

    sources = [entities[key] for key in present]
    base = existing_target or Entity(
        name=str(target_name).strip(),
        entity_type=sources[0].entity_type,
        created_at=time.time(),
    )
    entity_type = base.entity_type
    if not entity_type or entity_type == "UNKNOWN":
        entity_type = next(
            (s.entity_type for s in sources if s.entity_type and s.entity_type != "UNKNOWN"),
            entity_type,
        )

    target = replace(
        base,
        entity_type=entity_type,
        description=_join_descriptions(base.description, *(s.description for s in sources)),
        source_chunk_ids=unique_items(
            base.source_chunk_ids, *(s.source_chunk_ids for s in sources)
        ),
        file_paths=unique_items(base.file_paths, *(s.file_paths for s in sources)),
    )

    affected = _affected_relationships(present, incident)
    affected_ids = {rel.id for rel in affected}
    existing = {
        rel.id: rel for rel in incident.get(target_key, []) if rel.id not in affected_ids
    }
    outcome = _rewrite_endpoints(affected, set(present), target, existing)

    return MergePlan(
        target=target,
        removed_keys=present,
        merged_sources=[s.name for s in sources],
        skipped_sources=skipped,
        removed_relationship_ids=[rel.id for rel in affected],
        new_relationships=outcome["relationships"],
        relationships_rewritten=outcome["rewritten"],
        self_loops_collapsed=outcome["self_loops"],
    )


def plan_rename(
    entity: Entity, new_name: str, incident: Dict[str, List[Relationship]]
) -> MergePlan:
    """Plan renaming ``entity``; the caller has checked ``new_name`` is free."""
    new_name = str(new_name or "").strip()
    if not new_name:
        raise InvalidArgumentError("Entity name must be non-empty")

    renamed = replace(entity, name=new_name)
    affected = _affected_relationships([entity.key], incident)
    outcome = _rewrite_endpoints(affected, {entity.key}, renamed)

    return MergePlan(
        target=renamed,
        removed_keys=[entity.key] if entity.key != renamed.key else [],
        merged_sources=[entity.name],
        removed_relationship_ids=[rel.id for rel in affected],
        new_relationships=outcome["relationships"],
        relationships_rewritten=outcome["rewritten"],
        self_loops_collapsed=outcome["self_loops"],
    )
