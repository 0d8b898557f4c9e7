"""
Neo4j Repository - Knowledge base persisted in Neo4j with native vector indexes
for entities, relationships and chunks.

Graph model:
    (:__Entity__ {key, name, entity_type, description, ...})
    (:__Entity__)-[:RELATED {id, description, keywords, weight, ...}]->(:__Entity__)
    (:Chunk {id, content, document_id, order_index, file_path})

Multi-statement writes (merge, rename, create with checks) run inside one
driver write transaction; readers only ever see committed graph states.
Embeddings of rewritten records are refreshed right after the commit.
"""

import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from langchain_neo4j import Neo4jGraph
from langchain_openai import OpenAIEmbeddings
from neo4j import GraphDatabase

from kgrag import config
from kgrag.exceptions import (
    ConflictError,
    EntityExistsError,
    KnowledgeGraphError,
    NotFoundError,
    StoreUnavailableError,
)
from kgrag.models import (
    Chunk,
    Entity,
    MergeResult,
    Relationship,
    canonical_name,
    unique_items,
)
from kgrag.repositories.merge_plan import MergePlan, plan_merge, plan_rename
from kgrag.services.interfaces import IGraphRepository

logger = logging.getLogger(__name__)

ENTITY_PROJECTION = (
    "{.key, .name, .entity_type, .description, .source_chunk_ids, .file_paths, .created_at}"
)
RELATIONSHIP_PROJECTION = (
    "{.id, .description, .keywords, .weight, .source_chunk_ids, .file_paths, .created_at}"
)
CHUNK_PROJECTION = "{.id, .content, .document_id, .order_index, .file_path}"

# Extra candidates fetched from vector indexes so tie-breaks see every tied hit
VECTOR_OVERFETCH = 2

# Relationships among a node list, collected inside the same statement
RELATIONSHIPS_AMONG_NODES = f"""
CALL {{
    WITH nodes
    UNWIND nodes AS a
    MATCH (a)-[r:RELATED]->(b:__Entity__)
    WHERE b IN nodes
    RETURN collect({{rel: r {RELATIONSHIP_PROJECTION}, source: a.name, target: b.name}}) AS relationships
}}
"""


# =============================================================================
# RECORD CONVERSION
# =============================================================================


def entity_from_record(data: Dict[str, Any]) -> Entity:
    return Entity(
        name=data["name"],
        entity_type=data.get("entity_type") or "UNKNOWN",
        description=data.get("description") or "",
        source_chunk_ids=tuple(data.get("source_chunk_ids") or ()),
        file_paths=tuple(data.get("file_paths") or ()),
        created_at=float(data.get("created_at") or 0.0),
    )


def relationship_from_record(data: Dict[str, Any], source: str, target: str) -> Relationship:
    return Relationship(
        source=source,
        target=target,
        description=data.get("description") or "",
        keywords=tuple(data.get("keywords") or ()),
        weight=float(data.get("weight") if data.get("weight") is not None else 1.0),
        source_chunk_ids=tuple(data.get("source_chunk_ids") or ()),
        file_paths=tuple(data.get("file_paths") or ()),
        created_at=float(data.get("created_at") or 0.0),
        id=data["id"],
    )


def chunk_from_record(data: Dict[str, Any]) -> Chunk:
    return Chunk(
        id=data["id"],
        content=data.get("content") or "",
        document_id=data.get("document_id") or "",
        order_index=int(data.get("order_index") or 0),
        file_path=data.get("file_path") or "",
    )


def entity_properties(entity: Entity) -> Dict[str, Any]:
    return {
        "key": entity.key,
        "name": entity.name,
        "entity_type": entity.entity_type,
        "description": entity.description,
        "source_chunk_ids": list(entity.source_chunk_ids),
        "file_paths": list(entity.file_paths),
        "created_at": entity.created_at,
    }


def relationship_row(rel: Relationship) -> Dict[str, Any]:
    return {
        "source_key": rel.source_key,
        "target_key": rel.target_key,
        "props": {
            "id": rel.id,
            "description": rel.description,
            "keywords": list(rel.keywords),
            "weight": rel.weight,
            "source_chunk_ids": list(rel.source_chunk_ids),
            "file_paths": list(rel.file_paths),
            "created_at": rel.created_at,
        },
    }


def _relationships_from_rows(rows: List[Dict[str, Any]]) -> List[Relationship]:
    return [
        relationship_from_record(row["rel"], row["source"], row["target"]) for row in rows
    ]


# =============================================================================
# TRANSACTION FUNCTIONS
# =============================================================================


def _tx_entities(tx, keys: List[str]) -> Dict[str, Entity]:
    rows = tx.run(
        f"""
        UNWIND $keys AS key
        MATCH (n:__Entity__ {{key: key}})
        RETURN n {ENTITY_PROJECTION} AS entity
        """,
        keys=keys,
    ).data()
    entities = [entity_from_record(row["entity"]) for row in rows]
    return {entity.key: entity for entity in entities}


def _tx_incident(tx, keys: List[str]) -> Dict[str, List[Relationship]]:
    rows = tx.run(
        f"""
        UNWIND $keys AS key
        MATCH (n:__Entity__ {{key: key}})-[r:RELATED]-()
        WITH DISTINCT key, r
        RETURN key, r {RELATIONSHIP_PROJECTION} AS rel,
               startNode(r).name AS source, endNode(r).name AS target
        ORDER BY r.created_at, r.id
        """,
        keys=keys,
    ).data()
    incident: Dict[str, List[Relationship]] = {key: [] for key in keys}
    for row in rows:
        incident[row["key"]].append(
            relationship_from_record(row["rel"], row["source"], row["target"])
        )
    return incident


def _tx_write_entity(tx, entity: Entity):
    tx.run(
        "MERGE (n:__Entity__ {key: $key}) SET n += $props",
        key=entity.key,
        props=entity_properties(entity),
    )


def _tx_write_relationships(tx, relationships: List[Relationship]):
    if not relationships:
        return
    tx.run(
        """
        UNWIND $rows AS row
        MATCH (a:__Entity__ {key: row.source_key})
        MATCH (b:__Entity__ {key: row.target_key})
        MERGE (a)-[r:RELATED {id: row.props.id}]->(b)
        SET r += row.props
        """,
        rows=[relationship_row(rel) for rel in relationships],
    )


def _tx_apply_plan(tx, plan: MergePlan):
    if plan.removed_relationship_ids:
        tx.run(
            """
            UNWIND $ids AS id
            MATCH ()-[r:RELATED {id: id}]->()
            DELETE r
            """,
            ids=plan.removed_relationship_ids,
        )
    if plan.removed_keys:
        tx.run(
            """
            UNWIND $keys AS key
            MATCH (n:__Entity__ {key: key})
            DETACH DELETE n
            """,
            keys=plan.removed_keys,
        )
    _tx_write_entity(tx, plan.target)
    _tx_write_relationships(tx, plan.new_relationships)


class Neo4jRepository(IGraphRepository):
    """IGraphRepository backed by Neo4j 5 vector indexes."""

    def __init__(self, embeddings: Optional[OpenAIEmbeddings] = None):
        self._graph: Optional[Neo4jGraph] = None
        self._driver = None
        self._embeddings = embeddings

    # =========================================================================
    # CONNECTION MANAGEMENT
    # =========================================================================

    def _get_graph(self) -> Neo4jGraph:
        """Get or create Neo4j connection with error handling."""
        if self._graph is None:
            try:
                self._graph = Neo4jGraph(
                    url=config.NEO4J_URI,
                    username=config.NEO4J_USERNAME,
                    password=config.NEO4J_PASSWORD,
                    database=config.NEO4J_DATABASE,
                )
            except Exception as e:
                error_msg = str(e)
                if "Unable to retrieve routing information" in error_msg:
                    raise StoreUnavailableError(
                        f"Could not connect to Neo4j at {config.NEO4J_URI}. "
                        "The database may be paused, offline, or the URL is incorrect. "
                        f"Original error: {error_msg}"
                    ) from e
                raise StoreUnavailableError(f"Neo4j connection failed: {error_msg}") from e
        return self._graph

    def _get_driver(self):
        """Driver for explicit write transactions."""
        if self._driver is None:
            self._driver = GraphDatabase.driver(
                config.NEO4J_URI, auth=(config.NEO4J_USERNAME, config.NEO4J_PASSWORD)
            )
        return self._driver

    def _get_embeddings(self) -> OpenAIEmbeddings:
        """Lazy initialization of embeddings model."""
        if self._embeddings is None:
            self._embeddings = OpenAIEmbeddings(
                model=config.EMBEDDING_MODEL, openai_api_key=config.OPENAI_API_KEY
            )
        return self._embeddings

    def verify_connectivity(self) -> bool:
        """Verify Neo4j connection is active, reconnecting if necessary."""
        try:
            if self._graph:
                self._graph.query("RETURN 1")
                return True
        except Exception as e:
            logger.debug("Neo4j ping failed, reconnecting: %s", e)
            self._graph = None

        try:
            self._get_graph()
            return True
        except StoreUnavailableError as e:
            logger.warning("Connection verification failed: %s", e)
            return False

    def close(self):
        if self._driver is not None:
            self._driver.close()
            self._driver = None

    def _query(self, cypher: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        graph = self._get_graph()
        try:
            return graph.query(cypher, params=params or {}) or []
        except Exception as e:
            logger.warning("Neo4j query failed: %s", e)
            raise StoreUnavailableError(f"Neo4j query failed: {e}") from e

    def _write(self, work: Callable):
        """Run ``work(tx)`` in one write transaction and return its result."""
        try:
            with self._get_driver().session(database=config.NEO4J_DATABASE) as session:
                return session.execute_write(work)
        except KnowledgeGraphError:
            raise
        except Exception as e:
            logger.error("Neo4j write transaction failed: %s", e)
            raise StoreUnavailableError(f"Neo4j write failed: {e}") from e

    # =========================================================================
    # EMBEDDINGS
    # =========================================================================

    def _refresh_embeddings(
        self,
        entities: List[Entity] = (),
        relationships: List[Relationship] = (),
        chunks: List[Chunk] = (),
    ):
        """Embed records and store the vectors on their nodes / relationships."""
        texts = (
            [e.embedding_text() for e in entities]
            + [r.embedding_text() for r in relationships]
            + [c.content for c in chunks]
        )
        if not texts:
            return
        vectors = self._get_embeddings().embed_documents(texts)
        entity_vectors = vectors[: len(entities)]
        relationship_vectors = vectors[len(entities) : len(entities) + len(relationships)]
        chunk_vectors = vectors[len(entities) + len(relationships) :]

        if entities:
            self._query(
                """
                UNWIND $data AS item
                MATCH (n:__Entity__ {key: item.key})
                SET n.embedding = item.embedding
                """,
                {
                    "data": [
                        {"key": e.key, "embedding": v}
                        for e, v in zip(entities, entity_vectors)
                    ]
                },
            )
        if relationships:
            self._query(
                """
                UNWIND $data AS item
                MATCH ()-[r:RELATED {id: item.id}]->()
                SET r.embedding = item.embedding
                """,
                {
                    "data": [
                        {"id": r.id, "embedding": v}
                        for r, v in zip(relationships, relationship_vectors)
                    ]
                },
            )
        if chunks:
            self._query(
                """
                UNWIND $data AS item
                MATCH (c:Chunk {id: item.id})
                SET c.embedding = item.embedding
                """,
                {
                    "data": [
                        {"id": c.id, "embedding": v} for c, v in zip(chunks, chunk_vectors)
                    ]
                },
            )

    # =========================================================================
    # SIMILARITY SEARCH
    # =========================================================================

    def search_entities(self, query: str, top_k: int) -> List[Tuple[str, float]]:
        embedding = self._get_embeddings().embed_query(query)
        rows = self._query(
            """
            CALL db.index.vector.queryNodes('entity_embeddings', $fetch_k, $embedding)
            YIELD node, score
            WHERE score >= $threshold
            RETURN node.key AS key, score, COUNT { (node)-[:RELATED]-() } AS degree
            ORDER BY score DESC, degree DESC
            LIMIT $top_k
            """,
            {
                "embedding": embedding,
                "fetch_k": top_k * VECTOR_OVERFETCH,
                "top_k": top_k,
                "threshold": config.COSINE_THRESHOLD,
            },
        )
        return [(row["key"], float(row["score"])) for row in rows]

    def search_relationships(self, query: str, top_k: int) -> List[Tuple[str, float]]:
        embedding = self._get_embeddings().embed_query(query)
        rows = self._query(
            """
            CALL db.index.vector.queryRelationships('relationship_embeddings', $fetch_k, $embedding)
            YIELD relationship, score
            WHERE score >= $threshold
            RETURN relationship.id AS id, score
            ORDER BY score DESC, relationship.weight DESC
            LIMIT $top_k
            """,
            {
                "embedding": embedding,
                "fetch_k": top_k * VECTOR_OVERFETCH,
                "top_k": top_k,
                "threshold": config.COSINE_THRESHOLD,
            },
        )
        return [(row["id"], float(row["score"])) for row in rows]

    def search_chunks(self, query: str, top_k: int) -> List[Tuple[str, float]]:
        embedding = self._get_embeddings().embed_query(query)
        rows = self._query(
            """
            CALL db.index.vector.queryNodes('chunk_embeddings', $top_k, $embedding)
            YIELD node, score
            WHERE score >= $threshold
            RETURN node.id AS id, score
            ORDER BY score DESC
            """,
            {"embedding": embedding, "top_k": top_k, "threshold": config.COSINE_THRESHOLD},
        )
        return [(row["id"], float(row["score"])) for row in rows]

    # =========================================================================
    # GRAPH READS
    # =========================================================================

    def get_entity(self, name: str) -> Optional[Entity]:
        return self.get_entities([name]).get(canonical_name(name))

    def get_entities(self, names: List[str]) -> Dict[str, Entity]:
        keys = list(dict.fromkeys(canonical_name(name) for name in names))
        if not keys:
            return {}
        rows = self._query(
            f"""
            UNWIND $keys AS key
            MATCH (n:__Entity__ {{key: key}})
            RETURN n {ENTITY_PROJECTION} AS entity
            """,
            {"keys": keys},
        )
        entities = [entity_from_record(row["entity"]) for row in rows]
        return {entity.key: entity for entity in entities}

    def entity_degrees(self, names: List[str]) -> Dict[str, int]:
        keys = list(dict.fromkeys(canonical_name(name) for name in names))
        if not keys:
            return {}
        rows = self._query(
            """
            UNWIND $keys AS key
            MATCH (n:__Entity__ {key: key})
            RETURN key, COUNT { (n)-[:RELATED]-() } AS degree
            """,
            {"keys": keys},
        )
        return {row["key"]: int(row["degree"]) for row in rows}

    def get_relationships(self, relationship_ids: List[str]) -> Dict[str, Relationship]:
        if not relationship_ids:
            return {}
        rows = self._query(
            f"""
            UNWIND $ids AS id
            MATCH (a)-[r:RELATED {{id: id}}]->(b)
            RETURN r {RELATIONSHIP_PROJECTION} AS rel, a.name AS source, b.name AS target
            """,
            {"ids": list(relationship_ids)},
        )
        return {rel.id: rel for rel in _relationships_from_rows(rows)}

    def get_incident_relationships(self, names: List[str]) -> Dict[str, List[Relationship]]:
        keys = list(dict.fromkeys(canonical_name(name) for name in names))
        if not keys:
            return {}
        rows = self._query(
            f"""
            UNWIND $keys AS key
            MATCH (n:__Entity__ {{key: key}})
            OPTIONAL MATCH (n)-[r:RELATED]-()
            WITH DISTINCT key, r
            RETURN key,
                   CASE WHEN r IS NULL THEN NULL ELSE r {RELATIONSHIP_PROJECTION} END AS rel,
                   startNode(r).name AS source, endNode(r).name AS target
            ORDER BY r.created_at, r.id
            """,
            {"keys": keys},
        )
        incident: Dict[str, List[Relationship]] = {}
        for row in rows:
            bucket = incident.setdefault(row["key"], [])
            if row["rel"] is not None:
                bucket.append(relationship_from_record(row["rel"], row["source"], row["target"]))
        return incident

    def get_chunks(self, chunk_ids: List[str]) -> Dict[str, Chunk]:
        if not chunk_ids:
            return {}
        rows = self._query(
            f"""
            UNWIND $ids AS id
            MATCH (c:Chunk {{id: id}})
            RETURN c {CHUNK_PROJECTION} AS chunk
            """,
            {"ids": list(chunk_ids)},
        )
        chunks = [chunk_from_record(row["chunk"]) for row in rows]
        return {chunk.id: chunk for chunk in chunks}

    def get_neighborhood(
        self, name: str, max_depth: int
    ) -> Tuple[Dict[str, Entity], List[Relationship]]:
        # Variable-length bounds cannot be parameterized; max_depth is validated upstream
        cypher = f"""
        MATCH (start:__Entity__ {{key: $key}})
        OPTIONAL MATCH (start)-[:RELATED*1..{int(max_depth)}]-(reached:__Entity__)
        WITH start, collect(DISTINCT reached) AS reached
        WITH [start] + [x IN reached WHERE x <> start] AS nodes
        {RELATIONSHIPS_AMONG_NODES}
        RETURN [x IN nodes | x {ENTITY_PROJECTION}] AS entities, relationships
        """
        rows = self._query(cypher, {"key": canonical_name(name)})
        if not rows:
            return {}, []
        entities = [entity_from_record(data) for data in rows[0]["entities"]]
        return (
            {entity.key: entity for entity in entities},
            _relationships_from_rows(rows[0]["relationships"]),
        )

    def get_degree_ranked_subgraph(
        self, max_nodes: int
    ) -> Tuple[List[Entity], List[Relationship], bool]:
        cypher = f"""
        MATCH (n:__Entity__)
        WITH n, COUNT {{ (n)-[:RELATED]-() }} AS degree
        ORDER BY degree DESC, toLower(n.name) ASC, n.key ASC
        WITH collect(n) AS ranked
        WITH ranked[0..$max_nodes] AS nodes, size(ranked) > $max_nodes AS truncated
        {RELATIONSHIPS_AMONG_NODES}
        RETURN [x IN nodes | x {ENTITY_PROJECTION}] AS entities, relationships, truncated
        """
        rows = self._query(cypher, {"max_nodes": max_nodes})
        if not rows:
            return [], [], False
        row = rows[0]
        return (
            [entity_from_record(data) for data in row["entities"]],
            _relationships_from_rows(row["relationships"]),
            bool(row["truncated"]),
        )

    # =========================================================================
    # DISCOVERY
    # =========================================================================

    def list_labels(self) -> List[str]:
        rows = self._query("MATCH (n:__Entity__) RETURN n.name AS name")
        return [row["name"] for row in rows]

    def popular_labels(self, limit: int) -> List[Tuple[str, int]]:
        rows = self._query(
            """
            MATCH (n:__Entity__)
            WITH n.name AS name, COUNT { (n)-[:RELATED]-() } AS degree
            RETURN name, degree
            ORDER BY degree DESC, toLower(name) ASC
            LIMIT $limit
            """,
            {"limit": limit},
        )
        return [(row["name"], int(row["degree"])) for row in rows]

    def entity_exists(self, name: str) -> bool:
        rows = self._query(
            "MATCH (n:__Entity__ {key: $key}) RETURN count(n) > 0 AS found",
            {"key": canonical_name(name)},
        )
        return bool(rows and rows[0]["found"])

    # =========================================================================
    # WRITES
    # =========================================================================

    def create_entity(self, entity: Entity) -> Entity:
        def work(tx):
            if _tx_entities(tx, [entity.key]):
                raise EntityExistsError(f"Entity '{entity.name}' already exists")
            _tx_write_entity(tx, entity)
            return entity

        created = self._write(work)
        self._refresh_embeddings(entities=[created])
        return created

    def update_entity(self, name: str, updates: Dict[str, Any]) -> Entity:
        fields = dict(updates)
        new_name = fields.pop("name", None)
        key = canonical_name(name)

        def work(tx):
            entity = _tx_entities(tx, [key]).get(key)
            if entity is None:
                raise NotFoundError(f"Entity '{name}' not found")

            if new_name is None or new_name == entity.name:
                updated = replace(entity, **fields)
                _tx_write_entity(tx, updated)
                return updated, []

            new_key = canonical_name(new_name)
            if new_key != key and _tx_entities(tx, [new_key]):
                raise EntityExistsError(f"Entity '{new_name}' already exists")
            plan = plan_rename(entity, new_name, _tx_incident(tx, [key]))
            updated = replace(plan.target, **fields)
            plan.target = updated
            _tx_apply_plan(tx, plan)
            return updated, plan.new_relationships

        updated, rewritten = self._write(work)
        self._refresh_embeddings(entities=[updated], relationships=rewritten)
        return updated

    def upsert_entity(self, entity: Entity) -> Entity:
        def work(tx):
            existing = _tx_entities(tx, [entity.key]).get(entity.key)
            merged = entity
            if existing is not None:
                entity_type = existing.entity_type
                if entity_type == "UNKNOWN":
                    entity_type = entity.entity_type
                merged = Entity(
                    name=existing.name,
                    entity_type=entity_type,
                    description="\n".join(
                        unique_items([existing.description, entity.description])
                    ),
                    source_chunk_ids=unique_items(
                        existing.source_chunk_ids, entity.source_chunk_ids
                    ),
                    file_paths=unique_items(existing.file_paths, entity.file_paths),
                    created_at=existing.created_at,
                )
            _tx_write_entity(tx, merged)
            return merged

        merged = self._write(work)
        self._refresh_embeddings(entities=[merged])
        return merged

    def create_relationship(self, relationship: Relationship) -> Relationship:
        def work(tx):
            endpoints = _tx_entities(tx, [relationship.source_key, relationship.target_key])
            missing = [
                name
                for name in (relationship.source, relationship.target)
                if canonical_name(name) not in endpoints
            ]
            if missing:
                raise NotFoundError(
                    f"Relationship endpoint(s) not found: {', '.join(missing)}"
                )
            found = tx.run(
                "MATCH ()-[r:RELATED {id: $id}]->() RETURN count(r) AS n", id=relationship.id
            ).single()
            if found and found["n"]:
                raise ConflictError(
                    f"Relationship {relationship.source} -> {relationship.target} "
                    "with this description already exists"
                )
            rel = replace(
                relationship,
                source=endpoints[relationship.source_key].name,
                target=endpoints[relationship.target_key].name,
            )
            _tx_write_relationships(tx, [rel])
            return rel

        created = self._write(work)
        self._refresh_embeddings(relationships=[created])
        return created

    def update_relationship(self, relationship_id: str, updates: Dict[str, Any]) -> Relationship:
        def work(tx):
            rows = tx.run(
                f"""
                MATCH (a)-[r:RELATED {{id: $id}}]->(b)
                RETURN r {RELATIONSHIP_PROJECTION} AS rel, a.name AS source, b.name AS target
                """,
                id=relationship_id,
            ).data()
            if not rows:
                raise NotFoundError(f"Relationship '{relationship_id}' not found")
            current = _relationships_from_rows(rows)[0]
            updated = replace(current, **updates)
            _tx_write_relationships(tx, [updated])
            return updated

        updated = self._write(work)
        self._refresh_embeddings(relationships=[updated])
        return updated

    def upsert_relationship(self, relationship: Relationship) -> Relationship:
        def work(tx):
            endpoints = _tx_entities(tx, [relationship.source_key, relationship.target_key])
            created_endpoints = []
            for name in (relationship.source, relationship.target):
                if canonical_name(name) not in endpoints:
                    placeholder = Entity(
                        name=" ".join(name.split()),
                        source_chunk_ids=relationship.source_chunk_ids,
                        file_paths=relationship.file_paths,
                    )
                    _tx_write_entity(tx, placeholder)
                    endpoints[placeholder.key] = placeholder
                    created_endpoints.append(placeholder)

            rel = replace(
                relationship,
                source=endpoints[relationship.source_key].name,
                target=endpoints[relationship.target_key].name,
            )
            rows = tx.run(
                f"MATCH ()-[r:RELATED {{id: $id}}]->() RETURN r {RELATIONSHIP_PROJECTION} AS rel",
                id=rel.id,
            ).data()
            if rows:
                existing = relationship_from_record(rows[0]["rel"], rel.source, rel.target)
                rel = replace(
                    existing,
                    keywords=unique_items(existing.keywords, rel.keywords),
                    weight=max(existing.weight, rel.weight),
                    source_chunk_ids=unique_items(
                        existing.source_chunk_ids, rel.source_chunk_ids
                    ),
                    file_paths=unique_items(existing.file_paths, rel.file_paths),
                )
            _tx_write_relationships(tx, [rel])
            return rel, created_endpoints

        rel, created_endpoints = self._write(work)
        self._refresh_embeddings(entities=created_endpoints, relationships=[rel])
        return rel

    def upsert_chunks(self, chunks: List[Chunk]) -> int:
        if not chunks:
            return 0
        self._query(
            """
            UNWIND $rows AS row
            MERGE (c:Chunk {id: row.id})
            SET c += row
            """,
            {
                "rows": [
                    {
                        "id": chunk.id,
                        "content": chunk.content,
                        "document_id": chunk.document_id,
                        "order_index": chunk.order_index,
                        "file_path": chunk.file_path,
                    }
                    for chunk in chunks
                ]
            },
        )
        self._refresh_embeddings(chunks=chunks)
        return len(chunks)

    def merge_entities(self, source_names: List[str], target_name: str) -> MergeResult:
        def work(tx):
            keys = list(
                dict.fromkeys(
                    [canonical_name(target_name)] + [canonical_name(n) for n in source_names]
                )
            )
            entities = _tx_entities(tx, keys)
            incident = _tx_incident(tx, list(entities))
            plan = plan_merge(source_names, target_name, entities, incident)
            if not plan.is_noop:
                _tx_apply_plan(tx, plan)
            return plan

        plan = self._write(work)
        if not plan.is_noop:
            self._refresh_embeddings(entities=[plan.target], relationships=plan.new_relationships)

        return MergeResult(
            target=plan.target,
            merged_sources=plan.merged_sources,
            skipped_sources=plan.skipped_sources,
            relationships_rewritten=plan.relationships_rewritten,
            self_loops_collapsed=plan.self_loops_collapsed,
        )

    # =========================================================================
    # ADMINISTRATION
    # =========================================================================

    def create_indexes(self):
        """Create constraints and vector indexes used by this repository."""
        dimension = config.EMBEDDING_DIMENSION
        vector_options = (
            f"OPTIONS {{indexConfig: {{ `vector.dimensions`: {dimension}, "
            "`vector.similarity_function`: 'cosine' }}"
        )
        index_queries = [
            "CREATE CONSTRAINT entity_key IF NOT EXISTS FOR (n:__Entity__) REQUIRE n.key IS UNIQUE",
            "CREATE CONSTRAINT chunk_id IF NOT EXISTS FOR (c:Chunk) REQUIRE c.id IS UNIQUE",
            "CREATE INDEX related_id IF NOT EXISTS FOR ()-[r:RELATED]-() ON (r.id)",
            f"CREATE VECTOR INDEX entity_embeddings IF NOT EXISTS FOR (n:__Entity__) ON (n.embedding) {vector_options}",
            f"CREATE VECTOR INDEX relationship_embeddings IF NOT EXISTS FOR ()-[r:RELATED]-() ON (r.embedding) {vector_options}",
            f"CREATE VECTOR INDEX chunk_embeddings IF NOT EXISTS FOR (c:Chunk) ON (c.embedding) {vector_options}",
        ]

        graph = self._get_graph()
        for query in index_queries:
            try:
                graph.query(query)
            except Exception as e:
                # Index might already exist or syntax not supported
                if "already exists" not in str(e).lower():
                    logger.warning("Index creation note: %s", e)

        logger.info("Database indexes created/verified")

    def get_statistics(self) -> Dict[str, Any]:
        """Get database statistics."""
        entity_rows = self._query("MATCH (n:__Entity__) RETURN count(n) AS count")
        rel_rows = self._query("MATCH ()-[r:RELATED]->() RETURN count(r) AS count")
        chunk_rows = self._query("MATCH (c:Chunk) RETURN count(c) AS count")
        return {
            "entities": entity_rows[0]["count"] if entity_rows else 0,
            "relationships": rel_rows[0]["count"] if rel_rows else 0,
            "chunks": chunk_rows[0]["count"] if chunk_rows else 0,
        }
