"""Neo4j store for knowledge-graph nodes, evidence, proposals and role policy."""

import logging
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from neo4j import GraphDatabase, ManagedTransaction, Session
from neo4j.exceptions import Neo4jError, ServiceUnavailable

from sidecar.errors import AlreadyReviewed, ProposalNotFound
from sidecar.extraction.models import (
    ConversationTurn,
    ProjectMetadata,
    ReferenceDocument,
    RelatedEntity,
    UserContext,
)
from sidecar.storage.schemas import (
    Evidence,
    KnowledgeGraphNode,
    Proposal,
    ProposalStats,
    ProposalStatus,
    RoleInfo,
    RolePermission,
    SidecarSettings,
    UsageRecord,
    UserRole,
)
from sidecar.utils.config import DatabaseConfig

logger = logging.getLogger(__name__)

NODE_FULLTEXT_INDEX = "knowledge_node_text"
DOCUMENT_FULLTEXT_INDEX = "reference_document_text"


def _fulltext_query(keywords: Sequence[str]) -> str:
    # Keywords are plain \w tokens, so no Lucene escaping is needed.
    return " OR ".join(k for k in keywords if k)


class Neo4jManager:
    """Manager for Neo4j graph database operations.

    Handles connection pooling, schema creation and the reads/writes used by
    the extraction pipeline. Every write that must be atomic runs inside a
    single managed write transaction.

    Attributes:
        uri: Neo4j connection URI
        user: Neo4j username
        password: Neo4j password
        database: Neo4j database name
        driver: Neo4j driver instance
    """

    def __init__(self, config: DatabaseConfig):
        """Initialize Neo4j manager with configuration.

        Args:
            config: Database configuration
        """
        self.uri = config.neo4j_uri
        self.user = config.neo4j_user
        self.password = config.neo4j_password
        self.database = config.neo4j_database
        self.driver = None
        self._connected = False

    def connect(self) -> None:
        """Establish connection to Neo4j database.

        Raises:
            Neo4jError: If connection fails
        """
        try:
            self.driver = GraphDatabase.driver(
                self.uri, auth=(self.user, self.password), max_connection_pool_size=50
            )
            self.driver.verify_connectivity()
            self._connected = True
            logger.info(f"Connected to Neo4j at {self.uri}")
        except (Neo4jError, ServiceUnavailable) as e:
            logger.error(f"Failed to connect to Neo4j: {e}")
            raise

    def close(self) -> None:
        """Close connection to Neo4j database."""
        if self.driver:
            self.driver.close()
            self._connected = False
            logger.info("Closed Neo4j connection")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for Neo4j session.

        Yields:
            Neo4j session instance

        Raises:
            RuntimeError: If not connected to database
        """
        if not self._connected or not self.driver:
            raise RuntimeError("Not connected to Neo4j. Call connect() first.")

        session = self.driver.session(database=self.database)
        try:
            yield session
        finally:
            session.close()

    def create_schema(self) -> None:
        """Create uniqueness constraints and full-text indexes."""
        statements = [
            "CREATE CONSTRAINT knowledge_node_id_unique IF NOT EXISTS "
            "FOR (n:KnowledgeNode) REQUIRE n.id IS UNIQUE",
            "CREATE CONSTRAINT evidence_id_unique IF NOT EXISTS "
            "FOR (e:Evidence) REQUIRE e.id IS UNIQUE",
            "CREATE CONSTRAINT proposal_id_unique IF NOT EXISTS "
            "FOR (p:EntityProposal) REQUIRE p.id IS UNIQUE",
            "CREATE CONSTRAINT project_id_unique IF NOT EXISTS "
            "FOR (p:Project) REQUIRE p.id IS UNIQUE",
            "CREATE INDEX knowledge_node_project IF NOT EXISTS "
            "FOR (n:KnowledgeNode) ON (n.project_id)",
            "CREATE INDEX proposal_project_status IF NOT EXISTS "
            "FOR (p:EntityProposal) ON (p.project_id, p.status)",
            "CREATE INDEX role_permission_lookup IF NOT EXISTS "
            "FOR (r:RolePermission) ON (r.role_id, r.entity_type)",
            f"CREATE FULLTEXT INDEX {NODE_FULLTEXT_INDEX} IF NOT EXISTS "
            "FOR (n:KnowledgeNode) ON EACH [n.title, n.description]",
            f"CREATE FULLTEXT INDEX {DOCUMENT_FULLTEXT_INDEX} IF NOT EXISTS "
            "FOR (d:ReferenceDocument) ON EACH [d.title, d.content]",
        ]
        with self.session() as session:
            for statement in statements:
                try:
                    session.run(statement)
                except Neo4jError as e:
                    logger.warning(f"Could not apply schema statement: {e}")
        logger.info("Neo4j schema ensured")

    # Context reads -------------------------------------------------------

    def get_project_metadata(self, project_id: str) -> Optional[ProjectMetadata]:
        with self.session() as session:
            record = session.run(
                "MATCH (p:Project {id: $project_id}) RETURN p", project_id=project_id
            ).single()
            if not record:
                return None
            return ProjectMetadata(**dict(record["p"]))

    def find_related_entities(
        self, project_id: str, keywords: Sequence[str], *, limit: int = 10
    ) -> List[RelatedEntity]:
        query_text = _fulltext_query(keywords)
        if not query_text:
            return []
        with self.session() as session:
            rows = session.run(
                f"""
                CALL db.index.fulltext.queryNodes('{NODE_FULLTEXT_INDEX}', $query)
                YIELD node, score
                WHERE node.project_id = $project_id AND node.superseded_by IS NULL
                RETURN node, score
                ORDER BY score DESC, node.created_at DESC
                LIMIT $limit
                """,
                query=query_text,
                project_id=project_id,
                limit=limit,
            ).data()

        entities: List[RelatedEntity] = []
        for row in rows:
            node = KnowledgeGraphNode.from_neo4j(row["node"])
            entities.append(
                RelatedEntity(
                    id=node.id,
                    type=node.type,
                    title=str(node.attrs.get("title", "")),
                    description=str(node.attrs.get("description", "")),
                    relevance_score=float(row.get("score") or 0.0),
                    metadata=node.attrs,
                    created_at=node.created_at,
                )
            )
        return entities

    def search_reference_documents(
        self, project_id: str, keywords: Sequence[str], *, limit: int = 5
    ) -> List[ReferenceDocument]:
        query_text = _fulltext_query(keywords)
        if not query_text:
            return []
        with self.session() as session:
            rows = session.run(
                f"""
                CALL db.index.fulltext.queryNodes('{DOCUMENT_FULLTEXT_INDEX}', $query)
                YIELD node, score
                WHERE node.project_id = $project_id
                RETURN node, score
                ORDER BY score DESC, node.created_at DESC
                LIMIT $limit
                """,
                query=query_text,
                project_id=project_id,
                limit=limit,
            ).data()

        return [
            ReferenceDocument(
                id=row["node"]["id"],
                type=row["node"].get("source_type", "document"),
                title=row["node"].get("title", ""),
                content=row["node"].get("content", ""),
                source_url=row["node"].get("url", ""),
                relevance_score=float(row.get("score") or 0.0),
            )
            for row in rows
        ]

    def get_recent_conversation(
        self, source_type: str, project_id: str, *, limit: int = 10
    ) -> List[ConversationTurn]:
        with self.session() as session:
            rows = session.run(
                """
                MATCH (e:Evidence {source_type: $source_type, project_id: $project_id})
                RETURN e
                ORDER BY e.created_at DESC
                LIMIT $limit
                """,
                source_type=source_type,
                project_id=project_id,
                limit=limit,
            ).data()

        turns: List[ConversationTurn] = []
        for row in rows:
            evidence = Evidence.from_neo4j(row["e"])
            turns.append(
                ConversationTurn(
                    id=evidence.id,
                    content=" | ".join(evidence.quotes),
                    source_type=evidence.source_type,
                    created_by=evidence.created_by,
                    created_at=evidence.created_at,
                )
            )
        return turns

    def get_user_context(self, user_id: str, project_id: str) -> Optional[UserContext]:
        with self.session() as session:
            record = session.run(
                """
                MATCH (u:User {id: $user_id})
                OPTIONAL MATCH (u)-[a:HAS_ROLE {project_id: $project_id}]->(r:Role)
                RETURN u, r
                ORDER BY a.is_primary DESC, r.authority_level DESC
                LIMIT 1
                """,
                user_id=user_id,
                project_id=project_id,
            ).single()
        if not record:
            return None

        user = dict(record["u"])
        role = dict(record["r"]) if record["r"] else None
        return UserContext(
            user_id=user["id"],
            username=user.get("username", ""),
            email=user.get("email", ""),
            role_id=role["id"] if role else None,
            role_name=role.get("role_name") if role else None,
            authority_level=role.get("authority_level") if role else None,
        )

    # Role policy ---------------------------------------------------------

    def get_user_role(self, user_id: str, project_id: str) -> Optional[UserRole]:
        with self.session() as session:
            record = session.run(
                """
                MATCH (:User {id: $user_id})-[a:HAS_ROLE {project_id: $project_id}]->(r:Role)
                WHERE coalesce(r.is_active, true)
                  AND (a.valid_to IS NULL OR date(a.valid_to) >= date())
                RETURN r
                ORDER BY a.is_primary DESC, r.authority_level DESC
                LIMIT 1
                """,
                user_id=user_id,
                project_id=project_id,
            ).single()
        if not record:
            return None

        role = dict(record["r"])
        return UserRole(
            user_id=user_id,
            project_id=project_id,
            role_id=role["id"],
            role_name=role.get("role_name", ""),
            authority_level=role.get("authority_level", 1),
        )

    def get_role(self, role_id: str) -> Optional[RoleInfo]:
        with self.session() as session:
            record = session.run("MATCH (r:Role {id: $role_id}) RETURN r", role_id=role_id).single()
        if not record:
            return None
        role = dict(record["r"])
        return RoleInfo(
            id=role["id"],
            role_name=role.get("role_name", ""),
            role_code=role.get("role_code", ""),
            authority_level=role.get("authority_level", 1),
        )

    def get_role_permission(self, role_id: str, entity_type: str) -> Optional[RolePermission]:
        with self.session() as session:
            record = session.run(
                """
                MATCH (p:RolePermission {role_id: $role_id})
                WHERE toLower(p.entity_type) = toLower($entity_type)
                RETURN p
                LIMIT 1
                """,
                role_id=role_id,
                entity_type=entity_type,
            ).single()
        if not record:
            return None
        return RolePermission(**dict(record["p"]))

    def get_sidecar_settings(self, project_id: str) -> Optional[SidecarSettings]:
        with self.session() as session:
            record = session.run(
                "MATCH (s:SidecarSettings {project_id: $project_id}) RETURN s",
                project_id=project_id,
            ).single()
        if not record:
            return None
        props = dict(record["s"])
        props.pop("project_id", None)
        return SidecarSettings(**props)

    # Knowledge graph writes ----------------------------------------------

    @staticmethod
    def _node_properties(node: KnowledgeGraphNode) -> Dict[str, Any]:
        props = node.to_neo4j_dict()
        # Searchable copies for the full-text index.
        props["title"] = str(node.attrs.get("title", ""))
        props["description"] = str(node.attrs.get("description", ""))
        return props

    @staticmethod
    def _write_node_and_evidence(
        tx: ManagedTransaction, node: KnowledgeGraphNode, evidence: Evidence
    ) -> Tuple[str, str]:
        node_props = Neo4jManager._node_properties(node)
        node_props["evidence_id"] = evidence.id
        result = tx.run(
            """
            CREATE (n:KnowledgeNode $node_props)
            CREATE (e:Evidence $evidence_props)
            CREATE (n)-[:SUPPORTED_BY]->(e)
            WITH n, e
            OPTIONAL MATCH (p:Project {id: n.project_id})
            FOREACH (_ IN CASE WHEN p IS NULL THEN [] ELSE [1] END |
                CREATE (n)-[:BELONGS_TO]->(p))
            RETURN n.id AS node_id, e.id AS evidence_id
            """,
            node_props=node_props,
            evidence_props=evidence.to_neo4j_dict(),
        )
        record = result.single()
        return record["node_id"], record["evidence_id"]

    def create_node_with_evidence(
        self, node: KnowledgeGraphNode, evidence: Evidence
    ) -> Tuple[str, str]:
        """Create a knowledge node and its evidence in one write transaction."""
        with self.session() as session:
            node_id, evidence_id = session.execute_write(
                self._write_node_and_evidence, node, evidence
            )
        logger.debug(f"Created {node.type} node {node_id} with evidence {evidence_id}")
        return node_id, evidence_id

    # Proposals -----------------------------------------------------------

    def insert_proposal(self, proposal: Proposal) -> str:
        with self.session() as session:
            record = session.run(
                "CREATE (p:EntityProposal $props) RETURN p.id AS id",
                props=proposal.to_neo4j_dict(),
            ).single()
        logger.debug(f"Inserted proposal {record['id']}")
        return record["id"]

    def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        with self.session() as session:
            record = session.run(
                "MATCH (p:EntityProposal {id: $proposal_id}) RETURN p", proposal_id=proposal_id
            ).single()
        if not record:
            return None
        return Proposal.from_neo4j(dict(record["p"]))

    def update_proposal_status(
        self,
        proposal_id: str,
        status: ProposalStatus,
        reviewer_id: str,
        notes: Optional[str],
    ) -> bool:
        with self.session() as session:
            record = session.run(
                """
                MATCH (p:EntityProposal {id: $proposal_id})
                WHERE p.status = 'pending'
                SET p.status = $status,
                    p.reviewed_by = $reviewer_id,
                    p.review_notes = $notes,
                    p.reviewed_at = $reviewed_at
                RETURN p.id AS id
                """,
                proposal_id=proposal_id,
                status=status.value,
                reviewer_id=reviewer_id,
                notes=notes,
                reviewed_at=datetime.now(UTC).isoformat(),
            ).single()
        return record is not None

    def approve_proposal_with_node(
        self,
        proposal_id: str,
        reviewer_id: str,
        notes: Optional[str],
        node: KnowledgeGraphNode,
        evidence: Evidence,
    ) -> Tuple[str, str]:
        def _approve(tx: ManagedTransaction) -> Tuple[str, str]:
            # Status check and claim in one conditional SET, under the write lock.
            claimed = tx.run(
                """
                MATCH (p:EntityProposal {id: $proposal_id})
                WHERE p.status = 'pending'
                SET p.status = 'approved',
                    p.reviewed_by = $reviewer_id,
                    p.review_notes = $notes,
                    p.reviewed_at = $reviewed_at
                RETURN p.id AS id
                """,
                proposal_id=proposal_id,
                reviewer_id=reviewer_id,
                notes=notes,
                reviewed_at=datetime.now(UTC).isoformat(),
            ).single()
            if claimed is None:
                current = tx.run(
                    "MATCH (p:EntityProposal {id: $proposal_id}) RETURN p.status AS status",
                    proposal_id=proposal_id,
                ).single()
                if current is None:
                    raise ProposalNotFound(proposal_id)
                raise AlreadyReviewed(proposal_id, current["status"])

            node_id, evidence_id = self._write_node_and_evidence(tx, node, evidence)
            tx.run(
                """
                MATCH (p:EntityProposal {id: $proposal_id}), (n:KnowledgeNode {id: $node_id})
                SET p.entity_id = $node_id
                CREATE (p)-[:MATERIALIZED_AS]->(n)
                """,
                proposal_id=proposal_id,
                node_id=node_id,
            )
            return node_id, evidence_id

        with self.session() as session:
            return session.execute_write(_approve)

    def list_proposals(
        self,
        project_id: str,
        *,
        status: Optional[ProposalStatus] = None,
        role_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[Proposal]:
        with self.session() as session:
            rows = session.run(
                """
                MATCH (p:EntityProposal {project_id: $project_id})
                WHERE ($status IS NULL OR p.status = $status)
                  AND ($role_id IS NULL OR p.requires_approval_from = $role_id
                       OR p.requires_approval_from IS NULL)
                RETURN p
                ORDER BY p.created_at DESC
                LIMIT $limit
                """,
                project_id=project_id,
                status=status.value if status else None,
                role_id=role_id,
                limit=limit,
            ).data()
        return [Proposal.from_neo4j(row["p"]) for row in rows]

    def get_proposal_stats(self, project_id: str) -> ProposalStats:
        with self.session() as session:
            record = session.run(
                """
                MATCH (p:EntityProposal {project_id: $project_id})
                RETURN
                    count(CASE WHEN p.status = 'pending' THEN 1 END) AS pending,
                    count(CASE WHEN p.status = 'approved' THEN 1 END) AS approved,
                    count(CASE WHEN p.status = 'rejected' THEN 1 END) AS rejected,
                    count(p) AS total,
                    avg(p.confidence) AS avg_confidence
                """,
                project_id=project_id,
            ).single()
        return ProposalStats(**dict(record)) if record else ProposalStats()

    # Usage ---------------------------------------------------------------

    def record_usage(self, record: UsageRecord) -> str:
        with self.session() as session:
            session.run("CREATE (u:UsageRecord $props)", props=record.to_neo4j_dict())
        return record.id

    def health_check(self) -> bool:
        """Check if Neo4j connection is healthy."""
        try:
            with self.session() as session:
                session.run("RETURN 1").single()
            return True
        except (Neo4jError, RuntimeError) as e:
            logger.error(f"Neo4j health check failed: {e}")
            return False
