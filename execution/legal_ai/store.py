"""
PostgreSQL + pgvector store

Persistence for tenant billing, BYOK credentials, the usage ledger and the
two corpus partitions. Private chunks are isolated per tenant by the WHERE
clause of every query and by a Row-Level Security policy keyed on
app.current_tenant.

Credit consumption is a single conditional UPDATE (compare-and-increment)
committed together with the ledger INSERT, so concurrent calls from one
tenant can never spend more credits than remain.
"""

import os
import logging
from typing import Optional
from dataclasses import dataclass
from datetime import datetime

from .billing import Plan, TenantBillingState, TenantNotResolvedError
from .corpus import CorpusChunk
from .credentials import CredentialRecord
from .ledger import UsageLedgerEntry

try:
    import psycopg2
    import psycopg2.errors
    import psycopg2.extras
    import psycopg2.pool
except ImportError:
    psycopg2 = None  # Will be caught at connect() time

logger = logging.getLogger(__name__)


@dataclass
class StoreConfig:
    """Configuration for the PostgreSQL store."""
    connection_string: Optional[str] = None
    embedding_dimensions: int = 1536
    # Connection pooling settings
    pool_min_connections: int = 2
    pool_max_connections: int = 20
    use_pooling: bool = True  # Set to False for simple single-connection mode
    hnsw_ef_search: int = 40
    # Server-side cap on corpus searches; matches RetrievalConfig.timeout_seconds
    search_timeout_ms: int = 10000


def _vector_literal(embedding: list[float]) -> str:
    """pgvector text representation, e.g. [0.1,0.2,0.3]."""
    return "[" + ",".join(repr(float(x)) for x in embedding) + "]"


class PostgresStore:
    """
    PostgreSQL store with pgvector.

    Features:
    - Atomic trial-credit consumption with ledger append
    - Encrypted credential upsert/delete that keeps has_byok in sync
    - Cosine similarity search over public and tenant-scoped private chunks
    """

    def __init__(self, config: Optional[StoreConfig] = None):
        self.config = config or StoreConfig()
        self._conn = None
        self._pool = None
        self._connection_string = (
            self.config.connection_string or
            os.getenv("POSTGRES_URL") or
            os.getenv("DATABASE_URL") or
            "postgresql://localhost:5432/legal_ai"
        )

    # =========================================================================
    # Connection management
    # =========================================================================

    def connect(self) -> None:
        """Establish database connection (with optional pooling)."""
        try:
            if psycopg2 is None:
                raise ImportError(
                    "psycopg2 not installed. Run: pip install psycopg2-binary"
                )
            from psycopg2.extras import RealDictCursor

            if self.config.use_pooling:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.config.pool_min_connections,
                    maxconn=self.config.pool_max_connections,
                    dsn=self._connection_string,
                    cursor_factory=RealDictCursor,
                )
                logger.info(
                    f"Connection pool initialized (min={self.config.pool_min_connections}, "
                    f"max={self.config.pool_max_connections})"
                )
            else:
                self._conn = psycopg2.connect(
                    self._connection_string,
                    cursor_factory=RealDictCursor,
                )
                self._conn.autocommit = False
                logger.info("Connected to PostgreSQL")
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def _get_connection(self):
        if self._pool:
            return self._pool.getconn()
        if self._conn is None or self._conn.closed:
            self.connect()
        return self._conn

    def _release_connection(self, conn):
        """Release a connection back to the pool (if pooling is enabled)."""
        if self._pool and conn:
            self._pool.putconn(conn)

    def _ensure_connection(self):
        if not self._conn and not self._pool:
            self.connect()
        return self._get_connection()

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def _execute_with_retry(self, operation, label="db_operation"):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.
        """
        for attempt in range(2):
            conn = self._ensure_connection()
            try:
                result = operation(conn)
                self._release_connection(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._release_connection(conn)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    self.connect()
                    continue
                raise
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def close(self) -> None:
        """Close database connection(s)."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")
        if self._conn:
            self._conn.close()
            self._conn = None

    def ping(self) -> bool:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
            conn.rollback()
            return True

        return self._execute_with_retry(_op, "ping")

    # =========================================================================
    # Schema
    # =========================================================================

    def initialize_schema(self) -> None:
        """Create tables, indexes and the ledger immutability trigger."""
        dims = int(self.config.embedding_dimensions)
        plans = ", ".join(f"'{p.value}'" for p in Plan)

        statements = [
            "CREATE EXTENSION IF NOT EXISTS vector",
            f"""
            CREATE TABLE IF NOT EXISTS tenant_billing (
                tenant_id UUID PRIMARY KEY,
                plan TEXT NOT NULL DEFAULT 'FREE' CHECK (plan IN ({plans})),
                max_users INTEGER NOT NULL DEFAULT 1,
                trial_credits_total INTEGER NOT NULL DEFAULT 20,
                trial_credits_used INTEGER NOT NULL DEFAULT 0,
                has_byok BOOLEAN NOT NULL DEFAULT FALSE,
                subscription_valid_until TIMESTAMPTZ,
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                CONSTRAINT trial_credits_in_range
                    CHECK (trial_credits_used >= 0 AND trial_credits_used <= trial_credits_total)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS tenant_members (
                user_id UUID PRIMARY KEY,
                tenant_id UUID NOT NULL REFERENCES tenant_billing(tenant_id),
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS tenant_ai_settings (
                tenant_id UUID PRIMARY KEY REFERENCES tenant_billing(tenant_id),
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                api_key_encrypted TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS ai_usage_log (
                id UUID PRIMARY KEY,
                tenant_id UUID NOT NULL REFERENCES tenant_billing(tenant_id),
                user_id UUID,
                feature TEXT NOT NULL,
                input_tokens INTEGER,
                output_tokens INTEGER,
                credits_used INTEGER NOT NULL CHECK (credits_used IN (0, 1)),
                used_trial BOOLEAN NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_ai_usage_log_tenant ON ai_usage_log (tenant_id, created_at)",
            """
            CREATE OR REPLACE FUNCTION ai_usage_log_append_only() RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION 'ai_usage_log is append-only';
            END;
            $$ LANGUAGE plpgsql
            """,
            "DROP TRIGGER IF EXISTS ai_usage_log_no_mutation ON ai_usage_log",
            """
            CREATE TRIGGER ai_usage_log_no_mutation
                BEFORE UPDATE OR DELETE ON ai_usage_log
                FOR EACH ROW EXECUTE FUNCTION ai_usage_log_append_only()
            """,
            f"""
            CREATE TABLE IF NOT EXISTS rag_public_chunks (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                doc_id UUID NOT NULL,
                chunk_index INTEGER NOT NULL DEFAULT 0,
                title TEXT,
                doc_type TEXT,
                court TEXT,
                url TEXT,
                chunk_text TEXT NOT NULL,
                embedding vector({dims}) NOT NULL
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS rag_private_chunks (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                doc_id UUID NOT NULL,
                tenant_id UUID NOT NULL,
                case_id UUID,
                chunk_index INTEGER NOT NULL DEFAULT 0,
                title TEXT,
                chunk_text TEXT NOT NULL,
                embedding vector({dims}) NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_rag_private_chunks_tenant ON rag_private_chunks (tenant_id)",
            """
            CREATE INDEX IF NOT EXISTS idx_rag_public_chunks_embedding
                ON rag_public_chunks USING hnsw (embedding vector_cosine_ops)
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_rag_private_chunks_embedding
                ON rag_private_chunks USING hnsw (embedding vector_cosine_ops)
            """,
        ]

        def _op(conn):
            with conn.cursor() as cur:
                for statement in statements:
                    cur.execute(statement)
            conn.commit()

        self._execute_with_retry(_op, "initialize_schema")
        logger.info("Schema initialized")

    def enable_rls(self) -> None:
        """
        Enable Row-Level Security on the private corpus.

        Rows are visible only when app.current_tenant matches tenant_id.
        search_private_chunks() sets app.current_tenant for its transaction.
        """
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("ALTER TABLE rag_private_chunks ENABLE ROW LEVEL SECURITY")
                cur.execute("ALTER TABLE rag_private_chunks FORCE ROW LEVEL SECURITY")
                cur.execute("DROP POLICY IF EXISTS tenant_isolation ON rag_private_chunks")
                cur.execute(
                    """
                    CREATE POLICY tenant_isolation ON rag_private_chunks
                        USING (tenant_id = current_setting('app.current_tenant', true)::uuid)
                    """
                )
            conn.commit()

        self._execute_with_retry(_op, "enable_rls")
        logger.info("Row-Level Security enabled on rag_private_chunks")

    # =========================================================================
    # Tenants & billing
    # =========================================================================

    def get_tenant_for_user(self, user_id: str) -> Optional[str]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT tenant_id FROM tenant_members WHERE user_id = %s::uuid",
                    (user_id,),
                )
                row = cur.fetchone()
            conn.rollback()
            return str(row["tenant_id"]) if row else None

        return self._execute_with_retry(_op, "get_tenant_for_user")

    def add_tenant_member(self, tenant_id: str, user_id: str) -> None:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO tenant_members (user_id, tenant_id)
                    VALUES (%s::uuid, %s::uuid)
                    ON CONFLICT (user_id) DO UPDATE SET tenant_id = EXCLUDED.tenant_id
                    """,
                    (user_id, tenant_id),
                )
            conn.commit()

        self._execute_with_retry(_op, "add_tenant_member")

    def get_billing(self, tenant_id: str) -> Optional[TenantBillingState]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM tenant_billing WHERE tenant_id = %s::uuid",
                    (tenant_id,),
                )
                row = cur.fetchone()
            conn.rollback()
            return TenantBillingState.from_row(dict(row)) if row else None

        return self._execute_with_retry(_op, "get_billing")

    def create_billing(self, state: TenantBillingState) -> TenantBillingState:
        """Insert the billing row if missing; return the stored row either way."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO tenant_billing (
                        tenant_id, plan, max_users, trial_credits_total,
                        trial_credits_used, has_byok, subscription_valid_until, is_active
                    ) VALUES (%s::uuid, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (tenant_id) DO NOTHING
                    """,
                    (
                        state.tenant_id,
                        state.plan.value,
                        state.max_users,
                        state.trial_credits_total,
                        state.trial_credits_used,
                        state.has_byok,
                        state.subscription_valid_until,
                        state.is_active,
                    ),
                )
                cur.execute(
                    "SELECT * FROM tenant_billing WHERE tenant_id = %s::uuid",
                    (state.tenant_id,),
                )
                row = cur.fetchone()
            conn.commit()
            return TenantBillingState.from_row(dict(row))

        return self._execute_with_retry(_op, "create_billing")

    def update_plan(
        self,
        tenant_id: str,
        plan: Plan,
        max_users: int,
        subscription_valid_until: Optional[datetime],
    ) -> bool:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE tenant_billing
                    SET plan = %s, max_users = %s, subscription_valid_until = %s,
                        is_active = TRUE, updated_at = NOW()
                    WHERE tenant_id = %s::uuid
                    """,
                    (Plan(plan).value, max_users, subscription_valid_until, tenant_id),
                )
                updated = cur.rowcount > 0
            conn.commit()
            return updated

        return self._execute_with_retry(_op, "update_plan")

    def set_subscription_active(self, tenant_id: str, is_active: bool) -> bool:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE tenant_billing SET is_active = %s, updated_at = NOW() WHERE tenant_id = %s::uuid",
                    (is_active, tenant_id),
                )
                updated = cur.rowcount > 0
            conn.commit()
            return updated

        return self._execute_with_retry(_op, "set_subscription_active")

    # =========================================================================
    # Usage ledger
    # =========================================================================

    _LEDGER_INSERT = """
        INSERT INTO ai_usage_log (
            id, tenant_id, user_id, feature, input_tokens, output_tokens,
            credits_used, used_trial, created_at
        ) VALUES (%s::uuid, %s::uuid, %s::uuid, %s, %s, %s, %s, %s, %s)
    """

    def _ledger_params(self, entry: UsageLedgerEntry) -> tuple:
        return (
            entry.id,
            entry.tenant_id,
            entry.user_id,
            entry.feature.value,
            entry.input_tokens,
            entry.output_tokens,
            entry.credits_used,
            entry.used_trial,
            entry.created_at,
        )

    def _find_ledger_entry(self, cur, entry_id: str) -> Optional[UsageLedgerEntry]:
        cur.execute("SELECT * FROM ai_usage_log WHERE id = %s::uuid", (entry_id,))
        row = cur.fetchone()
        return UsageLedgerEntry.from_row(dict(row)) if row else None

    def append_ledger(self, entry: UsageLedgerEntry) -> UsageLedgerEntry:
        """Append an entry. Re-appending the same entry id is a no-op."""
        def _op(conn):
            with conn.cursor() as cur:
                existing = self._find_ledger_entry(cur, entry.id)
                if existing is not None:
                    conn.rollback()
                    return existing
                cur.execute(self._LEDGER_INSERT, self._ledger_params(entry))
            conn.commit()
            return entry

        return self._execute_with_retry(_op, "append_ledger")

    def consume_trial_credit(self, entry: UsageLedgerEntry) -> Optional[UsageLedgerEntry]:
        """
        Compare-and-increment trial_credits_used and append the ledger entry
        in one transaction.

        Returns:
            The entry, or None if the tenant had no credit left (or no billing row).
            Replaying an entry id that is already stored returns the stored entry
            without charging again.
        """
        def _op(conn):
            with conn.cursor() as cur:
                existing = self._find_ledger_entry(cur, entry.id)
                if existing is not None:
                    conn.rollback()
                    return existing

                cur.execute(
                    """
                    UPDATE tenant_billing
                    SET trial_credits_used = trial_credits_used + 1, updated_at = NOW()
                    WHERE tenant_id = %s::uuid
                      AND trial_credits_used < trial_credits_total
                    RETURNING trial_credits_used, trial_credits_total
                    """,
                    (entry.tenant_id,),
                )
                row = cur.fetchone()
                if row is None:
                    conn.rollback()
                    return None

                cur.execute(self._LEDGER_INSERT, self._ledger_params(entry))
            conn.commit()
            return entry

        return self._execute_with_retry(_op, "consume_trial_credit")

    def list_ledger(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[UsageLedgerEntry]:
        filters = ["tenant_id = %s::uuid"]
        params = [tenant_id]
        if start is not None:
            filters.append("created_at >= %s")
            params.append(start)
        if end is not None:
            filters.append("created_at <= %s")
            params.append(end)

        sql = f"SELECT * FROM ai_usage_log WHERE {' AND '.join(filters)} ORDER BY created_at"

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.rollback()
            return [UsageLedgerEntry.from_row(dict(r)) for r in rows]

        return self._execute_with_retry(_op, "list_ledger")

    # =========================================================================
    # Credentials
    # =========================================================================

    def get_credential(self, tenant_id: str) -> Optional[CredentialRecord]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM tenant_ai_settings WHERE tenant_id = %s::uuid",
                    (tenant_id,),
                )
                row = cur.fetchone()
            conn.rollback()
            return CredentialRecord.from_row(dict(row)) if row else None

        return self._execute_with_retry(_op, "get_credential")

    def upsert_credential(self, record: CredentialRecord) -> None:
        """
        Replace the tenant's credential and set has_byok in one transaction.

        Raises:
            TenantNotResolvedError: If the tenant has no billing record
        """
        def _op(conn):
            with conn.cursor() as cur:
                try:
                    cur.execute(
                        """
                        INSERT INTO tenant_ai_settings (tenant_id, provider, model, api_key_encrypted)
                        VALUES (%s::uuid, %s, %s, %s)
                        ON CONFLICT (tenant_id) DO UPDATE SET
                            provider = EXCLUDED.provider,
                            model = EXCLUDED.model,
                            api_key_encrypted = EXCLUDED.api_key_encrypted,
                            updated_at = NOW()
                        """,
                        (record.tenant_id, record.provider.value, record.model, record.encrypted_secret),
                    )
                except psycopg2.errors.ForeignKeyViolation as e:
                    raise TenantNotResolvedError(
                        f"No billing record for tenant {record.tenant_id}", tenant_id=record.tenant_id
                    ) from e
                cur.execute(
                    "UPDATE tenant_billing SET has_byok = TRUE, updated_at = NOW() WHERE tenant_id = %s::uuid",
                    (record.tenant_id,),
                )
            conn.commit()

        self._execute_with_retry(_op, "upsert_credential")

    def delete_credential(self, tenant_id: str) -> bool:
        """Delete the tenant's credential and clear has_byok in one transaction."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM tenant_ai_settings WHERE tenant_id = %s::uuid",
                    (tenant_id,),
                )
                deleted = cur.rowcount > 0
                cur.execute(
                    "UPDATE tenant_billing SET has_byok = FALSE, updated_at = NOW() WHERE tenant_id = %s::uuid",
                    (tenant_id,),
                )
            conn.commit()
            return deleted

        return self._execute_with_retry(_op, "delete_credential")

    # =========================================================================
    # Corpus search
    # =========================================================================

    def search_public_chunks(self, query_embedding: list[float], limit: int) -> list[tuple[CorpusChunk, float]]:
        """Cosine similarity search over the shared public corpus."""
        vector = _vector_literal(query_embedding)
        sql = """
        SELECT
            c.id AS chunk_id, c.doc_id, c.title, c.doc_type, c.court, c.url, c.chunk_text,
            1 - (c.embedding <=> %s::vector) AS similarity
        FROM rag_public_chunks c
        ORDER BY c.embedding <=> %s::vector
        LIMIT %s
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("SET LOCAL statement_timeout = %s", (int(self.config.search_timeout_ms),))
                cur.execute("SET LOCAL hnsw.ef_search = %s", (self.config.hnsw_ef_search,))
                cur.execute(sql, (vector, vector, limit))
                rows = cur.fetchall()
            conn.rollback()
            return [
                (
                    CorpusChunk(
                        chunk_id=str(row["chunk_id"]),
                        doc_id=str(row["doc_id"]),
                        title=row["title"],
                        doc_type=row["doc_type"],
                        court=row["court"],
                        url=row["url"],
                        text=row["chunk_text"],
                    ),
                    float(row["similarity"]),
                )
                for row in rows
            ]

        return self._execute_with_retry(_op, "search_public_chunks")

    def search_private_chunks(
        self,
        query_embedding: list[float],
        tenant_id: str,
        limit: int,
    ) -> list[tuple[CorpusChunk, float]]:
        """Cosine similarity search over one tenant's private chunks."""
        if not tenant_id:
            raise ValueError("tenant_id is required for private corpus search")

        vector = _vector_literal(query_embedding)
        # Exact scan over the tenant's rows; an HNSW scan filtered afterwards can return too few.
        sql = """
        WITH scoped AS MATERIALIZED (
            SELECT c.id, c.doc_id, c.tenant_id, c.case_id, c.title, c.chunk_text, c.embedding
            FROM rag_private_chunks c
            WHERE c.tenant_id = %s::uuid
        )
        SELECT
            s.id AS chunk_id, s.doc_id, s.tenant_id, s.case_id, s.title, s.chunk_text,
            1 - (s.embedding <=> %s::vector) AS similarity
        FROM scoped s
        ORDER BY s.embedding <=> %s::vector
        LIMIT %s
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("SELECT set_config('app.current_tenant', %s, true)", (str(tenant_id),))
                cur.execute("SET LOCAL statement_timeout = %s", (int(self.config.search_timeout_ms),))
                cur.execute(sql, (tenant_id, vector, vector, limit))
                rows = cur.fetchall()
            conn.rollback()
            return [
                (
                    CorpusChunk(
                        chunk_id=str(row["chunk_id"]),
                        doc_id=str(row["doc_id"]),
                        tenant_id=str(row["tenant_id"]),
                        case_id=str(row["case_id"]) if row["case_id"] else None,
                        title=row["title"],
                        text=row["chunk_text"],
                    ),
                    float(row["similarity"]),
                )
                for row in rows
            ]

        return self._execute_with_retry(_op, "search_private_chunks")


def create_store(backend: Optional[str] = None, config: Optional[StoreConfig] = None):
    """
    Build the configured store.

    Args:
        backend: "postgres" (default) or "memory"; falls back to STORE_BACKEND
    """
    backend = (backend or os.getenv("STORE_BACKEND") or "postgres").lower()
    if backend == "memory":
        from .memory_store import InMemoryStore
        logger.info("Using in-memory store")
        return InMemoryStore()
    if backend != "postgres":
        raise ValueError(f"Unknown store backend: {backend}")

    store = PostgresStore(config)
    store.connect()
    return store


_store = None


def get_store():
    """Get or create the process-wide store instance."""
    global _store
    if _store is None:
        _store = create_store()
    return _store
