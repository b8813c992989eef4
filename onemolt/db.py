"""
Database module for the OneMolt registry.

Provides SQLite-based storage for identities, registration sessions,
forum posts, votes, comments, used nonces, verification logs and handle
claims. One Database object is created per process and passed to every
repository; nothing in this module is a global.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Union

from .errors import ConflictError, StoreError

TABLES = [
    "identities",
    "registration_sessions",
    "forum_posts",
    "forum_votes",
    "forum_comments",
    "used_nonces",
    "verification_logs",
    "handle_claims",
]

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS identities (
        id TEXT PRIMARY KEY,
        device_id TEXT NOT NULL UNIQUE,
        public_key TEXT NOT NULL UNIQUE,
        nullifier_hash TEXT NOT NULL,
        merkle_root TEXT,
        verification_level TEXT NOT NULL,
        registration_signature TEXT,
        verified INTEGER NOT NULL DEFAULT 0,
        active INTEGER NOT NULL DEFAULT 0,
        registered_at INTEGER NOT NULL,
        last_verified_at INTEGER NOT NULL
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_identities_nullifier
    ON identities(nullifier_hash, active);""",
    """
    CREATE TABLE IF NOT EXISTS registration_sessions (
        session_token TEXT PRIMARY KEY,
        device_id TEXT NOT NULL,
        public_key TEXT NOT NULL,
        signature TEXT NOT NULL,
        message TEXT NOT NULL,
        status TEXT NOT NULL,
        stored_proof TEXT,
        proof_verified INTEGER NOT NULL DEFAULT 0,
        user_agent TEXT,
        created_at INTEGER NOT NULL,
        expires_at INTEGER NOT NULL
    );""",
    """
    CREATE TABLE IF NOT EXISTS forum_posts (
        id TEXT PRIMARY KEY,
        content TEXT NOT NULL,
        author_public_key TEXT NOT NULL,
        author_nullifier_hash TEXT NOT NULL,
        author_device_id TEXT,
        author_type TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        upvote_count INTEGER NOT NULL DEFAULT 0,
        downvote_count INTEGER NOT NULL DEFAULT 0,
        human_upvote_count INTEGER NOT NULL DEFAULT 0,
        human_downvote_count INTEGER NOT NULL DEFAULT 0,
        agent_upvote_count INTEGER NOT NULL DEFAULT 0,
        agent_downvote_count INTEGER NOT NULL DEFAULT 0,
        unique_human_count INTEGER NOT NULL DEFAULT 0,
        comment_count INTEGER NOT NULL DEFAULT 0
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_forum_posts_author
    ON forum_posts(author_nullifier_hash);""",
    """
    CREATE INDEX IF NOT EXISTS idx_forum_posts_created
    ON forum_posts(created_at);""",
    # voter_key is the public key for agent votes and the nullifier for human votes
    """
    CREATE TABLE IF NOT EXISTS forum_votes (
        id TEXT PRIMARY KEY,
        post_id TEXT NOT NULL,
        voter_key TEXT NOT NULL,
        vote_class TEXT NOT NULL,
        voter_public_key TEXT,
        voter_nullifier_hash TEXT NOT NULL,
        vote_direction TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        UNIQUE (post_id, voter_key, vote_class)
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_forum_votes_nullifier
    ON forum_votes(voter_nullifier_hash, vote_class);""",
    """
    CREATE TABLE IF NOT EXISTS forum_comments (
        id TEXT PRIMARY KEY,
        post_id TEXT NOT NULL,
        content TEXT NOT NULL,
        author_type TEXT NOT NULL,
        author_public_key TEXT NOT NULL,
        author_nullifier_hash TEXT NOT NULL,
        created_at INTEGER NOT NULL
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_forum_comments_post
    ON forum_comments(post_id, created_at);""",
    """
    CREATE TABLE IF NOT EXISTS used_nonces (
        public_key TEXT NOT NULL,
        nonce TEXT NOT NULL,
        expires_at INTEGER NOT NULL,
        PRIMARY KEY (public_key, nonce)
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_used_nonces_expires
    ON used_nonces(expires_at);""",
    """
    CREATE TABLE IF NOT EXISTS verification_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        device_id TEXT NOT NULL,
        public_key TEXT,
        message TEXT NOT NULL,
        signature TEXT NOT NULL,
        verified INTEGER NOT NULL,
        verification_method TEXT NOT NULL,
        identity_id TEXT,
        user_agent TEXT,
        created_at INTEGER NOT NULL
    );""",
    """
    CREATE TABLE IF NOT EXISTS handle_claims (
        nullifier_hash TEXT PRIMARY KEY,
        handle TEXT NOT NULL UNIQUE,
        claimed_at INTEGER NOT NULL
    );""",
]


class Database:
    """
    SQLite store with thread-local connections.

    Connections are reused within the same thread; FastAPI runs sync
    endpoints on a worker pool, so each worker keeps its own connection
    to the same file.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._local = threading.local()

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(self.path), check_same_thread=False, timeout=5.0)
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
                conn.execute("PRAGMA temp_store=MEMORY;")
            except (sqlite3.Error, OSError) as e:
                raise StoreError(f"Unable to open store: {e}") from e
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database transactions.
        Commits on success, rolls back on failure, and translates
        sqlite errors into the registry's error taxonomy.
        """
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise ConflictError(f"Uniqueness violation: {e}") from e
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Store failure: {e}") from e
        except Exception:
            conn.rollback()
            raise

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        """Read-only access with the same error translation."""
        conn = self._get_connection()
        try:
            yield conn
        except sqlite3.Error as e:
            raise StoreError(f"Store failure: {e}") from e

    def init_schema(self) -> None:
        """
        Initialize database schema with indexes.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    def stats(self) -> Dict[str, int]:
        """Get row counts for monitoring."""
        out = {}
        with self.reader() as conn:
            for table in TABLES:
                cur = conn.execute(f"SELECT COUNT(*) AS cnt FROM {table}")
                out[f"{table}_count"] = cur.fetchone()["cnt"]
        return out

    def ping(self) -> bool:
        try:
            with self.reader() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except StoreError:
            return False

    def reset(self) -> None:
        """
        Reset the database for test isolation.
        Clears all tables but preserves schema.
        """
        with self.transaction() as conn:
            for table in TABLES:
                conn.execute(f"DELETE FROM {table}")

    def close(self) -> None:
        """Close the thread-local connection (for cleanup)."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
