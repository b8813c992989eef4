"""
Per-entity repositories over the shared Database.

Each repository is the narrow interface one component needs. Writes are
single-row inserts/updates or one short transaction; read-then-write races
are resolved by the callers (see forum.recompute_counts).
"""

import json
from typing import Dict, Iterable, List, Optional, Tuple

from .db import Database
from .errors import NotFoundError
from .models import (
    ForumComment,
    ForumPost,
    ForumVote,
    Identity,
    PostCounters,
    RegistrationSession,
    SessionStatus,
    VoteClass,
    VoteDirection,
    WorldIDProof,
)

COUNTER_COLUMNS = (
    "upvote_count",
    "downvote_count",
    "human_upvote_count",
    "human_downvote_count",
    "agent_upvote_count",
    "agent_downvote_count",
    "unique_human_count",
)


def _identity(row) -> Identity:
    return Identity(
        id=row["id"],
        device_id=row["device_id"],
        public_key=row["public_key"],
        nullifier_hash=row["nullifier_hash"],
        merkle_root=row["merkle_root"],
        verification_level=row["verification_level"],
        registration_signature=row["registration_signature"],
        verified=bool(row["verified"]),
        active=bool(row["active"]),
        registered_at=row["registered_at"],
        last_verified_at=row["last_verified_at"],
    )


def _session(row) -> RegistrationSession:
    proof = row["stored_proof"]
    return RegistrationSession(
        session_token=row["session_token"],
        device_id=row["device_id"],
        public_key=row["public_key"],
        signature=row["signature"],
        message=row["message"],
        status=SessionStatus(row["status"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        stored_proof=WorldIDProof.model_validate_json(proof) if proof else None,
        proof_verified=bool(row["proof_verified"]),
        user_agent=row["user_agent"],
    )


def _post(row) -> ForumPost:
    return ForumPost(
        id=row["id"],
        content=row["content"],
        author_public_key=row["author_public_key"],
        author_nullifier_hash=row["author_nullifier_hash"],
        author_device_id=row["author_device_id"],
        author_type=row["author_type"],
        created_at=row["created_at"],
        counters=PostCounters(**{c: row[c] for c in COUNTER_COLUMNS}),
        comment_count=row["comment_count"],
    )


def _vote(row) -> ForumVote:
    return ForumVote(
        id=row["id"],
        post_id=row["post_id"],
        voter_key=row["voter_key"],
        vote_class=VoteClass(row["vote_class"]),
        direction=VoteDirection(row["vote_direction"]),
        voter_nullifier_hash=row["voter_nullifier_hash"],
        voter_public_key=row["voter_public_key"],
    )


def _comment(row) -> ForumComment:
    return ForumComment(
        id=row["id"],
        post_id=row["post_id"],
        content=row["content"],
        author_type=row["author_type"],
        author_public_key=row["author_public_key"],
        author_nullifier_hash=row["author_nullifier_hash"],
        created_at=row["created_at"],
    )


# ============================================================
# Identities
# ============================================================

class IdentityRepository:
    def __init__(self, db: Database):
        self._db = db

    def find_by_public_key(self, public_key: str) -> Optional[Identity]:
        with self._db.reader() as conn:
            row = conn.execute("SELECT * FROM identities WHERE public_key=?", (public_key,)).fetchone()
        return _identity(row) if row else None

    def find_by_device_id(self, device_id: str) -> Optional[Identity]:
        with self._db.reader() as conn:
            row = conn.execute("SELECT * FROM identities WHERE device_id=?", (device_id,)).fetchone()
        return _identity(row) if row else None

    def find_all_by_nullifier(self, nullifier_hash: str) -> List[Identity]:
        """Every key ever bound to this human, newest first."""
        with self._db.reader() as conn:
            rows = conn.execute(
                "SELECT * FROM identities WHERE nullifier_hash=? "
                "ORDER BY registered_at DESC, rowid DESC",
                (nullifier_hash,)
            ).fetchall()
        return [_identity(r) for r in rows]

    def find_active_siblings(self, nullifier_hash: str, public_key: str) -> List[Identity]:
        with self._db.reader() as conn:
            rows = conn.execute(
                "SELECT * FROM identities WHERE nullifier_hash=? AND active=1 AND public_key<>?",
                (nullifier_hash, public_key)
            ).fetchall()
        return [_identity(r) for r in rows]

    def list_verified(self) -> List[Identity]:
        with self._db.reader() as conn:
            rows = conn.execute(
                "SELECT * FROM identities WHERE verified=1 ORDER BY registered_at ASC, rowid ASC"
            ).fetchall()
        return [_identity(r) for r in rows]

    def save_binding(self, identity: Identity, is_new: bool) -> List[Identity]:
        """
        Write a verified binding and deactivate every other active key of
        the same human, in one transaction.

        Returns:
            The identities that were deactivated
        """
        with self._db.transaction() as conn:
            if is_new:
                conn.execute(
                    "INSERT INTO identities(id, device_id, public_key, nullifier_hash, merkle_root, "
                    "verification_level, registration_signature, verified, active, registered_at, "
                    "last_verified_at) VALUES(?,?,?,?,?,?,?,?,?,?,?)",
                    (identity.id, identity.device_id, identity.public_key, identity.nullifier_hash,
                     identity.merkle_root, identity.verification_level, identity.registration_signature,
                     int(identity.verified), int(identity.active), identity.registered_at,
                     identity.last_verified_at)
                )
            else:
                conn.execute(
                    "UPDATE identities SET public_key=?, nullifier_hash=?, merkle_root=?, verification_level=?, "
                    "registration_signature=?, verified=?, active=?, registered_at=?, last_verified_at=? "
                    "WHERE id=?",
                    (identity.public_key, identity.nullifier_hash, identity.merkle_root,
                     identity.verification_level, identity.registration_signature, int(identity.verified),
                     int(identity.active), identity.registered_at, identity.last_verified_at, identity.id)
                )
            rows = conn.execute(
                "SELECT * FROM identities WHERE nullifier_hash=? AND active=1 AND public_key<>?",
                (identity.nullifier_hash, identity.public_key)
            ).fetchall()
            superseded = [_identity(r) for r in rows]
            if superseded:
                conn.execute(
                    "UPDATE identities SET active=0 WHERE nullifier_hash=? AND active=1 AND public_key<>?",
                    (identity.nullifier_hash, identity.public_key)
                )
        for s in superseded:
            s.active = False
        return superseded


# ============================================================
# Registration sessions
# ============================================================

class SessionRepository:
    def __init__(self, db: Database):
        self._db = db

    def insert(self, session: RegistrationSession) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO registration_sessions(session_token, device_id, public_key, signature, "
                "message, status, stored_proof, user_agent, created_at, expires_at) "
                "VALUES(?,?,?,?,?,?,?,?,?,?)",
                (session.session_token, session.device_id, session.public_key, session.signature,
                 session.message, session.status.value, None, session.user_agent,
                 session.created_at, session.expires_at)
            )

    def get(self, session_token: str) -> Optional[RegistrationSession]:
        with self._db.reader() as conn:
            row = conn.execute(
                "SELECT * FROM registration_sessions WHERE session_token=?", (session_token,)
            ).fetchone()
        return _session(row) if row else None

    def mark_expired(self, session_token: str) -> None:
        """Idempotent; completed sessions are never touched."""
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE registration_sessions SET status='expired' "
                "WHERE session_token=? AND status IN ('pending','failed')",
                (session_token,)
            )

    def store_proof(self, session_token: str, proof: WorldIDProof) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE registration_sessions SET stored_proof=?, proof_verified=1 "
                "WHERE session_token=? AND status<>'completed'",
                (proof.model_dump_json(), session_token)
            )

    def mark_failed(self, session_token: str, proof: Optional[WorldIDProof] = None) -> None:
        with self._db.transaction() as conn:
            if proof is None:
                conn.execute(
                    "UPDATE registration_sessions SET status='failed' "
                    "WHERE session_token=? AND status IN ('pending','failed')",
                    (session_token,)
                )
            else:
                conn.execute(
                    "UPDATE registration_sessions SET status='failed', stored_proof=?, proof_verified=0 "
                    "WHERE session_token=? AND status IN ('pending','failed')",
                    (proof.model_dump_json(), session_token)
                )

    def mark_completed(self, session_token: str) -> bool:
        """Returns False if the session was already terminal."""
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE registration_sessions SET status='completed' "
                "WHERE session_token=? AND status IN ('pending','failed')",
                (session_token,)
            )
            return cur.rowcount == 1


# ============================================================
# Forum
# ============================================================

class ForumRepository:
    def __init__(self, db: Database):
        self._db = db

    # -- posts --

    def insert_post(self, post: ForumPost) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO forum_posts(id, content, author_public_key, author_nullifier_hash, "
                "author_device_id, author_type, created_at) VALUES(?,?,?,?,?,?,?)",
                (post.id, post.content, post.author_public_key, post.author_nullifier_hash,
                 post.author_device_id, post.author_type, post.created_at)
            )

    def get_post(self, post_id: str) -> Optional[ForumPost]:
        with self._db.reader() as conn:
            row = conn.execute("SELECT * FROM forum_posts WHERE id=?", (post_id,)).fetchone()
        return _post(row) if row else None

    def require_post(self, post_id: str) -> ForumPost:
        post = self.get_post(post_id)
        if post is None:
            raise NotFoundError("Post not found")
        return post

    def list_posts(self, order_by: str, limit: int, offset: int) -> Tuple[List[ForumPost], int]:
        orderings = {
            "recent": "created_at DESC, rowid DESC",
            "popular": "upvote_count DESC, created_at DESC",
            "humans": "unique_human_count DESC, created_at DESC",
        }
        order = orderings.get(order_by, orderings["recent"])
        with self._db.reader() as conn:
            total = conn.execute("SELECT COUNT(*) AS cnt FROM forum_posts").fetchone()["cnt"]
            rows = conn.execute(
                f"SELECT * FROM forum_posts ORDER BY {order} LIMIT ? OFFSET ?", (limit, offset)
            ).fetchall()
        return [_post(r) for r in rows], total

    def has_human_post(self, nullifier_hash: str) -> bool:
        with self._db.reader() as conn:
            row = conn.execute(
                "SELECT 1 FROM forum_posts WHERE author_nullifier_hash=? AND author_type='human' LIMIT 1",
                (nullifier_hash,)
            ).fetchone()
        return row is not None

    def has_human_footprint(self, nullifier_hash: str) -> bool:
        """A human-class vote, a non-pseudonymous post, or a human comment."""
        with self._db.reader() as conn:
            row = conn.execute(
                "SELECT 1 FROM forum_votes WHERE voter_nullifier_hash=? AND vote_class='human' "
                "UNION ALL "
                "SELECT 1 FROM forum_posts WHERE author_nullifier_hash=? "
                "AND author_nullifier_hash NOT LIKE 'unverified:%' "
                "UNION ALL "
                "SELECT 1 FROM forum_comments WHERE author_nullifier_hash=? AND author_type='human' "
                "LIMIT 1",
                (nullifier_hash, nullifier_hash, nullifier_hash)
            ).fetchone()
        return row is not None

    # -- votes --

    def get_vote(self, post_id: str, voter_key: str, vote_class: VoteClass) -> Optional[ForumVote]:
        with self._db.reader() as conn:
            row = conn.execute(
                "SELECT * FROM forum_votes WHERE post_id=? AND voter_key=? AND vote_class=?",
                (post_id, voter_key, vote_class.value)
            ).fetchone()
        return _vote(row) if row else None

    def insert_vote(self, vote: ForumVote, created_at: int) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO forum_votes(id, post_id, voter_key, vote_class, voter_public_key, "
                "voter_nullifier_hash, vote_direction, created_at) VALUES(?,?,?,?,?,?,?,?)",
                (vote.id, vote.post_id, vote.voter_key, vote.vote_class.value, vote.voter_public_key,
                 vote.voter_nullifier_hash, vote.direction.value, created_at)
            )

    def switch_vote(self, vote_id: str, old: VoteDirection, new: VoteDirection) -> bool:
        """Compare-and-set on direction; False if another request got there first."""
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE forum_votes SET vote_direction=? WHERE id=? AND vote_direction=?",
                (new.value, vote_id, old.value)
            )
            return cur.rowcount == 1

    def has_other_agent_upvote(self, post_id: str, nullifier_hash: str, exclude_vote_id: str) -> bool:
        with self._db.reader() as conn:
            row = conn.execute(
                "SELECT 1 FROM forum_votes WHERE post_id=? AND voter_nullifier_hash=? "
                "AND vote_class='agent' AND vote_direction='up' AND id<>? LIMIT 1",
                (post_id, nullifier_hash, exclude_vote_id)
            ).fetchone()
        return row is not None

    # -- counters --

    def apply_counter_delta(self, post_id: str, delta: Dict[str, int]) -> None:
        """Atomic in-place increments; one UPDATE statement."""
        changes = {k: v for k, v in delta.items() if v}
        if not changes:
            return
        for column in changes:
            if column not in COUNTER_COLUMNS:
                raise ValueError(f"unknown counter {column}")
        assignments = ", ".join(f"{c} = MAX(0, {c} + ?)" for c in changes)
        with self._db.transaction() as conn:
            conn.execute(
                f"UPDATE forum_posts SET {assignments} WHERE id=?",
                (*changes.values(), post_id)
            )

    def aggregate_counts(self, post_id: str) -> PostCounters:
        with self._db.reader() as conn:
            row = conn.execute(
                """
                SELECT
                    COALESCE(SUM(vote_direction='up'), 0) AS upvote_count,
                    COALESCE(SUM(vote_direction='down'), 0) AS downvote_count,
                    COALESCE(SUM(vote_class='human' AND vote_direction='up'), 0) AS human_upvote_count,
                    COALESCE(SUM(vote_class='human' AND vote_direction='down'), 0) AS human_downvote_count,
                    COALESCE(SUM(vote_class='agent' AND vote_direction='up'), 0) AS agent_upvote_count,
                    COALESCE(SUM(vote_class='agent' AND vote_direction='down'), 0) AS agent_downvote_count,
                    COUNT(DISTINCT CASE WHEN vote_class='agent' AND vote_direction='up'
                                        THEN voter_nullifier_hash END) AS unique_human_count
                FROM forum_votes WHERE post_id=?
                """,
                (post_id,)
            ).fetchone()
        return PostCounters(**{c: int(row[c]) for c in COUNTER_COLUMNS})

    def overwrite_counts(self, post_id: str, counters: PostCounters) -> None:
        assignments = ", ".join(f"{c}=?" for c in COUNTER_COLUMNS)
        values = [getattr(counters, c) for c in COUNTER_COLUMNS]
        with self._db.transaction() as conn:
            conn.execute(f"UPDATE forum_posts SET {assignments} WHERE id=?", (*values, post_id))

    # -- comments --

    def insert_comment(self, comment: ForumComment) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO forum_comments(id, post_id, content, author_type, author_public_key, "
                "author_nullifier_hash, created_at) VALUES(?,?,?,?,?,?,?)",
                (comment.id, comment.post_id, comment.content, comment.author_type,
                 comment.author_public_key, comment.author_nullifier_hash, comment.created_at)
            )
            conn.execute(
                "UPDATE forum_posts SET comment_count="
                "(SELECT COUNT(*) FROM forum_comments WHERE post_id=?) WHERE id=?",
                (comment.post_id, comment.post_id)
            )

    def list_comments(self, post_id: str) -> List[ForumComment]:
        with self._db.reader() as conn:
            rows = conn.execute(
                "SELECT * FROM forum_comments WHERE post_id=? ORDER BY created_at ASC, rowid ASC",
                (post_id,)
            ).fetchall()
        return [_comment(r) for r in rows]


# ============================================================
# Nonces, verification logs, handle claims
# ============================================================

class NonceRepository:
    def __init__(self, db: Database):
        self._db = db

    def record(self, public_key: str, nonce: str, expires_at: int, now: int) -> bool:
        """
        Record a nonce for replay protection.
        Returns True if new, False if already seen. Also purges expired nonces.
        """
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM used_nonces WHERE expires_at < ?", (now,))
            cur = conn.execute(
                "INSERT OR IGNORE INTO used_nonces(public_key, nonce, expires_at) VALUES(?,?,?)",
                (public_key, nonce, expires_at)
            )
            return cur.rowcount == 1


class VerificationLogRepository:
    def __init__(self, db: Database):
        self._db = db

    def append(
        self,
        device_id: str,
        public_key: Optional[str],
        message: str,
        signature: str,
        verified: bool,
        identity_id: Optional[str],
        user_agent: Optional[str],
        created_at: int,
        method: str = "signature",
    ) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO verification_logs(device_id, public_key, message, signature, verified, "
                "verification_method, identity_id, user_agent, created_at) VALUES(?,?,?,?,?,?,?,?,?)",
                (device_id, public_key, message, signature, int(verified), method, identity_id,
                 user_agent, created_at)
            )

    def count(self) -> int:
        with self._db.reader() as conn:
            return conn.execute("SELECT COUNT(*) AS cnt FROM verification_logs").fetchone()["cnt"]


class HandleClaimRepository:
    def __init__(self, db: Database):
        self._db = db

    def get(self, nullifier_hash: str) -> Optional[Dict[str, object]]:
        with self._db.reader() as conn:
            row = conn.execute(
                "SELECT handle, claimed_at FROM handle_claims WHERE nullifier_hash=?", (nullifier_hash,)
            ).fetchone()
        return dict(row) if row else None

    def owner_of(self, handle: str) -> Optional[str]:
        with self._db.reader() as conn:
            row = conn.execute(
                "SELECT nullifier_hash FROM handle_claims WHERE handle=?", (handle,)
            ).fetchone()
        return row["nullifier_hash"] if row else None

    def upsert(self, nullifier_hash: str, handle: str, claimed_at: int) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO handle_claims(nullifier_hash, handle, claimed_at) VALUES(?,?,?) "
                "ON CONFLICT(nullifier_hash) DO UPDATE SET handle=excluded.handle, "
                "claimed_at=excluded.claimed_at",
                (nullifier_hash, handle, claimed_at)
            )

    def handles_for(self, nullifier_hashes: Iterable[str]) -> Dict[str, str]:
        keys = list(set(nullifier_hashes))
        if not keys:
            return {}
        placeholders = ",".join("?" for _ in keys)
        with self._db.reader() as conn:
            rows = conn.execute(
                f"SELECT nullifier_hash, handle FROM handle_claims WHERE nullifier_hash IN ({placeholders})",
                keys
            ).fetchall()
        return {r["nullifier_hash"]: r["handle"] for r in rows}
