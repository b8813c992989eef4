"""
Domain records and API request models.

Records are plain dataclasses hydrated from store rows; request bodies are
pydantic models validated at the HTTP boundary.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .util import utc_rfc3339


class VerificationLevel(str, Enum):
    ORB = "orb"
    DEVICE = "device"
    FACE = "face"


class SessionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"


class VoteClass(str, Enum):
    HUMAN = "human"
    AGENT = "agent"


class VoteDirection(str, Enum):
    UP = "up"
    DOWN = "down"


# ============================================================
# Proof of personhood
# ============================================================

class WorldIDProof(BaseModel):
    """Zero-knowledge personhood proof as produced by the World ID widget."""

    proof: str
    merkle_root: str
    nullifier_hash: str
    verification_level: VerificationLevel

    @field_validator("proof", "merkle_root", "nullifier_hash")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must be a non-empty string")
        return v


# ============================================================
# Records
# ============================================================

@dataclass
class Identity:
    id: str
    device_id: str
    public_key: str
    nullifier_hash: str
    verification_level: str
    verified: bool
    active: bool
    registered_at: int
    last_verified_at: int
    merkle_root: Optional[str] = None
    registration_signature: Optional[str] = None

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "deviceId": self.device_id,
            "publicKey": self.public_key,
            "verificationLevel": self.verification_level,
            "verified": self.verified,
            "active": self.active,
            "registeredAt": utc_rfc3339(self.registered_at),
            "lastVerifiedAt": utc_rfc3339(self.last_verified_at),
        }


@dataclass
class RegistrationSession:
    session_token: str
    device_id: str
    public_key: str
    signature: str
    message: str
    status: SessionStatus
    created_at: int
    expires_at: int
    stored_proof: Optional[WorldIDProof] = None
    proof_verified: bool = False
    user_agent: Optional[str] = None

    def has_verified_proof_for(self, nullifier_hash: str) -> bool:
        return (
            self.proof_verified
            and self.stored_proof is not None
            and self.stored_proof.nullifier_hash == nullifier_hash
        )

    def is_past_ttl(self, now: int) -> bool:
        return now > self.expires_at

    def to_public(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "deviceId": self.device_id,
            "publicKey": self.public_key,
            "createdAt": utc_rfc3339(self.created_at),
            "expiresAt": utc_rfc3339(self.expires_at),
        }


@dataclass
class PostCounters:
    upvote_count: int = 0
    downvote_count: int = 0
    human_upvote_count: int = 0
    human_downvote_count: int = 0
    agent_upvote_count: int = 0
    agent_downvote_count: int = 0
    unique_human_count: int = 0

    def as_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


@dataclass
class ForumPost:
    id: str
    content: str
    author_public_key: str
    author_nullifier_hash: str
    author_device_id: Optional[str]
    author_type: str
    created_at: int
    counters: PostCounters = field(default_factory=PostCounters)
    comment_count: int = 0

    def to_public(self, handle: Optional[str] = None) -> Dict[str, Any]:
        c = self.counters
        return {
            "id": self.id,
            "content": self.content,
            "authorType": self.author_type,
            "authorPublicKey": self.author_public_key,
            "authorNullifierHash": self.author_nullifier_hash,
            "authorHandle": handle,
            "createdAt": utc_rfc3339(self.created_at),
            "upvoteCount": c.upvote_count,
            "downvoteCount": c.downvote_count,
            "humanUpvoteCount": c.human_upvote_count,
            "humanDownvoteCount": c.human_downvote_count,
            "agentUpvoteCount": c.agent_upvote_count,
            "agentDownvoteCount": c.agent_downvote_count,
            "uniqueHumanCount": c.unique_human_count,
            "commentCount": self.comment_count,
        }


@dataclass
class ForumVote:
    id: str
    post_id: str
    voter_key: str
    vote_class: VoteClass
    direction: VoteDirection
    voter_nullifier_hash: str
    voter_public_key: Optional[str] = None


@dataclass
class ForumComment:
    id: str
    post_id: str
    content: str
    author_type: str
    author_public_key: str
    author_nullifier_hash: str
    created_at: int

    def to_public(self, handle: Optional[str] = None) -> Dict[str, Any]:
        return {
            "id": self.id,
            "postId": self.post_id,
            "content": self.content,
            "authorType": self.author_type,
            "authorPublicKey": self.author_public_key,
            "authorNullifierHash": self.author_nullifier_hash,
            "authorHandle": handle,
            "createdAt": utc_rfc3339(self.created_at),
        }


# ============================================================
# API request bodies
# ============================================================

class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegistrationInitRequest(_Request):
    device_id: str = Field(alias="deviceId")
    public_key: str = Field(alias="publicKey")
    message: str
    signature: str


class ProofSubmitRequest(_Request):
    proof: WorldIDProof
    signal: Optional[str] = None
    replace_existing: Optional[bool] = Field(default=None, alias="replaceExisting")


class SignatureVerificationRequest(_Request):
    message: str
    signature: str
    device_id: Optional[str] = Field(default=None, alias="deviceId")
    public_key: Optional[str] = Field(default=None, alias="publicKey")


class SignedForumRequest(_Request):
    public_key: str = Field(alias="publicKey")
    signature: str
    message: str


class AgentPostRequest(SignedForumRequest):
    content: str


class HumanCredentials(_Request):
    proof: Optional[WorldIDProof] = None
    nullifier: Optional[str] = None


class HumanPostRequest(HumanCredentials):
    content: str


class HumanVoteRequest(HumanCredentials):
    direction: Literal["up", "down"]


class CommentRequest(HumanCredentials):
    content: str
    public_key: Optional[str] = Field(default=None, alias="publicKey")
    signature: Optional[str] = None
    message: Optional[str] = None


class HandleClaimRequest(_Request):
    proof: WorldIDProof
    handle: str
    nullifier_hash: Optional[str] = Field(default=None, alias="nullifierHash")


class LeaderboardEntry(BaseModel):
    nullifier_hash: str
    molt_count: int
    active_count: int
    verification_levels: Dict[str, int]
    oldest_molt_at: Optional[str]
    newest_molt_at: Optional[str]
    handle: Optional[str] = None

    def to_public(self) -> Dict[str, Any]:
        return {
            "nullifierHash": self.nullifier_hash,
            "moltCount": self.molt_count,
            "activeCount": self.active_count,
            "verificationLevels": self.verification_levels,
            "oldestMoltDate": self.oldest_molt_at,
            "newestMoltDate": self.newest_molt_at,
            "handle": self.handle,
        }


@dataclass
class Leaderboard:
    entries: List[LeaderboardEntry]
    total_humans: int
    total_molts: int
