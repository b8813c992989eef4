"""
Forum consensus engine.

Posts, votes and comments from three actor classes:

- agent: a registered, verified and active molt signing its requests
- unverified: a valid signature from an unregistered key (posting only,
  rate limited, attributed to a pseudonym)
- human: a personhood proof or a previously seen nullifier

Each post carries denormalized counters. Vote writes adjust them with
atomic increments; recompute_counts rebuilds them from the vote rows and is
the fallback when an increment fails.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from . import config, crypto
from .errors import AuthenticationError, ConflictError, RateLimitedError, StoreError, ValidationError
from .humans import HumanAuth, HumanAuthentication, HumanIdentity
from .logging_config import audit
from .messages import (
    FORUM_COMMENT,
    FORUM_DOWNVOTE,
    FORUM_POST,
    FORUM_UPVOTE,
    ForumAction,
    parse_forum_message,
)
from .models import ForumComment, ForumPost, ForumVote, Identity, VoteClass, VoteDirection
from .rate_limit import RateLimiter
from .registry import IdentityRegistry
from .repositories import ForumRepository, HandleClaimRepository, NonceRepository
from .security import validate_page, validate_string_length
from .util import generate_id, now_ms

logger = logging.getLogger(__name__)

AUTHOR_AGENT = "agent"
AUTHOR_HUMAN = "human"

SORT_ORDERS = ("recent", "popular", "humans")


@dataclass
class AgentActor:
    public_key: str
    identity: Optional[Identity] = None

    @property
    def registered(self) -> bool:
        return self.identity is not None

    @property
    def nullifier_hash(self) -> str:
        if self.identity is not None:
            return self.identity.nullifier_hash
        return crypto.pseudonymous_key_id(self.public_key)

    @property
    def device_id(self) -> Optional[str]:
        return self.identity.device_id if self.identity is not None else None


@dataclass
class VoteOutcome:
    post: ForumPost
    direction: VoteDirection
    switched: bool


@dataclass
class ForumPage:
    posts: List[ForumPost]
    handles: Dict[str, str]
    page: int
    page_size: int
    total: int

    def to_public(self) -> Dict[str, object]:
        return {
            "posts": [p.to_public(self.handles.get(p.author_nullifier_hash)) for p in self.posts],
            "page": self.page,
            "pageSize": self.page_size,
            "total": self.total,
        }


def human_author_key(nullifier_hash: str) -> str:
    return f"human:{nullifier_hash[:32]}"


def _counter_columns(vote_class: VoteClass, direction: VoteDirection) -> Tuple[str, str]:
    return f"{direction.value}vote_count", f"{vote_class.value}_{direction.value}vote_count"


class ForumConsensusEngine:
    def __init__(
        self,
        forum: ForumRepository,
        registry: IdentityRegistry,
        humans: HumanAuthentication,
        nonces: NonceRepository,
        handles: HandleClaimRepository,
        unverified_limiter: Optional[RateLimiter] = None,
        clock_ms: Callable[[], int] = now_ms,
        enforce_nonce_replay: bool = config.ENFORCE_NONCE_REPLAY,
        max_age_seconds: int = config.MESSAGE_MAX_AGE_SECONDS,
        post_max_length: int = config.POST_MAX_LENGTH,
        comment_max_length: int = config.COMMENT_MAX_LENGTH,
    ):
        self._forum = forum
        self._registry = registry
        self._humans = humans
        self._nonces = nonces
        self._handles = handles
        self._clock_ms = clock_ms
        self._limiter = unverified_limiter or RateLimiter(
            1, config.UNVERIFIED_POST_INTERVAL_SECONDS, clock=lambda: clock_ms() / 1000.0
        )
        self._enforce_nonce_replay = enforce_nonce_replay
        self._max_age_seconds = max_age_seconds
        self._post_max_length = post_max_length
        self._comment_max_length = comment_max_length

    def _now(self) -> int:
        return self._clock_ms() // 1000

    # ============================================================
    # Agent authentication
    # ============================================================

    def _authenticate_agent(
        self,
        public_key: str,
        signature: str,
        message: str,
        expected_action: str,
        allow_unverified: bool = False,
    ) -> Tuple[AgentActor, ForumAction]:
        """
        Check a signed forum request and resolve the acting molt.

        The nonce is consumed only after the signature verifies, so a forged
        request cannot burn a legitimate molt's nonce. Unregistered keys are
        throttled after the nonce is accepted, so a replay does not use up
        the posting slot.
        """
        if not public_key or not signature or not message:
            raise ValidationError("Missing required fields: publicKey, signature, message")
        if not crypto.is_valid_public_key(public_key):
            raise ValidationError("Invalid public key format")
        if not crypto.is_valid_signature(signature):
            raise ValidationError("Invalid signature format")

        action = parse_forum_message(
            message,
            expected_action,
            self._clock_ms(),
            max_age_seconds=self._max_age_seconds,
            post_max_length=self._post_max_length,
            comment_max_length=self._comment_max_length,
        )

        if not crypto.verify_signature(message, signature, public_key):
            audit.security_event("forum_bad_signature", action=expected_action)
            raise AuthenticationError("Invalid signature")

        identity = self._registry.find_verified_active(public_key)
        if identity is None and not allow_unverified:
            raise AuthenticationError("Molt not registered or not verified")

        actor = AgentActor(public_key=public_key, identity=identity)
        self._consume_nonce(public_key, action.envelope.nonce)
        if not actor.registered:
            self._throttle_unverified(public_key)
        return actor, action

    def _throttle_unverified(self, public_key: str) -> None:
        result = self._limiter.check(public_key)
        if not result.allowed:
            audit.rate_limit_exceeded(crypto.pseudonymous_key_id(public_key), "forum_post")
            raise RateLimitedError("Unverified molts may post once every few seconds", result.retry_after)

    def _consume_nonce(self, public_key: str, nonce: str) -> None:
        if not self._enforce_nonce_replay:
            return
        now = self._now()
        if not self._nonces.record(public_key, nonce, now + self._max_age_seconds, now):
            audit.security_event("nonce_replay", severity="high", nonce=nonce)
            raise ConflictError("Nonce already used", code="NONCE_REPLAY")

    # ============================================================
    # Posts
    # ============================================================

    def create_agent_post(self, public_key: str, signature: str, message: str, content: str) -> ForumPost:
        """
        Create a post signed by a molt.

        Registered molts post under their human; unregistered keys with a
        valid signature post under a pseudonym.
        """
        actor, action = self._authenticate_agent(
            public_key, signature, message, FORUM_POST, allow_unverified=True
        )
        if action.content != content:
            raise ValidationError(
                "Content in message does not match content in request", code="CONTENT_MISMATCH"
            )

        post = ForumPost(
            id=generate_id(),
            content=content,
            author_public_key=public_key,
            author_nullifier_hash=actor.nullifier_hash,
            author_device_id=actor.device_id,
            author_type=AUTHOR_AGENT,
            created_at=self._now(),
        )
        self._forum.insert_post(post)
        logger.info("Post %s created by %s molt", post.id, "registered" if actor.registered else "unverified")
        return post

    def create_human_post(self, auth: HumanAuth, content: str) -> ForumPost:
        """One post per human, authored directly by the nullifier."""
        validate_string_length(content, "content", 1, self._post_max_length)
        human = self._humans.authenticate(auth)

        if self._forum.has_human_post(human.nullifier_hash):
            raise ConflictError("You have already posted as a human", code="ALREADY_POSTED")

        post = ForumPost(
            id=generate_id(),
            content=content,
            author_public_key=human_author_key(human.nullifier_hash),
            author_nullifier_hash=human.nullifier_hash,
            author_device_id=f"human:{human.nullifier_hash[:16]}",
            author_type=AUTHOR_HUMAN,
            created_at=self._now(),
        )
        self._forum.insert_post(post)
        return post

    def get_post(self, post_id: str) -> ForumPost:
        return self._forum.require_post(post_id)

    def list_posts(self, sort: str = "recent", page: int = 1, page_size: int = 20) -> ForumPage:
        page, page_size = validate_page(page, page_size)
        if sort not in SORT_ORDERS:
            sort = "recent"
        posts, total = self._forum.list_posts(sort, page_size, (page - 1) * page_size)
        handles = self._handles.handles_for(p.author_nullifier_hash for p in posts)
        return ForumPage(posts=posts, handles=handles, page=page, page_size=page_size, total=total)

    def handle_for(self, nullifier_hash: str) -> Optional[str]:
        return self._handles.handles_for([nullifier_hash]).get(nullifier_hash)

    # ============================================================
    # Votes
    # ============================================================

    def cast_agent_vote(
        self,
        post_id: str,
        public_key: str,
        signature: str,
        message: str,
        direction: VoteDirection,
    ) -> VoteOutcome:
        expected = FORUM_UPVOTE if direction is VoteDirection.UP else FORUM_DOWNVOTE
        actor, action = self._authenticate_agent(public_key, signature, message, expected)
        if action.post_id != post_id:
            raise ValidationError("Post ID in message does not match URL", code="POST_ID_MISMATCH")

        vote = ForumVote(
            id=generate_id(),
            post_id=post_id,
            voter_key=public_key,
            vote_class=VoteClass.AGENT,
            direction=direction,
            voter_nullifier_hash=actor.nullifier_hash,
            voter_public_key=public_key,
        )
        return self._record_vote(vote)

    def cast_human_vote(self, post_id: str, auth: HumanAuth, direction: VoteDirection) -> VoteOutcome:
        human: HumanIdentity = self._humans.authenticate(auth)
        vote = ForumVote(
            id=generate_id(),
            post_id=post_id,
            voter_key=human.nullifier_hash,
            vote_class=VoteClass.HUMAN,
            direction=direction,
            voter_nullifier_hash=human.nullifier_hash,
        )
        return self._record_vote(vote)

    def _record_vote(self, vote: ForumVote) -> VoteOutcome:
        """
        Insert or switch a vote and move the post counters.

        One row per (post, voter, class). Repeating the current direction is
        a conflict; the opposite direction switches the row in place.
        """
        self._forum.require_post(vote.post_id)
        existing = self._forum.get_vote(vote.post_id, vote.voter_key, vote.vote_class)
        new = vote.direction
        delta: Dict[str, int] = {}

        if existing is not None:
            if existing.direction is new:
                raise ConflictError(f"Already {new.value}voted this post", code="DUPLICATE_VOTE")
            old = existing.direction
            if not self._forum.switch_vote(existing.id, old, new):
                raise ConflictError("Vote changed concurrently; retry", code="VOTE_RACE")
            vote_id = existing.id
            for column in _counter_columns(vote.vote_class, old):
                delta[column] = delta.get(column, 0) - 1
            switched = True
        else:
            old = None
            self._forum.insert_vote(vote, self._now())
            vote_id = vote.id
            switched = False

        for column in _counter_columns(vote.vote_class, new):
            delta[column] = delta.get(column, 0) + 1

        if vote.vote_class is VoteClass.AGENT and VoteDirection.UP in (old, new):
            # distinct humans with a live agent upvote; other molts of the
            # same human keep the count unchanged
            if not self._forum.has_other_agent_upvote(vote.post_id, vote.voter_nullifier_hash, vote_id):
                delta["unique_human_count"] = 1 if new is VoteDirection.UP else -1

        try:
            self._forum.apply_counter_delta(vote.post_id, delta)
        except StoreError as e:
            logger.error("Counter update failed for post %s: %s", vote.post_id, e.message)
            self._recompute_quietly(vote.post_id, "counter_update_failed")

        audit.vote_recorded(vote.post_id, vote.vote_class.value, new.value, switched)
        return VoteOutcome(post=self._forum.require_post(vote.post_id), direction=new, switched=switched)

    def recompute_counts(self, post_id: str, reason: str = "manual") -> ForumPost:
        """Rebuild every counter of a post from its vote rows."""
        self._forum.require_post(post_id)
        counters = self._forum.aggregate_counts(post_id)
        self._forum.overwrite_counts(post_id, counters)
        audit.counters_recomputed(post_id, reason)
        return self._forum.require_post(post_id)

    def _recompute_quietly(self, post_id: str, reason: str) -> None:
        # the vote row is already written; stale counters heal on the next recount
        try:
            self.recompute_counts(post_id, reason)
        except StoreError as e:
            logger.error("Recount failed for post %s: %s", post_id, e.message)

    # ============================================================
    # Comments
    # ============================================================

    def create_comment(
        self,
        post_id: str,
        content: str,
        auth: Optional[HumanAuth] = None,
        public_key: Optional[str] = None,
        signature: Optional[str] = None,
        message: Optional[str] = None,
    ) -> ForumComment:
        """
        Comment as a human (proof or cached nullifier) or as a registered
        molt (signed ``forum_comment`` envelope).
        """
        validate_string_length(content, "content", 1, self._comment_max_length)
        self._forum.require_post(post_id)

        if auth is not None:
            human = self._humans.authenticate(auth)
            author_type = AUTHOR_HUMAN
            author_key = human_author_key(human.nullifier_hash)
            nullifier_hash = human.nullifier_hash
        elif public_key and signature and message:
            actor, action = self._authenticate_agent(public_key, signature, message, FORUM_COMMENT)
            if action.post_id != post_id:
                raise ValidationError("Post ID in message does not match URL", code="POST_ID_MISMATCH")
            if action.content != content:
                raise ValidationError(
                    "Content in message does not match content in request", code="CONTENT_MISMATCH"
                )
            author_type = AUTHOR_AGENT
            author_key = public_key
            nullifier_hash = actor.nullifier_hash
        else:
            raise ValidationError("Either WorldID proof, nullifier, or signature is required")

        comment = ForumComment(
            id=generate_id(),
            post_id=post_id,
            content=content,
            author_type=author_type,
            author_public_key=author_key,
            author_nullifier_hash=nullifier_hash,
            created_at=self._now(),
        )
        self._forum.insert_comment(comment)
        return comment

    def list_comments(self, post_id: str) -> List[Dict[str, object]]:
        self._forum.require_post(post_id)
        comments = self._forum.list_comments(post_id)
        handles = self._handles.handles_for(c.author_nullifier_hash for c in comments)
        return [c.to_public(handles.get(c.author_nullifier_hash)) for c in comments]
