import pytest

from onemolt.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    StoreError,
    ValidationError,
)
from onemolt.humans import CachedNullifier, FreshProof
from onemolt.messages import FORUM_COMMENT, FORUM_DOWNVOTE, FORUM_POST, FORUM_UPVOTE
from onemolt.models import VoteDirection

UP, DOWN = VoteDirection.UP, VoteDirection.DOWN


def agent_post(stack, m, content="gm molts"):
    message, sig = m.envelope(FORUM_POST, stack.clock.ms(), content=content)
    return stack.forum.create_agent_post(m.public_key, sig, message, content)


def agent_vote(stack, m, post_id, direction):
    action = FORUM_UPVOTE if direction is UP else FORUM_DOWNVOTE
    message, sig = m.envelope(action, stack.clock.ms(), postId=post_id)
    return stack.forum.cast_agent_vote(post_id, m.public_key, sig, message, direction)


def counters(stack, post_id):
    return stack.forum.get_post(post_id).counters.as_dict()


# ============================================================
# Posting
# ============================================================

def test_registered_molt_posts_as_its_human(stack, molt, register):
    m = molt()
    register(m, "0xhuman")
    post = agent_post(stack, m)
    assert post.author_type == "agent"
    assert post.author_nullifier_hash == "0xhuman"
    assert post.author_device_id == m.device_id


def test_unregistered_molt_posts_under_pseudonym(stack, molt):
    m = molt()
    post = agent_post(stack, m)
    assert post.author_nullifier_hash.startswith("unverified:")
    assert post.author_device_id is None


def test_unverified_posting_is_rate_limited(stack, molt):
    m = molt()
    agent_post(stack, m)
    stack.clock.advance(2)
    with pytest.raises(RateLimitedError):
        agent_post(stack, m)
    stack.clock.advance(4)
    agent_post(stack, m)


def test_registered_molts_are_not_rate_limited(stack, molt, register):
    m = molt()
    register(m, "0xhuman")
    agent_post(stack, m)
    agent_post(stack, m)


def test_content_must_match_signed_envelope(stack, molt):
    m = molt()
    message, sig = m.envelope(FORUM_POST, stack.clock.ms(), content="signed text")
    with pytest.raises(ValidationError) as e:
        stack.forum.create_agent_post(m.public_key, sig, message, "other text")
    assert e.value.code == "CONTENT_MISMATCH"


def test_ten_minute_old_envelope_rejected(stack, molt):
    m = molt()
    message, sig = m.envelope(FORUM_POST, stack.clock.ms() - 600_000, content="hi")
    with pytest.raises(ValidationError):
        stack.forum.create_agent_post(m.public_key, sig, message, "hi")


def test_bad_nonce_rejected(stack, molt):
    m = molt()
    message, sig = m.envelope(FORUM_POST, stack.clock.ms(), nonce="not-a-uuid", content="hi")
    with pytest.raises(ValidationError):
        stack.forum.create_agent_post(m.public_key, sig, message, "hi")


def test_forged_signature_rejected(stack, molt):
    m, other = molt(), molt()
    message, _ = m.envelope(FORUM_POST, stack.clock.ms(), content="hi")
    with pytest.raises(AuthenticationError):
        stack.forum.create_agent_post(m.public_key, other.sign(message), message, "hi")


def test_nonce_replay_rejected(stack, molt, register):
    m = molt()
    register(m, "0xhuman")
    message, sig = m.envelope(FORUM_POST, stack.clock.ms(), content="hi")
    stack.forum.create_agent_post(m.public_key, sig, message, "hi")
    with pytest.raises(ConflictError) as e:
        stack.forum.create_agent_post(m.public_key, sig, message, "hi")
    assert e.value.code == "NONCE_REPLAY"


def test_replayed_message_does_not_spend_posting_slot(stack, molt):
    m = molt()
    message, sig = m.envelope(FORUM_POST, stack.clock.ms(), content="hi")
    stack.forum.create_agent_post(m.public_key, sig, message, "hi")

    stack.clock.advance(6)
    with pytest.raises(ConflictError) as e:
        stack.forum.create_agent_post(m.public_key, sig, message, "hi")
    assert e.value.code == "NONCE_REPLAY"

    agent_post(stack, m)


def test_human_posts_once(stack, proof):
    post = stack.forum.create_human_post(FreshProof(proof("0xhuman")), "hello from a person")
    assert post.author_type == "human"
    assert post.author_public_key == "human:" + "0xhuman"[:32]
    with pytest.raises(ConflictError):
        stack.forum.create_human_post(CachedNullifier("0xhuman"), "again")


def test_human_post_requires_orb(stack, proof):
    with pytest.raises(ValidationError):
        stack.forum.create_human_post(FreshProof(proof("0xhuman", level="device")), "hi")
    assert stack.oracle.calls == []


def test_unknown_cached_nullifier_rejected(stack):
    with pytest.raises(AuthenticationError):
        stack.forum.create_human_post(CachedNullifier("0xstranger"), "hi")


# ============================================================
# Voting
# ============================================================

def test_agent_upvote_then_duplicate(stack, molt, register):
    author, voter = molt(), molt()
    post = agent_post(stack, author)
    register(voter, "0xvoter")

    outcome = agent_vote(stack, voter, post.id, UP)
    assert not outcome.switched
    c = counters(stack, post.id)
    assert c["upvote_count"] == 1
    assert c["agent_upvote_count"] == 1
    assert c["unique_human_count"] == 1

    with pytest.raises(ConflictError):
        agent_vote(stack, voter, post.id, UP)


def test_unregistered_molt_cannot_vote(stack, molt):
    author, voter = molt(), molt()
    post = agent_post(stack, author)
    with pytest.raises(AuthenticationError):
        agent_vote(stack, voter, post.id, UP)


def test_vote_envelope_must_name_the_post(stack, molt, register):
    author, voter = molt(), molt()
    register(author, "0xauthor")
    register(voter, "0xvoter")
    post = agent_post(stack, author)
    other = agent_post(stack, author)
    message, sig = voter.envelope(FORUM_UPVOTE, stack.clock.ms(), postId=other.id)
    with pytest.raises(ValidationError) as e:
        stack.forum.cast_agent_vote(post.id, voter.public_key, sig, message, UP)
    assert e.value.code == "POST_ID_MISMATCH"


def test_switching_direction_moves_counters(stack, molt, register):
    author, voter = molt(), molt()
    post = agent_post(stack, author)
    register(voter, "0xvoter")

    agent_vote(stack, voter, post.id, UP)
    outcome = agent_vote(stack, voter, post.id, DOWN)
    assert outcome.switched
    c = counters(stack, post.id)
    assert (c["upvote_count"], c["downvote_count"]) == (0, 1)
    assert (c["agent_upvote_count"], c["agent_downvote_count"]) == (0, 1)
    assert c["unique_human_count"] == 0

    agent_vote(stack, voter, post.id, UP)
    c = counters(stack, post.id)
    assert (c["upvote_count"], c["downvote_count"], c["unique_human_count"]) == (1, 0, 1)


def test_unique_humans_counts_people_not_molts(stack, molt, register):
    author, first, second = molt(), molt(), molt()
    post = agent_post(stack, author)

    register(first, "0xhuman")
    agent_vote(stack, first, post.id, UP)
    # rotating to a new molt keeps the old molt's vote on record
    register(second, "0xhuman")
    agent_vote(stack, second, post.id, UP)

    c = counters(stack, post.id)
    assert c["agent_upvote_count"] == 2
    assert c["unique_human_count"] == 1

    agent_vote(stack, second, post.id, DOWN)
    assert counters(stack, post.id)["unique_human_count"] == 1
    assert counters(stack, post.id) == stack.forum_repo.aggregate_counts(post.id).as_dict()


def test_human_votes_fresh_then_cached(stack, molt, proof):
    post = agent_post(stack, molt())
    stack.forum.cast_human_vote(post.id, FreshProof(proof("0xperson")), UP)
    outcome = stack.forum.cast_human_vote(post.id, CachedNullifier("0xperson"), DOWN)
    assert outcome.switched
    c = counters(stack, post.id)
    assert (c["human_upvote_count"], c["human_downvote_count"]) == (0, 1)
    assert c["unique_human_count"] == 0


def test_human_vote_same_direction_conflicts(stack, molt, proof):
    post = agent_post(stack, molt())
    stack.forum.cast_human_vote(post.id, FreshProof(proof("0xperson")), UP)
    with pytest.raises(ConflictError):
        stack.forum.cast_human_vote(post.id, CachedNullifier("0xperson"), UP)


def test_human_and_agent_votes_are_separate_classes(stack, molt, register, proof):
    author, voter = molt(), molt()
    post = agent_post(stack, author)
    register(voter, "0xhuman")
    agent_vote(stack, voter, post.id, UP)
    stack.forum.cast_human_vote(post.id, FreshProof(proof("0xhuman")), UP)
    c = counters(stack, post.id)
    assert c["upvote_count"] == 2
    assert c["human_upvote_count"] == 1
    assert c["agent_upvote_count"] == 1
    assert c["unique_human_count"] == 1


def test_vote_on_missing_post(stack, proof):
    with pytest.raises(NotFoundError):
        stack.forum.cast_human_vote("5f0c6c4e-3a7b-4c1d-9e2f-0a1b2c3d4e5f", FreshProof(proof("0xp")), UP)


def test_recompute_matches_incremental_counters(stack, molt, register, proof):
    author = molt()
    post = agent_post(stack, author)
    voters = [molt() for _ in range(3)]
    for i, v in enumerate(voters):
        register(v, f"0xh{i}")
        agent_vote(stack, v, post.id, UP)
    agent_vote(stack, voters[0], post.id, DOWN)
    stack.forum.cast_human_vote(post.id, FreshProof(proof("0xh1")), DOWN)
    stack.forum.cast_human_vote(post.id, FreshProof(proof("0xh9")), UP)

    incremental = counters(stack, post.id)
    recomputed = stack.forum.recompute_counts(post.id).counters.as_dict()
    assert incremental == recomputed
    assert recomputed["unique_human_count"] == 2
    assert recomputed["upvote_count"] == 3
    assert recomputed["downvote_count"] == 2


def test_counter_failure_falls_back_to_recount(stack, molt, register, monkeypatch):
    author, voter = molt(), molt()
    post = agent_post(stack, author)
    register(voter, "0xvoter")

    def broken(post_id, delta):
        raise StoreError("Store failure: disk I/O error")

    monkeypatch.setattr(stack.forum_repo, "apply_counter_delta", broken)
    outcome = agent_vote(stack, voter, post.id, UP)
    assert outcome.post.counters.upvote_count == 1
    assert outcome.post.counters.unique_human_count == 1


# ============================================================
# Comments and listing
# ============================================================

def test_comments_from_humans_and_agents(stack, molt, register, proof):
    author, commenter = molt(), molt()
    post = agent_post(stack, author)
    register(commenter, "0xagent-human")

    stack.forum.create_comment(post.id, "nice", auth=FreshProof(proof("0xperson")))
    message, sig = commenter.envelope(FORUM_COMMENT, stack.clock.ms(), postId=post.id, content="agreed")
    stack.forum.create_comment(post.id, "agreed", public_key=commenter.public_key, signature=sig, message=message)

    comments = stack.forum.list_comments(post.id)
    assert [c["authorType"] for c in comments] == ["human", "agent"]
    assert stack.forum.get_post(post.id).comment_count == 2


def test_unregistered_molt_cannot_comment(stack, molt):
    author, stranger = molt(), molt()
    post = agent_post(stack, author)
    message, sig = stranger.envelope(FORUM_COMMENT, stack.clock.ms(), postId=post.id, content="hi")
    with pytest.raises(AuthenticationError):
        stack.forum.create_comment(post.id, "hi", public_key=stranger.public_key, signature=sig, message=message)


def test_comment_needs_credentials(stack, molt):
    post = agent_post(stack, molt())
    with pytest.raises(ValidationError):
        stack.forum.create_comment(post.id, "hi")


def test_list_posts_sorting_and_handles(stack, molt, register, proof):
    a, b, voter = molt(), molt(), molt()
    register(a, "0xalice")
    first = agent_post(stack, a, "first")
    stack.clock.advance(10)
    second = agent_post(stack, b, "second")
    register(voter, "0xvoter")
    agent_vote(stack, voter, first.id, UP)
    stack.handles.upsert("0xalice", "alice", stack.clock.now())

    recent = stack.forum.list_posts("recent", 1, 20)
    assert [p.id for p in recent.posts] == [second.id, first.id]
    assert recent.total == 2

    popular = stack.forum.list_posts("popular", 1, 20).to_public()
    assert popular["posts"][0]["id"] == first.id
    assert popular["posts"][0]["authorHandle"] == "alice"

    paged = stack.forum.list_posts("humans", 2, 1)
    assert [p.id for p in paged.posts] == [second.id]
    assert paged.page_size == 1
