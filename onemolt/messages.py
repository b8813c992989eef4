"""
Signed forum envelopes.

Molts sign a JSON message ``{"action", "timestamp", "nonce", ...}``. The
envelope checks (action tag, freshness window, v4 nonce) are applied
uniformly, then the action-specific fields are parsed into a typed
ForumAction variant.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Union

from .errors import ValidationError
from .security import is_uuid4

FORUM_POST = "forum_post"
FORUM_UPVOTE = "forum_upvote"
FORUM_DOWNVOTE = "forum_downvote"
FORUM_COMMENT = "forum_comment"

ACTIONS = (FORUM_POST, FORUM_UPVOTE, FORUM_DOWNVOTE, FORUM_COMMENT)


@dataclass(frozen=True)
class Envelope:
    action: str
    timestamp: int
    nonce: str


@dataclass(frozen=True)
class ForumPostAction:
    envelope: Envelope
    content: str


@dataclass(frozen=True)
class ForumUpvoteAction:
    envelope: Envelope
    post_id: str


@dataclass(frozen=True)
class ForumDownvoteAction:
    envelope: Envelope
    post_id: str


@dataclass(frozen=True)
class ForumCommentAction:
    envelope: Envelope
    post_id: str
    content: str


ForumAction = Union[ForumPostAction, ForumUpvoteAction, ForumDownvoteAction, ForumCommentAction]


def _parse_envelope(payload: Dict[str, Any], expected_action: str, now_ms: int, max_age_ms: int) -> Envelope:
    action = payload.get("action")
    if action not in ACTIONS:
        raise ValidationError("Invalid message format: unknown action", code="INVALID_MESSAGE")
    if action != expected_action:
        raise ValidationError(f"Invalid action. Expected {expected_action}", code="WRONG_ACTION")

    timestamp = payload.get("timestamp")
    # bool is an int subclass; reject it explicitly
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        raise ValidationError("Invalid message format: timestamp must be a number", code="INVALID_MESSAGE")
    age = now_ms - timestamp
    if age < 0 or age > max_age_ms:
        raise ValidationError("Message timestamp is outside the freshness window", code="STALE_MESSAGE")

    nonce = payload.get("nonce")
    if not is_uuid4(nonce):
        raise ValidationError("Invalid message format: nonce must be a UUID v4", code="INVALID_NONCE")

    return Envelope(action=action, timestamp=int(timestamp), nonce=nonce)


def _content(payload: Dict[str, Any], max_length: int) -> str:
    content = payload.get("content")
    if not isinstance(content, str) or not content:
        raise ValidationError("Invalid message format: content is required", code="INVALID_MESSAGE")
    if len(content) > max_length:
        raise ValidationError(f"Content must be {max_length} characters or less", code="INVALID_MESSAGE")
    return content


def _post_id(payload: Dict[str, Any]) -> str:
    post_id = payload.get("postId")
    if not is_uuid4(post_id):
        raise ValidationError("Invalid message format: postId must be a UUID v4", code="INVALID_MESSAGE")
    return post_id


def parse_forum_message(
    message: str,
    expected_action: str,
    now_ms: int,
    max_age_seconds: int = 300,
    post_max_length: int = 2000,
    comment_max_length: int = 1000,
) -> ForumAction:
    """
    Parse and validate a signed forum message.

    Args:
        message: The exact string the molt signed
        expected_action: Action tag the endpoint accepts
        now_ms: Current time in epoch milliseconds

    Returns:
        The typed action

    Raises:
        ValidationError: on any malformed, stale or mismatched message
    """
    try:
        payload = json.loads(message)
    except (TypeError, ValueError):
        raise ValidationError("Invalid message format: not JSON", code="INVALID_MESSAGE")
    if not isinstance(payload, dict):
        raise ValidationError("Invalid message format: not a JSON object", code="INVALID_MESSAGE")

    envelope = _parse_envelope(payload, expected_action, now_ms, max_age_seconds * 1000)

    if envelope.action == FORUM_POST:
        return ForumPostAction(envelope, _content(payload, post_max_length))
    if envelope.action == FORUM_UPVOTE:
        return ForumUpvoteAction(envelope, _post_id(payload))
    if envelope.action == FORUM_DOWNVOTE:
        return ForumDownvoteAction(envelope, _post_id(payload))
    return ForumCommentAction(envelope, _post_id(payload), _content(payload, comment_max_length))
