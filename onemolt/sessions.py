"""
Registration session manager.

Two-step registration: a molt proves key ownership by signing a challenge
(init), then a human submits a personhood proof for that session
(submit_proof), which binds the key to the human's nullifier.

Session states::

    pending --verified+bound--> completed
    pending --rejected/bind failed--> failed --retry--> completed | failed
    pending|failed --now > expires_at--> expired

completed and expired are terminal. Expiry is applied lazily on every read
and write. A verified proof is stored on the session before binding, so a
bind that fails (race, store outage) can be retried inside the TTL without
spending a second single-use proof at the oracle.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from . import crypto
from .errors import (
    AuthenticationError,
    ConflictError,
    ExpiredError,
    NotFoundError,
    SignalMismatchError,
    StoreError,
    UpstreamError,
    ValidationError,
)
from .logging_config import audit
from .models import Identity, RegistrationSession, SessionStatus, WorldIDProof
from .registry import IdentityRegistry
from .repositories import SessionRepository
from .security import require_fields
from .util import generate_token, now_epoch
from .worldid import ProofVerifier

logger = logging.getLogger(__name__)


@dataclass
class RegistrationResult:
    identity: Identity
    reused_proof: bool = False
    superseded: List[Identity] = field(default_factory=list)


@dataclass
class SessionView:
    session: RegistrationSession
    identity: Optional[Identity] = None


class RegistrationSessionManager:
    def __init__(
        self,
        sessions: SessionRepository,
        registry: IdentityRegistry,
        verifier: ProofVerifier,
        ttl_seconds: int = 900,
        clock: Callable[[], int] = now_epoch,
    ):
        self._sessions = sessions
        self._registry = registry
        self._verifier = verifier
        self._ttl = ttl_seconds
        self._clock = clock

    # ============================================================
    # Step 1: key ownership
    # ============================================================

    def init(
        self,
        device_id: str,
        public_key: str,
        message: str,
        signature: str,
        user_agent: Optional[str] = None,
    ) -> RegistrationSession:
        """
        Open a registration session after checking the challenge signature.

        Raises:
            ValidationError: missing fields or malformed key/signature
            AuthenticationError: signature does not verify
            ConflictError: device or key already bound elsewhere
        """
        require_fields(
            {"deviceId": device_id, "publicKey": public_key, "message": message, "signature": signature},
            ["deviceId", "publicKey", "message", "signature"],
        )
        if not crypto.is_valid_public_key(public_key):
            raise ValidationError("Invalid public key format")
        if not crypto.is_valid_signature(signature):
            raise ValidationError("Invalid signature format")
        if not crypto.verify_signature(message, signature, public_key):
            audit.security_event("registration_bad_signature", device_id=device_id)
            raise AuthenticationError("Invalid signature - signature verification failed")

        by_device = self._registry.find_by_device_id(device_id)
        if (
            by_device is not None
            and by_device.verified
            and by_device.active
            and by_device.public_key != public_key
        ):
            raise ConflictError("Device already registered and verified with a different key")

        by_key = self._registry.find_by_public_key(public_key)
        if by_key is not None and by_key.device_id != device_id:
            raise ConflictError("Public key already registered to different device")

        now = self._clock()
        session = RegistrationSession(
            session_token=generate_token(),
            device_id=device_id,
            public_key=public_key,
            signature=signature,
            message=message,
            status=SessionStatus.PENDING,
            created_at=now,
            expires_at=now + self._ttl,
            user_agent=user_agent,
        )
        self._sessions.insert(session)
        audit.registration_initiated(session.session_token, device_id)
        return session

    # ============================================================
    # Reads
    # ============================================================

    def get(self, session_token: str) -> RegistrationSession:
        """Load a session, applying the lazy expiry transition."""
        session = self._sessions.get(session_token)
        if session is None:
            raise NotFoundError("Registration session not found")
        self._expire_if_due(session)
        return session

    def status(self, session_token: str) -> SessionView:
        session = self.get(session_token)
        identity = None
        if session.status is SessionStatus.COMPLETED:
            identity = self._registry.find_by_public_key(session.public_key)
        return SessionView(session=session, identity=identity)

    def _expire_if_due(self, session: RegistrationSession) -> None:
        if session.status in (SessionStatus.PENDING, SessionStatus.FAILED) and session.is_past_ttl(self._clock()):
            self._sessions.mark_expired(session.session_token)
            session.status = SessionStatus.EXPIRED

    # ============================================================
    # Step 2: personhood proof + binding
    # ============================================================

    def submit_proof(
        self,
        session_token: str,
        proof: WorldIDProof,
        signal: Optional[str] = None,
        replace_existing: Optional[bool] = None,
    ) -> RegistrationResult:
        """
        Verify a personhood proof for the session and bind the identity.

        Raises:
            NotFoundError: unknown session
            ConflictError: session already completed, or the bind raced
            ExpiredError: session TTL elapsed
            SignalMismatchError: proof generated for another device
            AuthenticationError: oracle rejected the proof
            UpstreamError / StoreError: retryable infrastructure failures
        """
        session = self._sessions.get(session_token)
        if session is None:
            raise NotFoundError("Registration session not found")
        if session.status is SessionStatus.COMPLETED:
            raise ConflictError("Registration already completed")
        self._expire_if_due(session)
        if session.status is SessionStatus.EXPIRED:
            raise ExpiredError("Registration session expired")

        if signal and signal != session.device_id:
            raise SignalMismatchError("Signal mismatch - proof was created for a different device")

        reused = session.has_verified_proof_for(proof.nullifier_hash)
        if reused:
            # single-use proof already consumed at the oracle for this session
            proof = session.stored_proof
        else:
            self._verify_with_oracle(session, proof)

        audit.proof_verified(session_token, proof.nullifier_hash, reused)

        try:
            bound = self._registry.bind_or_rotate(
                device_id=session.device_id,
                public_key=session.public_key,
                nullifier_hash=proof.nullifier_hash,
                verification_level=proof.verification_level,
                signature=session.signature,
                merkle_root=proof.merkle_root,
                replace_existing=replace_existing,
            )
        except (ConflictError, StoreError) as e:
            logger.warning("Bind failed for session %s: %s", session_token, e.message)
            self._mark_failed_quietly(session_token)
            raise

        if not self._sessions.mark_completed(session_token):
            logger.warning("Session %s reached a terminal state during bind", session_token)

        return RegistrationResult(identity=bound.identity, reused_proof=reused, superseded=bound.superseded)

    def _verify_with_oracle(self, session: RegistrationSession, proof: WorldIDProof) -> None:
        try:
            result = self._verifier.verify_proof(proof, session.device_id)
        except UpstreamError:
            self._mark_failed_quietly(session.session_token)
            raise

        if not result.success:
            audit.proof_rejected(session.session_token, result.error or "rejected")
            self._sessions.mark_failed(session.session_token, proof)
            if result.signal_rejected:
                raise SignalMismatchError(result.error or "Proof signal does not match this device")
            raise AuthenticationError(result.error or "WorldID verification failed")

        self._sessions.store_proof(session.session_token, proof)

    def _mark_failed_quietly(self, session_token: str) -> None:
        # the original error is what the caller needs to see
        try:
            self._sessions.mark_failed(session_token)
        except StoreError as e:
            logger.error("Could not mark session %s failed: %s", session_token, e.message)
