"""
Human authentication for forum actions.

A human proves personhood either with a fresh orb-level proof, checked at
the oracle, or by presenting a nullifier that already left a footprint in
the forum. Both paths resolve to a HumanIdentity.
"""

from dataclasses import dataclass
from typing import Optional, Union

from .errors import AuthenticationError, ValidationError
from .logging_config import audit
from .models import HumanCredentials, VerificationLevel, WorldIDProof
from .repositories import ForumRepository
from .worldid import ProofVerifier

TRUST_FRESH = "fresh"
TRUST_CACHED = "cached"


@dataclass(frozen=True)
class FreshProof:
    proof: WorldIDProof


@dataclass(frozen=True)
class CachedNullifier:
    nullifier_hash: str


HumanAuth = Union[FreshProof, CachedNullifier]


@dataclass(frozen=True)
class HumanIdentity:
    nullifier_hash: str
    trust: str


def auth_from_credentials(credentials: HumanCredentials) -> HumanAuth:
    """Pick the authentication path from a request body; a proof wins."""
    if credentials.proof is not None:
        return FreshProof(credentials.proof)
    if credentials.nullifier:
        return CachedNullifier(credentials.nullifier)
    raise ValidationError("Missing required field: proof or nullifier")


class HumanAuthentication:
    def __init__(self, verifier: ProofVerifier, forum: ForumRepository):
        self._verifier = verifier
        self._forum = forum

    def authenticate(self, auth: HumanAuth, signal: Optional[str] = None) -> HumanIdentity:
        """
        Resolve a human credential.

        Raises:
            ValidationError: proof is not orb level
            AuthenticationError: oracle rejected the proof, or the nullifier
                has no forum footprint
            UpstreamError: oracle unavailable
        """
        if isinstance(auth, FreshProof):
            return self._fresh(auth.proof, signal)
        return self._cached(auth.nullifier_hash)

    def _fresh(self, proof: WorldIDProof, signal: Optional[str]) -> HumanIdentity:
        if proof.verification_level is not VerificationLevel.ORB:
            raise ValidationError("Human actions require orb-level verification", code="ORB_REQUIRED")

        result = self._verifier.verify_proof(proof, signal)
        if not result.success:
            audit.proof_rejected(None, result.error or "rejected")
            raise AuthenticationError(result.error or "WorldID verification failed")

        return HumanIdentity(nullifier_hash=proof.nullifier_hash, trust=TRUST_FRESH)

    def _cached(self, nullifier_hash: str) -> HumanIdentity:
        if not self._forum.has_human_footprint(nullifier_hash):
            audit.security_event("unknown_cached_nullifier", severity="low")
            raise AuthenticationError("Nullifier not verified. Please verify with WorldID first.")
        return HumanIdentity(nullifier_hash=nullifier_hash, trust=TRUST_CACHED)
