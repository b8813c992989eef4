"""
Read-side queries over the identity registry, plus signature checks and
handle claims for third parties.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from . import crypto
from .errors import ConflictError, NotFoundError, ValidationError
from .models import Identity, Leaderboard, LeaderboardEntry, VerificationLevel
from .registry import IdentityRegistry
from .repositories import HandleClaimRepository, VerificationLogRepository
from .security import validate_handle
from .util import now_epoch, utc_rfc3339

logger = logging.getLogger(__name__)

QUERY_DEVICE_ID = "device_id"
QUERY_PUBLIC_KEY = "public_key"

LEADERBOARD_MAX = 100


@dataclass
class MoltStatus:
    identity: Optional[Identity]
    query_type: str

    def to_public(self) -> Dict[str, Any]:
        i = self.identity
        if i is None:
            return {"verified": False, "worldId": {"verified": False}, "queryType": self.query_type}
        return {
            "verified": True,
            "deviceId": i.device_id,
            "publicKey": i.public_key,
            "worldId": {
                "verified": True,
                "verificationLevel": i.verification_level,
                "nullifierHash": i.nullifier_hash,
                "registeredAt": utc_rfc3339(i.registered_at),
                "lastVerifiedAt": utc_rfc3339(i.last_verified_at),
            },
            "queryType": self.query_type,
        }


@dataclass
class SignatureCheck:
    verified: bool
    device_id: Optional[str]
    public_key: Optional[str]
    identity: Optional[Identity] = None

    def to_public(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "verified": self.verified,
            "deviceId": self.device_id,
            "publicKey": self.public_key,
            "worldIdVerified": self.identity is not None,
        }
        if self.identity is not None:
            body["verificationLevel"] = self.identity.verification_level
            body["registeredAt"] = utc_rfc3339(self.identity.registered_at)
        return body


class LookupService:
    def __init__(
        self,
        registry: IdentityRegistry,
        logs: VerificationLogRepository,
        handles: HandleClaimRepository,
        clock: Callable[[], int] = now_epoch,
    ):
        self._registry = registry
        self._logs = logs
        self._handles = handles
        self._clock = clock

    # ============================================================
    # Identity lookups
    # ============================================================

    def device_status(self, device_id: str) -> Dict[str, Any]:
        """Status of a device in any state, including inactive records."""
        identity = self._registry.find_by_device_id(device_id)
        if identity is None:
            return {"registered": False, "verified": False, "active": False, "deviceId": device_id}
        return {
            "registered": True,
            "verified": identity.verified,
            "active": identity.active,
            "deviceId": identity.device_id,
            "publicKey": identity.public_key,
            "verificationLevel": identity.verification_level,
            "registeredAt": utc_rfc3339(identity.registered_at),
        }

    def find_by_public_key(self, public_key: str) -> Optional[Identity]:
        if not crypto.is_valid_public_key(public_key):
            raise ValidationError("Invalid public key format")
        return self._registry.find_verified_active(public_key)

    def molt_status(self, molt_id: str) -> MoltStatus:
        """Resolve an id as a device id first, then as a public key."""
        identity = self._registry.find_by_device_id(molt_id)
        if identity is not None and identity.verified and identity.active:
            return MoltStatus(identity, QUERY_DEVICE_ID)
        return MoltStatus(self._registry.find_verified_active(molt_id), QUERY_PUBLIC_KEY)

    def swarm(self, nullifier_hash: str) -> Dict[str, Any]:
        """Every molt a human has ever bound, newest first."""
        molts = self._registry.find_all_by_nullifier(nullifier_hash)
        if not molts:
            raise NotFoundError("Human not found")
        return {
            "nullifierHash": nullifier_hash,
            "handle": self.handle_for(nullifier_hash),
            "moltCount": len(molts),
            "activeCount": sum(1 for m in molts if m.active),
            "molts": [m.to_public() for m in molts],
        }

    def leaderboard(self, limit: int = LEADERBOARD_MAX) -> Leaderboard:
        """Humans ranked by how many molts they have bound."""
        limit = max(1, min(int(limit), LEADERBOARD_MAX))
        groups: "OrderedDict[str, List[Identity]]" = OrderedDict()
        verified = self._registry.list_verified()
        for identity in verified:
            groups.setdefault(identity.nullifier_hash, []).append(identity)

        entries = []
        for nullifier_hash, molts in groups.items():
            levels = {level.value: 0 for level in VerificationLevel}
            for m in molts:
                levels[m.verification_level] = levels.get(m.verification_level, 0) + 1
            registered = [m.registered_at for m in molts]
            entries.append(LeaderboardEntry(
                nullifier_hash=nullifier_hash,
                molt_count=len(molts),
                active_count=sum(1 for m in molts if m.active),
                verification_levels=levels,
                oldest_molt_at=utc_rfc3339(min(registered)),
                newest_molt_at=utc_rfc3339(max(registered)),
            ))

        # stable sort keeps first-registration order among ties
        entries.sort(key=lambda e: e.molt_count, reverse=True)
        entries = entries[:limit]

        handles = self._handles.handles_for(e.nullifier_hash for e in entries)
        for e in entries:
            e.handle = handles.get(e.nullifier_hash)

        return Leaderboard(entries=entries, total_humans=len(groups), total_molts=len(verified))

    # ============================================================
    # Signature verification for third parties
    # ============================================================

    def verify_signature(
        self,
        message: str,
        signature: str,
        device_id: Optional[str] = None,
        public_key: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SignatureCheck:
        """
        Verify a molt signature and report whether the key is human-bound.

        Every attempt that reaches verification is appended to the
        verification log.
        """
        if not message or not signature:
            raise ValidationError("Missing required fields: message, signature")
        if not device_id and not public_key:
            raise ValidationError("Either deviceId or publicKey must be provided")
        if not crypto.is_valid_signature(signature):
            raise ValidationError("Invalid signature format")

        identity = None
        if public_key:
            if not crypto.is_valid_public_key(public_key):
                raise ValidationError("Invalid public key format")
            identity = self._registry.find_verified_active(public_key)
            if identity is not None and device_id is None:
                device_id = identity.device_id
        else:
            by_device = self._registry.find_by_device_id(device_id)
            if by_device is None or not (by_device.verified and by_device.active):
                return SignatureCheck(verified=False, device_id=device_id, public_key=None)
            identity = by_device
            public_key = by_device.public_key

        verified = crypto.verify_signature(message, signature, public_key)
        self._logs.append(
            device_id=device_id or "unknown",
            public_key=public_key,
            message=message,
            signature=signature,
            verified=verified,
            identity_id=identity.id if identity else None,
            user_agent=user_agent,
            created_at=self._clock(),
        )
        return SignatureCheck(verified=verified, device_id=device_id, public_key=public_key, identity=identity)

    # ============================================================
    # Handle claims
    # ============================================================

    def handle_for(self, nullifier_hash: str) -> Optional[str]:
        claim = self._handles.get(nullifier_hash)
        return claim["handle"] if claim else None

    def claim_status(self, nullifier_hash: str) -> Dict[str, Any]:
        if not nullifier_hash:
            raise ValidationError("Missing nullifier parameter")
        claim = self._handles.get(nullifier_hash)
        if claim is None:
            return {"claimed": False}
        return {
            "claimed": True,
            "handle": claim["handle"],
            "claimedAt": utc_rfc3339(claim["claimed_at"]),
        }

    def claim_handle(self, nullifier_hash: str, handle: str) -> Dict[str, Any]:
        """
        Attach a social handle to a human. Re-claiming replaces the human's
        previous handle; a handle held by another human is a conflict.
        """
        if not nullifier_hash:
            raise ValidationError("Missing required field: nullifierHash")
        handle = validate_handle(handle)
        if not self._registry.find_all_by_nullifier(nullifier_hash):
            raise NotFoundError("Human not found")

        owner = self._handles.owner_of(handle)
        if owner is not None and owner != nullifier_hash:
            raise ConflictError("Handle already claimed by another human", code="HANDLE_TAKEN")

        self._handles.upsert(nullifier_hash, handle, self._clock())
        logger.info("Handle claimed for %s", nullifier_hash[:12])
        return self.claim_status(nullifier_hash)
