"""
Identity registry.

Holds the binding between molt keys and human nullifiers. Keys and device
ids are globally unique, and at most one key per human is active: binding
a key deactivates the human's other active keys in the same transaction.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .errors import ConflictError, DuplicateHumanError, NotFoundError
from .logging_config import audit
from .models import Identity, VerificationLevel
from .repositories import IdentityRepository
from .util import generate_id, now_epoch, utc_rfc3339

logger = logging.getLogger(__name__)


@dataclass
class BindResult:
    identity: Identity
    rotated: bool
    superseded: List[Identity] = field(default_factory=list)


class IdentityRegistry:
    """Source of truth for "is this key a verified unique human"."""

    def __init__(
        self,
        identities: IdentityRepository,
        clock: Callable[[], int] = now_epoch,
        require_replace_confirmation: bool = False,
    ):
        self._identities = identities
        self._clock = clock
        self._require_confirmation = require_replace_confirmation

    def bind_or_rotate(
        self,
        device_id: str,
        public_key: str,
        nullifier_hash: str,
        verification_level: VerificationLevel,
        signature: str,
        merkle_root: Optional[str] = None,
        replace_existing: Optional[bool] = None,
    ) -> BindResult:
        """
        Bind a key to a human after a successful personhood proof.

        An existing record for the key is re-verified in place. A device
        whose previous key is no longer active is rekeyed in place; otherwise
        a new record is inserted. Other active keys of the same human are
        deactivated atomically with the write.

        Raises:
            DuplicateHumanError: replacement was declined (explicitly, or by
                default when confirmation is required) and the human already
                has another active key
            ConflictError: the device is active under another key, or a
                concurrent registration of the same key/device
            StoreError: transient store failure
        """
        now = self._clock()
        level = VerificationLevel(verification_level).value
        existing = self._identities.find_by_public_key(public_key)
        rekeyed = False
        if existing is None:
            existing = self._rekeyable_device(device_id)
            rekeyed = existing is not None

        confirmed = replace_existing if replace_existing is not None else not self._require_confirmation
        if not confirmed:
            siblings = self._identities.find_active_siblings(nullifier_hash, public_key)
            if siblings:
                current = siblings[0]
                raise DuplicateHumanError(current.device_id, utc_rfc3339(current.registered_at))

        if existing is not None:
            identity = existing
            if rekeyed:
                identity.public_key = public_key
                identity.registered_at = now
            identity.nullifier_hash = nullifier_hash
            identity.verification_level = level
            identity.merkle_root = merkle_root or identity.merkle_root
            identity.registration_signature = signature
            identity.verified = True
            identity.active = True
            identity.last_verified_at = now
        else:
            identity = Identity(
                id=generate_id(),
                device_id=device_id,
                public_key=public_key,
                nullifier_hash=nullifier_hash,
                merkle_root=merkle_root,
                verification_level=level,
                registration_signature=signature,
                verified=True,
                active=True,
                registered_at=now,
                last_verified_at=now,
            )

        rotated = existing is not None and not rekeyed
        try:
            superseded = self._identities.save_binding(identity, is_new=existing is None)
        except ConflictError as e:
            raise ConflictError(
                "Key or device was registered concurrently; retry verification",
                code="REGISTRATION_RACE",
            ) from e

        audit.identity_bound(identity.device_id, nullifier_hash, level, rotated=rotated)
        if superseded:
            audit.identity_superseded([s.device_id for s in superseded], nullifier_hash)

        return BindResult(identity=identity, rotated=rotated, superseded=superseded)

    def _rekeyable_device(self, device_id: str) -> Optional[Identity]:
        previous = self._identities.find_by_device_id(device_id)
        if previous is None:
            return None
        if previous.verified and previous.active:
            raise ConflictError("Device already registered and verified with a different key")
        logger.info("Rekeying device %s from a retired key", device_id)
        return previous

    # ============================================================
    # Queries
    # ============================================================

    def find_by_device_id(self, device_id: str) -> Optional[Identity]:
        return self._identities.find_by_device_id(device_id)

    def find_by_public_key(self, public_key: str) -> Optional[Identity]:
        return self._identities.find_by_public_key(public_key)

    def find_all_by_nullifier(self, nullifier_hash: str) -> List[Identity]:
        return self._identities.find_all_by_nullifier(nullifier_hash)

    def find_verified_active(self, public_key: str) -> Optional[Identity]:
        identity = self._identities.find_by_public_key(public_key)
        if identity is None or not (identity.verified and identity.active):
            return None
        return identity

    def require_by_public_key(self, public_key: str) -> Identity:
        identity = self._identities.find_by_public_key(public_key)
        if identity is None:
            raise NotFoundError("Identity not found")
        return identity

    def list_verified(self) -> List[Identity]:
        return self._identities.list_verified()
