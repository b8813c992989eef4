"""
Proof-of-personhood client.

Wraps the World ID cloud verification endpoint. The app id and action are
deployment configuration. Proofs are single-use at the oracle: once a
nullifier-bearing proof verifies, submitting it again fails, which is why
registration sessions keep the verified proof around for bind retries.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import requests

from . import config
from .errors import UpstreamError
from .models import WorldIDProof

logger = logging.getLogger(__name__)

# Oracle error codes that mean "proof is fine, but not for this signal"
SIGNAL_REJECTION_CODES = frozenset({"invalid_signal", "signal_mismatch"})


@dataclass
class ProofVerification:
    success: bool
    error: Optional[str] = None
    code: Optional[str] = None

    @property
    def signal_rejected(self) -> bool:
        return not self.success and self.code in SIGNAL_REJECTION_CODES


class ProofVerifier(Protocol):
    def verify_proof(self, proof: WorldIDProof, signal: Optional[str] = None) -> ProofVerification:
        ...


class ProofOfPersonhoodClient:
    """
    HTTP client for the proof verification oracle.

    Rejections (4xx, or ``success`` not true) come back as a failed
    ProofVerification. Transport failures, timeouts and 5xx responses
    raise UpstreamError, which callers treat as retryable.
    """

    def __init__(
        self,
        api_url: str = config.WORLDID_API_URL,
        app_id: str = config.WORLDID_APP_ID,
        action: str = config.WORLDID_ACTION,
        timeout: float = config.WORLDID_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.api_url = api_url
        self.app_id = app_id
        self.action = action
        self.timeout = timeout
        self._http = session or requests.Session()

    def verify_proof(self, proof: WorldIDProof, signal: Optional[str] = None) -> ProofVerification:
        if not self.app_id or not self.action:
            logger.error("World ID app id or action is not configured")
            raise UpstreamError("WorldID configuration error")

        body = {
            "app_id": self.app_id,
            "action": self.action,
            "signal": signal or "",
            "proof": proof.proof,
            "merkle_root": proof.merkle_root,
            "nullifier_hash": proof.nullifier_hash,
            "verification_level": proof.verification_level.value,
        }

        try:
            response = self._http.post(self.api_url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("World ID request failed: %s", e)
            raise UpstreamError("WorldID API request failed") from e

        if response.status_code >= 500:
            logger.warning("World ID returned %s", response.status_code)
            raise UpstreamError(f"WorldID verification unavailable (status {response.status_code})")

        try:
            result = response.json()
        except ValueError:
            result = {}
        if not isinstance(result, dict):
            result = {}

        code = result.get("code")
        detail = result.get("detail")

        if not response.ok:
            return ProofVerification(
                success=False,
                error=detail or f"WorldID verification failed with status {response.status_code}",
                code=code,
            )

        if result.get("success") is not True:
            return ProofVerification(success=False, error=detail or "WorldID verification failed", code=code)

        return ProofVerification(success=True)
