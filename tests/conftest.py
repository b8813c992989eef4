import json
import uuid
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from nacl.signing import SigningKey

from onemolt.crypto import calculate_device_id, encode_spki_public_key
from onemolt.db import Database
from onemolt.errors import UpstreamError
from onemolt.forum import ForumConsensusEngine
from onemolt.humans import HumanAuthentication
from onemolt.lookup import LookupService
from onemolt.main import build_services, create_app
from onemolt.models import WorldIDProof
from onemolt.rate_limit import RateLimiter
from onemolt.registry import IdentityRegistry
from onemolt.repositories import (
    ForumRepository,
    HandleClaimRepository,
    IdentityRepository,
    NonceRepository,
    SessionRepository,
    VerificationLogRepository,
)
from onemolt.sessions import RegistrationSessionManager
from onemolt.util import b64e
from onemolt.worldid import ProofVerification

START = 1_760_000_000


class FakeClock:
    def __init__(self, start=START):
        self.t = start

    def now(self):
        return int(self.t)

    def ms(self):
        return int(self.t * 1000)

    def advance(self, seconds):
        self.t += seconds


class FakeOracle:
    """Single-use proofs, like the real oracle."""

    def __init__(self):
        self.calls = []
        self.used = set()
        self.rejected = set()
        self.reject_signal = False
        self.down = False

    def verify_proof(self, proof, signal=None):
        self.calls.append((proof.proof, signal))
        if self.down:
            raise UpstreamError("WorldID API request failed")
        if self.reject_signal:
            return ProofVerification(success=False, error="Invalid signal", code="invalid_signal")
        if proof.proof in self.rejected:
            return ProofVerification(success=False, error="Invalid proof", code="invalid_proof")
        if proof.proof in self.used:
            return ProofVerification(
                success=False, error="This person has already verified for this action.",
                code="max_verifications_reached",
            )
        self.used.add(proof.proof)
        return ProofVerification(success=True)


class Molt:
    def __init__(self):
        self.sk = SigningKey.generate()
        self.public_key = encode_spki_public_key(bytes(self.sk.verify_key))
        self.device_id = calculate_device_id(self.public_key)

    def sign(self, message):
        return b64e(self.sk.sign(message.encode("utf-8")).signature)

    def envelope(self, action, now_ms, nonce=None, **fields):
        payload = {"action": action, "timestamp": now_ms, "nonce": nonce or str(uuid.uuid4())}
        payload.update(fields)
        message = json.dumps(payload)
        return message, self.sign(message)


def make_proof(nullifier, level="orb", proof=None):
    return WorldIDProof(
        proof=proof or f"proof-{uuid.uuid4()}",
        merkle_root="0xroot",
        nullifier_hash=nullifier,
        verification_level=level,
    )


@pytest.fixture(scope="session")
def db_path(tmp_path_factory):
    return str(tmp_path_factory.mktemp("store") / "onemolt.db")


@pytest.fixture(scope="session")
def db(db_path):
    database = Database(db_path)
    database.init_schema()
    yield database
    database.close()


# Reset database before each test for isolation
@pytest.fixture(autouse=True)
def _reset_db(db):
    db.reset()
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def molt():
    return Molt


@pytest.fixture
def proof():
    return make_proof


@pytest.fixture
def stack(db, oracle, clock):
    identities = IdentityRepository(db)
    forum_repo = ForumRepository(db)
    handles = HandleClaimRepository(db)
    registry = IdentityRegistry(identities, clock=clock.now)
    sessions = RegistrationSessionManager(
        SessionRepository(db), registry, oracle, ttl_seconds=900, clock=clock.now
    )
    forum = ForumConsensusEngine(
        forum_repo,
        registry,
        HumanAuthentication(oracle, forum_repo),
        NonceRepository(db),
        handles,
        unverified_limiter=RateLimiter(1, 5, clock=clock.now),
        clock_ms=clock.ms,
    )
    lookup = LookupService(registry, VerificationLogRepository(db), handles, clock=clock.now)
    return SimpleNamespace(
        db=db,
        clock=clock,
        oracle=oracle,
        identities=identities,
        session_repo=SessionRepository(db),
        forum_repo=forum_repo,
        handles=handles,
        registry=registry,
        sessions=sessions,
        forum=forum,
        lookup=lookup,
    )


@pytest.fixture
def register(stack):
    """Run both registration steps for a molt and return the bound identity."""
    def _register(m, nullifier, level="orb"):
        session = stack.sessions.init(m.device_id, m.public_key, "register me", m.sign("register me"))
        return stack.sessions.submit_proof(session.session_token, make_proof(nullifier, level)).identity
    return _register


@pytest.fixture
def client(db_path, oracle):
    services = build_services(db_path, verifier=oracle, public_base_url="http://testserver")
    return TestClient(create_app(services))
