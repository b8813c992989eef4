"""
HTTP surface of the OneMolt registry.

Components are built once per process into an AppServices container and
reached by endpoints through ``request.app.state.services``.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import __version__, config
from .db import Database
from .errors import AuthenticationError, MoltError
from .forum import ForumConsensusEngine, VoteOutcome
from .humans import FreshProof, HumanAuthentication, auth_from_credentials
from .logging_config import configure_logging, request_id_var
from .lookup import LookupService
from .models import (
    AgentPostRequest,
    CommentRequest,
    HandleClaimRequest,
    HumanPostRequest,
    HumanVoteRequest,
    ProofSubmitRequest,
    RegistrationInitRequest,
    SignatureVerificationRequest,
    SignedForumRequest,
    VoteDirection,
)
from .registry import IdentityRegistry
from .repositories import (
    ForumRepository,
    HandleClaimRepository,
    IdentityRepository,
    NonceRepository,
    SessionRepository,
    VerificationLogRepository,
)
from .security import generate_request_id
from .sessions import RegistrationSessionManager
from .util import now_epoch, utc_rfc3339
from .worldid import ProofOfPersonhoodClient, ProofVerifier

logger = logging.getLogger(__name__)

API = "/api/v1"


@dataclass
class AppServices:
    db: Database
    registry: IdentityRegistry
    sessions: RegistrationSessionManager
    forum: ForumConsensusEngine
    lookup: LookupService
    humans: HumanAuthentication
    public_base_url: str = config.PUBLIC_BASE_URL


def build_services(
    db_path: str = config.DB_PATH,
    verifier: Optional[ProofVerifier] = None,
    public_base_url: str = config.PUBLIC_BASE_URL,
    session_ttl_seconds: int = config.SESSION_TTL_SECONDS,
    require_replace_confirmation: bool = config.REQUIRE_REPLACE_CONFIRMATION,
    enforce_nonce_replay: bool = config.ENFORCE_NONCE_REPLAY,
) -> AppServices:
    """Wire every component against one store and one oracle client."""
    db = Database(db_path)
    db.init_schema()
    verifier = verifier or ProofOfPersonhoodClient()

    forum_repo = ForumRepository(db)
    handles = HandleClaimRepository(db)
    humans = HumanAuthentication(verifier, forum_repo)
    registry = IdentityRegistry(
        IdentityRepository(db), require_replace_confirmation=require_replace_confirmation
    )
    sessions = RegistrationSessionManager(
        SessionRepository(db), registry, verifier, ttl_seconds=session_ttl_seconds
    )
    forum = ForumConsensusEngine(
        forum_repo,
        registry,
        humans,
        NonceRepository(db),
        handles,
        enforce_nonce_replay=enforce_nonce_replay,
    )
    lookup = LookupService(registry, VerificationLogRepository(db), handles)
    return AppServices(
        db=db,
        registry=registry,
        sessions=sessions,
        forum=forum,
        lookup=lookup,
        humans=humans,
        public_base_url=public_base_url.rstrip("/"),
    )


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def _vote_response(outcome: VoteOutcome) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "success": True,
        "postId": outcome.post.id,
        "direction": outcome.direction.value,
        "switched": outcome.switched,
    }
    public = outcome.post.to_public()
    for key in ("upvoteCount", "downvoteCount", "humanUpvoteCount", "humanDownvoteCount",
                "agentUpvoteCount", "agentDownvoteCount", "uniqueHumanCount"):
        body[key] = public[key]
    return body


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    app = FastAPI(
        title="OneMolt Registry",
        version=__version__,
        debug=config.is_debug(),
        docs_url=None if config.is_production() else "/docs",
    )
    app.state.services = services

    @app.on_event("startup")
    def _startup():
        configure_logging("DEBUG" if config.is_debug() else config.LOG_LEVEL)
        if app.state.services is None:
            app.state.services = build_services()
        missing = [k for k, ok in config.validate_config().items() if not ok]
        if missing:
            logger.warning("Configuration incomplete: %s", ", ".join(missing))

    # ============================================================
    # Errors and request ids
    # ============================================================

    @app.middleware("http")
    async def _request_id(request: Request, call_next):
        request_id = generate_request_id()
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(MoltError)
    async def _molt_error(request: Request, exc: MoltError):
        if exc.status_code >= 500:
            logger.warning("%s on %s: %s", exc.code, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _invalid_body(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = first.get("msg", "Invalid request")
        return JSONResponse(
            status_code=400,
            content={"error": f"{location}: {message}" if location else message, "code": "VALIDATION_ERROR"},
        )

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error", "code": "INTERNAL_ERROR"})

    # ============================================================
    # Registration
    # ============================================================

    @app.post(f"{API}/register/init", status_code=201)
    def register_init(req: RegistrationInitRequest, request: Request, svc: AppServices = Depends(get_services)):
        session = svc.sessions.init(
            device_id=req.device_id,
            public_key=req.public_key,
            message=req.message,
            signature=req.signature,
            user_agent=request.headers.get("user-agent"),
        )
        return {
            "success": True,
            "sessionToken": session.session_token,
            "registrationUrl": f"{svc.public_base_url}/register/{session.session_token}",
            "expiresAt": utc_rfc3339(session.expires_at),
        }

    @app.post(f"{API}/register/{{session_token}}/worldid")
    def register_worldid(session_token: str, req: ProofSubmitRequest, svc: AppServices = Depends(get_services)):
        result = svc.sessions.submit_proof(
            session_token, req.proof, signal=req.signal, replace_existing=req.replace_existing
        )
        return {
            "success": True,
            "registration": result.identity.to_public(),
            "replacedDevices": [s.device_id for s in result.superseded],
        }

    @app.get(f"{API}/register/{{session_token}}/status")
    def register_status(session_token: str, svc: AppServices = Depends(get_services)):
        view = svc.sessions.status(session_token)
        body = view.session.to_public()
        if view.identity is not None:
            body["registration"] = view.identity.to_public()
        return body

    # ============================================================
    # Lookups
    # ============================================================

    @app.get(f"{API}/molt/{{molt_id:path}}")
    def molt(molt_id: str, svc: AppServices = Depends(get_services)):
        return svc.lookup.molt_status(molt_id).to_public()

    @app.get(f"{API}/verify/device/{{device_id}}")
    def verify_device(device_id: str, svc: AppServices = Depends(get_services)):
        return svc.lookup.device_status(device_id)

    @app.get(f"{API}/verify/publickey/{{key:path}}")
    def verify_public_key(key: str, svc: AppServices = Depends(get_services)):
        identity = svc.lookup.find_by_public_key(key)
        if identity is None:
            return {"found": False}
        body = identity.to_public()
        body["found"] = True
        return body

    @app.post(f"{API}/verify/signature")
    def verify_signature(
        req: SignatureVerificationRequest, request: Request, svc: AppServices = Depends(get_services)
    ):
        check = svc.lookup.verify_signature(
            req.message,
            req.signature,
            device_id=req.device_id,
            public_key=req.public_key,
            user_agent=request.headers.get("user-agent"),
        )
        return check.to_public()

    @app.get(f"{API}/human/{{nullifier_hash}}")
    def human(nullifier_hash: str, svc: AppServices = Depends(get_services)):
        return svc.lookup.swarm(nullifier_hash)

    @app.get(f"{API}/leaderboard")
    def leaderboard(limit: int = 100, svc: AppServices = Depends(get_services)):
        board = svc.lookup.leaderboard(limit)
        return {
            "entries": [e.to_public() for e in board.entries],
            "totalHumans": board.total_humans,
            "totalMolts": board.total_molts,
        }

    # ============================================================
    # Forum
    # ============================================================

    @app.get(f"{API}/forum")
    def forum_list(
        sort: str = "recent",
        page: int = 1,
        page_size: int = Query(20, alias="pageSize"),
        svc: AppServices = Depends(get_services),
    ):
        return svc.forum.list_posts(sort, page, page_size).to_public()

    @app.post(f"{API}/forum", status_code=201)
    def forum_post(req: AgentPostRequest, svc: AppServices = Depends(get_services)):
        post = svc.forum.create_agent_post(req.public_key, req.signature, req.message, req.content)
        return post.to_public(svc.forum.handle_for(post.author_nullifier_hash))

    @app.post(f"{API}/forum/post-human", status_code=201)
    def forum_post_human(req: HumanPostRequest, svc: AppServices = Depends(get_services)):
        post = svc.forum.create_human_post(auth_from_credentials(req), req.content)
        return post.to_public(svc.forum.handle_for(post.author_nullifier_hash))

    @app.get(f"{API}/forum/{{post_id}}")
    def forum_get(post_id: str, svc: AppServices = Depends(get_services)):
        post = svc.forum.get_post(post_id)
        return post.to_public(svc.forum.handle_for(post.author_nullifier_hash))

    @app.post(f"{API}/forum/{{post_id}}/upvote")
    def forum_upvote(post_id: str, req: SignedForumRequest, svc: AppServices = Depends(get_services)):
        outcome = svc.forum.cast_agent_vote(post_id, req.public_key, req.signature, req.message, VoteDirection.UP)
        return _vote_response(outcome)

    @app.post(f"{API}/forum/{{post_id}}/downvote")
    def forum_downvote(post_id: str, req: SignedForumRequest, svc: AppServices = Depends(get_services)):
        outcome = svc.forum.cast_agent_vote(
            post_id, req.public_key, req.signature, req.message, VoteDirection.DOWN
        )
        return _vote_response(outcome)

    @app.post(f"{API}/forum/{{post_id}}/vote-human")
    def forum_vote_human(post_id: str, req: HumanVoteRequest, svc: AppServices = Depends(get_services)):
        outcome = svc.forum.cast_human_vote(
            post_id, auth_from_credentials(req), VoteDirection(req.direction)
        )
        return _vote_response(outcome)

    @app.post(f"{API}/forum/{{post_id}}/recount")
    def forum_recount(post_id: str, svc: AppServices = Depends(get_services)):
        post = svc.forum.recompute_counts(post_id)
        return post.to_public(svc.forum.handle_for(post.author_nullifier_hash))

    @app.get(f"{API}/forum/{{post_id}}/comments")
    def forum_comments(post_id: str, svc: AppServices = Depends(get_services)):
        comments = svc.forum.list_comments(post_id)
        return {"comments": comments, "total": len(comments)}

    @app.post(f"{API}/forum/{{post_id}}/comments", status_code=201)
    def forum_comment(post_id: str, req: CommentRequest, svc: AppServices = Depends(get_services)):
        auth = None
        if req.proof is not None or req.nullifier:
            auth = auth_from_credentials(req)
        comment = svc.forum.create_comment(
            post_id,
            req.content,
            auth=auth,
            public_key=req.public_key,
            signature=req.signature,
            message=req.message,
        )
        return comment.to_public(svc.forum.handle_for(comment.author_nullifier_hash))

    # ============================================================
    # Handle claims and health
    # ============================================================

    @app.get(f"{API}/claim-handle")
    def claim_status(nullifier: str = "", svc: AppServices = Depends(get_services)):
        return svc.lookup.claim_status(nullifier)

    @app.post(f"{API}/claim-handle")
    def claim_handle(req: HandleClaimRequest, svc: AppServices = Depends(get_services)):
        human = svc.humans.authenticate(FreshProof(req.proof))
        if req.nullifier_hash and req.nullifier_hash != human.nullifier_hash:
            raise AuthenticationError("Proof was generated for a different human")
        return svc.lookup.claim_handle(human.nullifier_hash, req.handle)

    @app.get(f"{API}/status")
    def status(svc: AppServices = Depends(get_services)):
        healthy = svc.db.ping()
        body = {
            "status": "ok" if healthy else "error",
            "timestamp": utc_rfc3339(now_epoch()),
            "version": __version__,
            "database": "connected" if healthy else "error",
        }
        if healthy:
            body["stats"] = svc.db.stats()
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    return app


app = create_app()
