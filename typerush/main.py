from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel, Session
from starlette.middleware.base import BaseHTTPMiddleware
from typing import Optional

import asyncio
import logging
import threading
import time
import uuid

from . import crud, scoring
from .cache import (
    get_cache,
    get_cached_leaderboard,
    cache_leaderboard,
    leaderboard_generation,
    cleanup_cache_periodically,
)
from .config import Policy, load_policy, database_url, database_timeout, cors_origins
from .deps import get_session, get_policy
from .errors import SubmissionError, InputError, RateLimited
from .init_db import create_db_engine
from .logging_utils import setup_logging, get_logger, request_id_ctx
from .migrations import run_migrations
from .names import check_player_name


# Rate limiting - request timestamps per client IP
_RATE_LIMIT_STORE: dict = {}
_RATE_LIMIT_LOCK = threading.Lock()
# idle clients are swept out of the store at most this often
_RATE_LIMIT_SWEEP_SECONDS = 60.0
_rate_limit_last_sweep = [0.0]


def _sweep_rate_limit_store(cutoff_time: float) -> None:
    idle = [ip for ip, stamps in _RATE_LIMIT_STORE.items() if not stamps or stamps[-1] <= cutoff_time]
    for ip in idle:
        del _RATE_LIMIT_STORE[ip]


def check_rate_limit(request: Request, max_requests: int = 30, window_seconds: int = 60) -> bool:
    """
    In-memory sliding window. Returns True if the request is allowed.
    """
    client_ip = request.client.host if request.client else "unknown"
    current_time = time.time()
    cutoff_time = current_time - window_seconds
    with _RATE_LIMIT_LOCK:
        if current_time - _rate_limit_last_sweep[0] >= _RATE_LIMIT_SWEEP_SECONDS:
            _rate_limit_last_sweep[0] = current_time
            _sweep_rate_limit_store(cutoff_time)
        recent = [t for t in _RATE_LIMIT_STORE.get(client_ip, []) if t > cutoff_time]
        if len(recent) >= max_requests:
            _RATE_LIMIT_STORE[client_ip] = recent
            return False
        recent.append(current_time)
        _RATE_LIMIT_STORE[client_ip] = recent
        return True


def rate_limit_dependency(max_requests: int = 30, window_seconds: int = 60):
    """Dependency that answers 429 once a client exceeds the window"""
    def dependency(request: Request):
        if not check_rate_limit(request, max_requests, window_seconds):
            raise RateLimited(f"Rate limit exceeded. Maximum {max_requests} requests per {window_seconds} seconds.")
    return dependency


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


setup_logging(logging.INFO)
logger = get_logger("typerush")


# seconds between sweeps of expired cache entries
CACHE_CLEANUP_SECONDS = 60.0


async def _cache_cleanup_loop():
    while True:
        await asyncio.sleep(CACHE_CLEANUP_SECONDS)
        cleanup_cache_periodically()


@asynccontextmanager
async def lifespan(app: FastAPI):
    owned = None
    if app.state.engine is None:
        owned = create_db_engine(database_url(), database_timeout())
        SQLModel.metadata.create_all(owned)
        try:
            run_migrations(owned)
        except Exception as e:
            logger.warning("migrations_failed", extra={"error": str(e)})
        with Session(owned) as session:
            crud.purge_stale_runs(session, app.state.policy)
        app.state.engine = owned
        logger.info("engine_ready", extra={"url": database_url()})
    cleanup_task = asyncio.get_running_loop().create_task(_cache_cleanup_loop())
    yield
    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass
    if owned is not None:
        owned.dispose()
        app.state.engine = None


app = FastAPI(title="Typerush", lifespan=lifespan)
# store handle and policy are injected through app.state; tests replace both
app.state.engine = None
app.state.policy = load_policy()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        # JSON-only API: nothing may be loaded or framed from here
        response.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none'"
        response.headers.setdefault('Referrer-Policy', 'no-referrer')
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('X-Frame-Options', 'DENY')
        response.headers.setdefault('Cache-Control', 'no-store')
        return response


app.add_middleware(SecurityHeadersMiddleware)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(rid)
        start = time.time()
        response = None
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = rid
            return response
        except Exception:
            logger.exception("request_error", extra={"path": str(request.url), "method": request.method})
            raise
        finally:
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": getattr(response, "status_code", 500),
                    "duration_ms": int((time.time() - start) * 1000),
                    "client": request.client.host if request.client else "-",
                    "user_agent": request.headers.get("user-agent", "-"),
                },
            )
            request_id_ctx.reset(token)


app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Accept", "Content-Type", "X-Request-ID"],
)


@app.exception_handler(SubmissionError)
async def submission_error_handler(request: Request, exc: SubmissionError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.reason})


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("storage_error", extra={"path": request.url.path, "error": str(exc)})
    return JSONResponse(status_code=500, content={"success": False, "error": "Storage error"})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    logger.warning("validation_error", extra={"method": request.method, "url": str(request.url), "errors": errors})
    missing = any(e.get("type") == "missing" or e.get("input", "") is None for e in errors)
    reason = "Missing required fields" if missing else "Invalid request body"
    return JSONResponse(status_code=400, content={"success": False, "error": reason})


@app.get("/health", include_in_schema=False)
def health():
    return JSONResponse({"status": "ok"})


@app.get("/api/cache/stats", include_in_schema=False)
def cache_stats():
    return JSONResponse({"cache_stats": get_cache().get_stats(), "status": "ok"})


class StartRunRequest(BaseModel):
    player_name: str
    game_mode: int


class SubmitResultRequest(BaseModel):
    run_id: str = Field(..., max_length=100)
    token: str = Field(..., max_length=200)
    player_name: str
    game_mode: int
    lps: float
    accuracy: float
    time: float
    ms_per_letter: float
    total_letters: int
    uncorrected_errors: int
    corrected_errors: int
    isTwitterUser: bool = False
    # advisory only; the stored score and rank are always recomputed
    score: Optional[float] = None
    rank: Optional[str] = None


@app.post("/api/start-run")
def start_run(
    body: StartRunRequest,
    request: Request,
    session: Session = Depends(get_session),
    policy: Policy = Depends(get_policy),
    _: None = Depends(rate_limit_dependency(max_requests=30, window_seconds=60)),
):
    if not body.player_name:
        raise InputError("Missing required fields")
    run, token = crud.issue_run(
        session,
        body.player_name,
        body.game_mode,
        policy,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent", "unknown"),
    )
    expires_at = crud.as_utc(run.expires_at)
    return {
        "success": True,
        "run_id": run.id,
        "token": token,
        "expires_at": int(expires_at.timestamp()),
    }


def _metrics_from_body(body: SubmitResultRequest) -> scoring.Metrics:
    return scoring.Metrics(
        player_name=body.player_name,
        game_mode=body.game_mode,
        lps=body.lps,
        accuracy=body.accuracy,
        time=body.time,
        ms_per_letter=body.ms_per_letter,
        total_letters=body.total_letters,
        uncorrected_errors=body.uncorrected_errors,
        corrected_errors=body.corrected_errors,
    )


@app.post("/api/game-results")
def submit_game_result(
    body: SubmitResultRequest,
    session: Session = Depends(get_session),
    policy: Policy = Depends(get_policy),
    _: None = Depends(rate_limit_dependency(max_requests=30, window_seconds=60)),
):
    if not body.run_id or not body.token or not body.player_name:
        raise InputError("Missing required fields")
    check_player_name(body.player_name)
    scoring.check_game_mode(body.game_mode, policy)

    # from here on the token is spent, whatever happens next
    run = crud.redeem_run(session, body.run_id, body.token, policy)
    try:
        result = scoring.validate_submission(run, _metrics_from_body(body), policy)
    except SubmissionError as exc:
        logger.info("submission_rejected", extra={"run_id": run.id, "reason": exc.reason})
        raise

    if body.score is not None and abs(body.score - result.score) > crud.SCORE_EPSILON:
        logger.warning(
            "client_score_ignored",
            extra={"run_id": run.id, "client_score": body.score, "score": result.score},
        )

    outcome = crud.submit_result(
        session,
        player_name=body.player_name,
        game_mode=body.game_mode,
        score=result.score,
        lps=body.lps,
        accuracy=body.accuracy,
        rank=result.rank,
        time=body.time,
        ms_per_letter=body.ms_per_letter,
        is_twitter_user=body.isTwitterUser,
    )
    return {
        "success": True,
        "isNewBest": outcome.is_new_best,
        "id": outcome.record_id,
        "score": result.score,
        "rank": result.rank,
    }


@app.get("/api/leaderboard")
def leaderboard(
    game_mode: int = 15,
    limit: int = 10,
    session: Session = Depends(get_session),
    policy: Policy = Depends(get_policy),
    _: None = Depends(rate_limit_dependency(max_requests=60, window_seconds=60)),
):
    scoring.check_game_mode(game_mode, policy)
    if limit < 1 or limit > 500:
        raise InputError("Limit must be between 1 and 500")

    leaders = get_cached_leaderboard(game_mode)
    if leaders is None:
        generation = leaderboard_generation(game_mode)
        leaders = crud.get_leaderboard(session, game_mode, limit=None, policy=policy)
        cache_leaderboard(game_mode, leaders, ttl_minutes=policy.leaderboard_cache_minutes, generation=generation)

    return {"success": True, "game_mode": game_mode, "leaders": leaders[:limit]}


@app.get("/api/players/{player_name}/best")
def player_best(
    player_name: str,
    game_mode: int = 15,
    session: Session = Depends(get_session),
    policy: Policy = Depends(get_policy),
):
    check_player_name(player_name)
    scoring.check_game_mode(game_mode, policy)
    return {"success": True, "record": crud.get_player_best(session, player_name, game_mode)}


@app.get("/api/players/{player_name}/scores")
def player_scores(player_name: str, session: Session = Depends(get_session)):
    check_player_name(player_name)
    return {"success": True, "scores": crud.get_player_scores(session, player_name)}
