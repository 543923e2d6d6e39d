from sqlmodel import Session, select, col
from sqlalchemy import update, delete, desc
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
import hashlib
import math
import hmac
import secrets
import uuid

from . import models
from .cache import invalidate_leaderboard_cache
from .config import Policy
from .errors import (
    InvalidSession,
    SessionAlreadyUsed,
    SessionExpired,
    StorageError,
    TooFast,
)
from .logging_utils import get_logger
from .names import check_player_name
from .scoring import check_game_mode

logger = get_logger("typerush.crud")

# leaderboard ordering tolerances; representation noise must not reorder rows
SCORE_EPSILON = 1e-4
ACCURACY_EPSILON = 1e-2


@dataclass
class RedeemedRun:
    id: str
    issued_at: datetime
    game_mode: int
    player_name: str


@dataclass
class SubmitOutcome:
    is_new_best: bool
    record_id: Optional[int]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes loaded back from the store."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def issue_run(
    session: Session,
    player_name: str,
    game_mode: int,
    policy: Policy,
    ip: str = "unknown",
    user_agent: str = "unknown",
    now: Optional[datetime] = None,
) -> Tuple[models.GameRun, str]:
    """Create a run session and return it with the raw token.

    Only the token's sha256 is persisted, so the returned token is the one and
    only copy the caller will ever see.
    """
    check_player_name(player_name)
    check_game_mode(game_mode, policy)
    now = as_utc(now) or utcnow()
    token = secrets.token_urlsafe(32)
    run = models.GameRun(
        id=str(uuid.uuid4()),
        token_hash=hash_token(token),
        issued_at=now,
        expires_at=now + timedelta(seconds=policy.run_ttl_seconds),
        ip=ip or "unknown",
        user_agent=user_agent or "unknown",
        game_mode=game_mode,
        player_name=player_name,
    )
    try:
        session.add(run)
        session.commit()
        session.refresh(run)
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("run_issue_failed", extra={"player_name": player_name, "game_mode": game_mode})
        raise StorageError("Could not create run session") from exc
    logger.info("run_issued", extra={"run_id": run.id, "player_name": player_name, "game_mode": game_mode})
    return run, token


def _classify_failed_redemption(session: Session, run_id: str, token_hash: str,
                                now: datetime, policy: Policy) -> Exception:
    run = session.get(models.GameRun, run_id) if run_id else None
    # unknown id and wrong token look identical to the caller
    if run is None or not hmac.compare_digest(run.token_hash, token_hash):
        return InvalidSession()
    if run.used_at is not None:
        return SessionAlreadyUsed()
    if now >= as_utc(run.expires_at):
        return SessionExpired()
    if (now - as_utc(run.issued_at)).total_seconds() < policy.min_play_seconds:
        return TooFast()
    # the row became redeemable after the update ran; treat as a lost race
    return SessionAlreadyUsed()


def redeem_run(
    session: Session,
    run_id: str,
    token: str,
    policy: Policy,
    now: Optional[datetime] = None,
) -> RedeemedRun:
    """Spend a run token exactly once.

    The "not yet used" check and the write of used_at are a single conditional
    UPDATE, so of two concurrent redemptions only one can match the row.
    Expiry and the minimum play duration are part of the same WHERE clause,
    which means a rejected attempt never burns the token.
    """
    now = as_utc(now) or utcnow()
    token_hash = hash_token(token or "")
    latest_issue = now - timedelta(seconds=policy.min_play_seconds)
    stmt = (
        update(models.GameRun)
        .where(col(models.GameRun.id) == run_id)
        .where(col(models.GameRun.token_hash) == token_hash)
        .where(col(models.GameRun.used_at).is_(None))
        .where(col(models.GameRun.expires_at) > now)
        .where(col(models.GameRun.issued_at) <= latest_issue)
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    )
    try:
        result = session.execute(stmt)
        if result.rowcount != 1:
            session.rollback()
            err = _classify_failed_redemption(session, run_id, token_hash, now, policy)
            logger.info("run_redeem_rejected", extra={"run_id": run_id, "reason": str(err)})
            raise err
        session.commit()
        run = session.get(models.GameRun, run_id)
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("run_redeem_failed", extra={"run_id": run_id})
        raise StorageError() from exc
    if run is None:
        raise StorageError()
    logger.info("run_redeemed", extra={"run_id": run_id, "player_name": run.player_name, "game_mode": run.game_mode})
    return RedeemedRun(
        id=run_id,
        issued_at=as_utc(run.issued_at),
        game_mode=run.game_mode,
        player_name=run.player_name,
    )


def purge_stale_runs(session: Session, policy: Policy, now: Optional[datetime] = None) -> int:
    """Delete run sessions that expired more than run_retention_hours ago."""
    now = as_utc(now) or utcnow()
    cutoff = now - timedelta(hours=policy.run_retention_hours)
    result = session.execute(
        delete(models.GameRun)
        .where(col(models.GameRun.expires_at) < cutoff)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    removed = result.rowcount or 0
    if removed:
        logger.info("stale_runs_purged", extra={"count": removed})
    return removed


def _result_id(session: Session, player_name: str, game_mode: int) -> Optional[int]:
    return session.exec(
        select(models.GameResult.id)
        .where(models.GameResult.player_name == player_name)
        .where(models.GameResult.game_mode == game_mode)
    ).first()


def submit_result(
    session: Session,
    player_name: str,
    game_mode: int,
    score: float,
    lps: float,
    accuracy: float,
    rank: str,
    time: float,
    ms_per_letter: float,
    is_twitter_user: bool = False,
    now: Optional[datetime] = None,
) -> SubmitOutcome:
    """Compare-and-replace the player's best for a mode.

    The insert relies on the (player_name, game_mode) unique constraint; when
    the key already exists the replacement is a conditional UPDATE guarded by
    ``score < :score``, so concurrent submissions cannot both win and an equal
    score never rewrites the row.
    """
    now = as_utc(now) or utcnow()
    fields = {
        "score": score,
        "lps": lps,
        "accuracy": accuracy,
        "rank": rank,
        "time": time,
        "ms_per_letter": ms_per_letter,
        "is_twitter_user": bool(is_twitter_user),
        "updated_at": now,
    }
    record = models.GameResult(player_name=player_name, game_mode=game_mode,
                               created_at=now, **fields)
    try:
        session.add(record)
        session.commit()
        session.refresh(record)
        outcome = SubmitOutcome(is_new_best=True, record_id=record.id)
    except IntegrityError:
        session.rollback()
        outcome = _replace_if_better(session, player_name, game_mode, fields)
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("result_insert_failed", extra={"player_name": player_name, "game_mode": game_mode})
        raise StorageError("Could not save game result") from exc

    if outcome.is_new_best:
        invalidate_leaderboard_cache(game_mode)
    logger.info(
        "result_recorded",
        extra={"player_name": player_name, "game_mode": game_mode, "score": score, "is_new_best": outcome.is_new_best},
    )
    return outcome


def _replace_if_better(session: Session, player_name: str, game_mode: int, fields: dict) -> SubmitOutcome:
    stmt = (
        update(models.GameResult)
        .where(col(models.GameResult.player_name) == player_name)
        .where(col(models.GameResult.game_mode) == game_mode)
        .where(col(models.GameResult.score) < fields["score"])
        .values(**fields)
        .execution_options(synchronize_session=False)
    )
    try:
        result = session.execute(stmt)
        session.commit()
        record_id = _result_id(session, player_name, game_mode)
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("result_update_failed", extra={"player_name": player_name, "game_mode": game_mode})
        raise StorageError("Could not save game result") from exc
    return SubmitOutcome(is_new_best=result.rowcount == 1, record_id=record_id)


_SCORE_SCALE = round(1 / SCORE_EPSILON)
_ACCURACY_SCALE = round(1 / ACCURACY_EPSILON)


def _sort_key(r: models.GameResult) -> Tuple[int, int, float, int]:
    # fixed-width buckets keep the order a total one, independent of input order
    return (
        -math.floor(r.score * _SCORE_SCALE),
        -math.floor(r.accuracy * _ACCURACY_SCALE),
        -r.lps,
        r.id or 0,
    )


def result_to_dict(r: models.GameResult) -> dict:
    created_at = as_utc(r.created_at)
    updated_at = as_utc(r.updated_at)
    return {
        'id': r.id,
        'player_name': r.player_name,
        'game_mode': r.game_mode,
        'score': r.score,
        'lps': r.lps,
        'accuracy': r.accuracy,
        'rank': r.rank,
        'time': r.time,
        'ms_per_letter': r.ms_per_letter,
        'isTwitterUser': r.is_twitter_user,
        'created_at': created_at.isoformat() if created_at else None,
        'updated_at': updated_at.isoformat() if updated_at else None,
    }


def get_leaderboard(session: Session, game_mode: int, limit: Optional[int] = 10,
                    policy: Optional[Policy] = None) -> List[dict]:
    """Return the best records for a mode, highest score first.

    Scores are compared in SCORE_EPSILON buckets, ties fall back to accuracy
    in ACCURACY_EPSILON buckets, then lps, then id so the order is stable
    across reads.
    If limit is None, return all rows; otherwise return up to limit.
    """
    scan_limit = (policy or Policy()).leaderboard_scan_limit
    rows = session.exec(
        select(models.GameResult)
        .where(models.GameResult.game_mode == game_mode)
        .order_by(desc(models.GameResult.score))
        .limit(scan_limit)
    ).all()
    ordered = sorted(rows, key=_sort_key)
    leaders = [result_to_dict(r) for r in ordered]
    if isinstance(limit, int) and limit > 0:
        return leaders[:limit]
    return leaders


def get_player_best(session: Session, player_name: str, game_mode: int) -> Optional[dict]:
    r = session.exec(
        select(models.GameResult)
        .where(models.GameResult.player_name == player_name)
        .where(models.GameResult.game_mode == game_mode)
    ).first()
    return result_to_dict(r) if r else None


def get_player_scores(session: Session, player_name: str) -> List[dict]:
    """All of a player's records, one per mode, ordered by mode."""
    rows = session.exec(
        select(models.GameResult)
        .where(models.GameResult.player_name == player_name)
        .order_by(models.GameResult.game_mode)
    ).all()
    return [result_to_dict(r) for r in rows]
