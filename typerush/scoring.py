"""
Server-side score validation and recomputation.

Every number a client reports is untrusted. The gates below reject anything
physically implausible or internally inconsistent, and the final score and
rank are always recomputed here from the raw timing, accuracy and error inputs.
"""

from dataclasses import dataclass
from typing import NamedTuple, Optional

from .config import Policy
from .errors import ConsistencyError, InputError


class RankTier(NamedTuple):
    tier: int
    min_score: float
    min_accuracy: float
    label: str


# evaluated top-down, first match wins
RANK_TIERS = [
    RankTier(6, 14, 98, "Grandmaster of Speed 👑"),
    RankTier(5, 11, 95, "Turbo Typelord 💎"),
    RankTier(4, 7, 90, "Chain Slayer ⚔️"),
    RankTier(3, 4, 85, "Speed Operator 🥇"),
    RankTier(2, 1, 80, "Latency Warrior 🥈"),
]
FLOOR_TIER = RankTier(1, 0, 0, "Typing Rookie 🥉")


@dataclass
class Metrics:
    player_name: str
    game_mode: int
    lps: float
    accuracy: float
    time: float
    ms_per_letter: float
    total_letters: int
    uncorrected_errors: int
    corrected_errors: int


@dataclass
class ScoreResult:
    score: float
    rank: str
    tier: int


def calculate_score(lps: float, accuracy: float, game_mode: int, total_errors: int,
                    corrected_errors: int, total_letters: int,
                    policy: Optional[Policy] = None) -> float:
    correction_rate = corrected_errors / total_errors if total_errors > 0 else 0.0
    error_rate = total_errors / total_letters if total_letters > 0 else 0.0
    # at most a 15% bonus, shrinking as the raw error rate grows
    correction_bonus = correction_rate * (1 - min(error_rate * 10, 0.5)) * 0.15

    accuracy_ratio = accuracy / 100
    base = lps * (accuracy_ratio * accuracy_ratio)
    with_correction = base * (1 + correction_bonus)

    multipliers = (policy or Policy()).mode_multipliers
    return with_correction * multipliers.get(game_mode, 1.0)


def rank_tier(score: float, accuracy: float) -> RankTier:
    for tier in RANK_TIERS:
        if score >= tier.min_score and accuracy >= tier.min_accuracy:
            return tier
    return FLOOR_TIER


def calculate_rank(score: float, accuracy: float) -> str:
    return rank_tier(score, accuracy).label


def check_game_mode(game_mode, policy: Policy) -> int:
    if isinstance(game_mode, bool) or game_mode not in policy.time_windows:
        raise InputError("Invalid game mode")
    return game_mode


def _check_binding(run, metrics: Metrics) -> None:
    if metrics.game_mode != run.game_mode or metrics.player_name != run.player_name:
        raise ConsistencyError("Run session does not match submission")


def _check_speed(metrics: Metrics, policy: Policy) -> None:
    if not metrics.lps > 0:
        raise InputError("LPS must be greater than 0")
    if not metrics.lps <= policy.max_lps:
        raise InputError("LPS out of valid range")


def _check_accuracy(metrics: Metrics) -> None:
    if not 0 <= metrics.accuracy <= 100:
        raise InputError("Accuracy out of valid range")


def _check_time(metrics: Metrics, policy: Policy) -> None:
    window = policy.time_windows.get(metrics.game_mode)
    if window is None:
        raise InputError("Invalid game mode")
    low, high = window
    if not metrics.time >= low:
        raise InputError(f"Time too short for {metrics.game_mode}-word mode. Minimum: {low:g}s")
    if not metrics.time <= high:
        raise InputError(f"Time too long for {metrics.game_mode}-word mode. Maximum: {high:g}s")


def _check_ms_per_letter(metrics: Metrics, policy: Policy) -> None:
    if not 0 <= metrics.ms_per_letter <= policy.max_ms_per_letter:
        raise InputError("ms_per_letter out of valid range")
    # both fields come from the same timing, so they have to agree
    expected = 1000 / metrics.lps
    if not abs(metrics.ms_per_letter - expected) <= policy.ms_per_letter_tolerance:
        raise ConsistencyError("ms_per_letter calculation mismatch")


def _check_counts(metrics: Metrics, policy: Policy) -> None:
    for value in (metrics.total_letters, metrics.uncorrected_errors, metrics.corrected_errors):
        if not 0 <= value <= policy.max_letter_count:
            raise InputError("Error counts out of valid range")


def validate_submission(run, metrics: Metrics, policy: Policy) -> ScoreResult:
    """Run every gate against a redeemed run and recompute score and rank.

    ``run`` is anything with ``game_mode`` and ``player_name`` attributes,
    normally the RedeemedRun returned by crud.redeem_run. Raises InputError or
    ConsistencyError on the first failing gate; nothing is clamped.
    """
    _check_binding(run, metrics)
    _check_speed(metrics, policy)
    _check_accuracy(metrics)
    _check_time(metrics, policy)
    _check_ms_per_letter(metrics, policy)
    _check_counts(metrics, policy)

    total_errors = metrics.uncorrected_errors + metrics.corrected_errors
    score = calculate_score(
        metrics.lps,
        metrics.accuracy,
        metrics.game_mode,
        total_errors,
        metrics.corrected_errors,
        metrics.total_letters,
        policy,
    )
    if not 0 <= score <= policy.max_score:
        raise InputError("Score out of valid range")

    tier = rank_tier(score, metrics.accuracy)
    return ScoreResult(score=score, rank=tier.label, tier=tier.tier)
