"""
Driver Scoring
==============

1. **Eligibility** -- hard filters: caller exclusions, ONLINE + available,
   verified, no current delivery, minimum rating, vehicle class and a
   location no older than twice the update interval.
2. **Distance**    -- great-circle distance to pickup, capped by the
   caller's radius.
3. **Scoring**     -- weighted sum of four 0-100 sub-scores:

   score = 0.4 x distance + 0.3 x rating + 0.2 x availability + 0.1 x experience

Complexity
----------
O(1) per driver for eligibility and scoring; ranking N drivers is
O(N log N).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Collection, Optional

from .entities import DriverSnapshot, MatchCandidate, ScoreBreakdown
from .enums import DriverStatus, VehicleClass, VerificationStatus
from .geo import eta_minutes

WEIGHTS = ScoreBreakdown(distance=0.4, rating=0.3, availability=0.2, experience=0.1)

# (upper bound km, score) -- first bracket that contains the distance wins
DISTANCE_BRACKETS: tuple[tuple[float, float], ...] = (
    (1.0, 100.0),
    (3.0, 80.0),
    (5.0, 60.0),
    (8.0, 40.0),
)
FAR_DISTANCE_SCORE = 20.0

# (minimum completed deliveries, score)
EXPERIENCE_BANDS: tuple[tuple[int, float], ...] = (
    (1000, 100.0),
    (500, 90.0),
    (200, 80.0),
    (100, 70.0),
    (50, 60.0),
    (20, 50.0),
    (10, 40.0),
    (5, 30.0),
    (1, 20.0),
)

STALE_PENALTY = 20.0
IDLE_PENALTY = 10.0
IDLE_AFTER = timedelta(hours=1)


@dataclass(frozen=True)
class EligibilityPolicy:
    min_rating: float = 3.0
    update_interval: timedelta = timedelta(seconds=30)
    stale_is_ineligible: bool = True

    @property
    def stale_after(self) -> timedelta:
        return self.update_interval * 2


def location_age(driver: DriverSnapshot, now: datetime) -> Optional[timedelta]:
    if driver.location_at is None:
        return None
    return now - driver.location_at


def is_stale(driver: DriverSnapshot, now: datetime, policy: EligibilityPolicy) -> bool:
    age = location_age(driver, now)
    return age is None or age > policy.stale_after


def ineligibility_reason(
    driver: DriverSnapshot,
    now: datetime,
    policy: EligibilityPolicy,
    vehicle_class: Optional[VehicleClass] = None,
    exclude_drivers: Collection[str] = (),
) -> Optional[str]:
    """Return why *driver* cannot be offered the delivery, or ``None``."""
    if driver.driver_id in exclude_drivers:
        return "excluded"
    if driver.status != DriverStatus.ONLINE or not driver.is_available:
        return "not available"
    if driver.verification_status != VerificationStatus.VERIFIED:
        return "not verified"
    if driver.current_delivery_id:
        return "already assigned"
    if driver.rating < policy.min_rating:
        return "rating below minimum"
    if vehicle_class is not None and driver.vehicle_class != vehicle_class:
        return "vehicle class mismatch"
    if policy.stale_is_ineligible and is_stale(driver, now, policy):
        return "stale location"
    return None


# ── Sub-scores (0-100) ────────────────────────────────────────────────


def distance_score(distance_km: float) -> float:
    for upper, score in DISTANCE_BRACKETS:
        if distance_km <= upper:
            return score
    return FAR_DISTANCE_SCORE


def rating_score(rating: float) -> float:
    if not rating or rating <= 0:
        return 0.0
    return min(100.0, rating / 5.0 * 100.0)


def availability_score(
    driver: DriverSnapshot, now: datetime, policy: EligibilityPolicy
) -> float:
    score = 100.0
    age = location_age(driver, now)
    if age is None or age > policy.update_interval:
        score -= STALE_PENALTY
    if driver.available_since is not None and now - driver.available_since > IDLE_AFTER:
        score -= IDLE_PENALTY
    return max(0.0, score)


def experience_score(completed_count: int) -> float:
    for minimum, score in EXPERIENCE_BANDS:
        if completed_count >= minimum:
            return score
    return 0.0


def score_driver(
    driver: DriverSnapshot,
    distance_km: float,
    now: datetime,
    policy: EligibilityPolicy,
) -> MatchCandidate:
    breakdown = ScoreBreakdown(
        distance=distance_score(distance_km),
        rating=rating_score(driver.rating),
        availability=availability_score(driver, now, policy),
        experience=experience_score(driver.completed_count),
    )
    composite = (
        breakdown.distance * WEIGHTS.distance
        + breakdown.rating * WEIGHTS.rating
        + breakdown.availability * WEIGHTS.availability
        + breakdown.experience * WEIGHTS.experience
    )
    return MatchCandidate(
        driver=driver,
        distance_km=distance_km,
        eligible=True,
        score=round(composite, 2),
        breakdown=breakdown,
        pickup_eta_minutes=eta_minutes(distance_km),
    )


def rank(candidates: list[MatchCandidate], limit: int) -> list[MatchCandidate]:
    """Highest score first; ties go to the closer driver."""
    ordered = sorted(candidates, key=lambda c: (-c.score, c.distance_km, c.driver_id))
    return ordered[: max(0, limit)]
