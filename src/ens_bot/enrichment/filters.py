"""
Acceptance policy for admitted candidates.

Checks run in a fixed order and stop at the first failure:

    1. status      - the event is in a postable state (bids: active, enough
                     validity left)
    2. identity    - the subject resolves to a display name; unidentified
                     events are never stored
    3. age         - now - occurred_at <= max_age (boundary accepted)
    4. value       - value >= max(default minimum, minimum of every club tag);
                     stablecoin bids use a flat minimum instead

Each failure carries its own FilterReason so metrics and logs can tell them
apart. The checks never touch the network.

Minimums, club minimums and max ages are operator-tunable: PolicyStore keeps
them in system_state under the autopost_min_eth_* and autopost_*max_age_hours*
keys and the dashboard edits them.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, NamedTuple, Optional

from ens_bot.storage.models import EventCategory

from .classifier import CLUB_10K, CLUB_999, Classifier, ClassifierResult, PatternClassifier

if TYPE_CHECKING:
    from ens_bot.ingestion.models import CandidateEvent
    from ens_bot.storage.repositories import SystemStateRepository

logger = logging.getLogger(__name__)


class FilterReason(str, Enum):
    """Why a candidate was rejected."""

    INVALID_STATUS = "invalid_status"
    UNRESOLVABLE_IDENTITY = "unresolvable_identity"
    TOO_OLD = "too_old"
    BELOW_THRESHOLD = "below_threshold"


@dataclass
class FilterPolicy:
    """Thresholds for one event category."""

    default_minimum: Decimal
    max_age: timedelta
    club_minimums: dict[str, Decimal] = field(default_factory=dict)
    stablecoin_minimum: Optional[Decimal] = None
    # Bids only: how much validity must remain for the offer to be worth posting
    min_validity_remaining: Optional[timedelta] = None


def default_policies() -> dict[EventCategory, FilterPolicy]:
    return {
        EventCategory.SALE: FilterPolicy(
            default_minimum=Decimal("0.1"),
            max_age=timedelta(hours=1),
            club_minimums={CLUB_10K: Decimal("0.5"), CLUB_999: Decimal("5")},
        ),
        EventCategory.REGISTRATION: FilterPolicy(
            default_minimum=Decimal("0.1"),
            max_age=timedelta(hours=2),
        ),
        EventCategory.BID: FilterPolicy(
            default_minimum=Decimal("5"),
            max_age=timedelta(hours=24),
            club_minimums={CLUB_10K: Decimal("5"), CLUB_999: Decimal("20")},
            stablecoin_minimum=Decimal("100"),
            min_validity_remaining=timedelta(minutes=30),
        ),
    }


# =============================================================================
# OPERATOR-TUNABLE THRESHOLDS
# =============================================================================


class PolicyKeys(NamedTuple):
    """system_state keys holding one category's tunable thresholds."""

    minimum: str
    max_age_hours: str
    clubs: dict[str, str]


POLICY_STATE_KEYS: dict[EventCategory, PolicyKeys] = {
    EventCategory.SALE: PolicyKeys(
        minimum="autopost_min_eth_default",
        max_age_hours="autopost_max_age_hours",
        clubs={CLUB_10K: "autopost_min_eth_10k", CLUB_999: "autopost_min_eth_999"},
    ),
    EventCategory.REGISTRATION: PolicyKeys(
        minimum="autopost_min_eth_registrations",
        max_age_hours="autopost_max_age_hours_registrations",
        clubs={},
    ),
    EventCategory.BID: PolicyKeys(
        minimum="autopost_bids_min_eth_default",
        max_age_hours="autopost_bids_max_age_hours",
        clubs={CLUB_10K: "autopost_bids_min_eth_10k", CLUB_999: "autopost_bids_min_eth_999"},
    ),
}

POLICY_FIELDS = frozenset({"min_eth", "club_min_eth", "max_age_hours"})


def parse_eth_amount(value: Any, label: str) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"{label} must be a number")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"{label} must be a number, got {value!r}") from None
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"{label} must be a non-negative number")
    return amount


def parse_max_age_hours(value: Any, label: str) -> timedelta:
    if isinstance(value, bool):
        raise ValueError(f"{label} must be a number of hours")
    try:
        hours = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{label} must be a number of hours, got {value!r}") from None
    if not math.isfinite(hours) or hours <= 0:
        raise ValueError(f"{label} must be a positive number of hours")
    return timedelta(hours=hours)


def _copy_policies(
    policies: dict[EventCategory, FilterPolicy]
) -> dict[EventCategory, FilterPolicy]:
    return {c: replace(p, club_minimums=dict(p.club_minimums)) for c, p in policies.items()}


def policy_to_dict(policy: FilterPolicy) -> dict:
    return {
        "min_eth": str(policy.default_minimum),
        "club_min_eth": {tag: str(v) for tag, v in policy.club_minimums.items()},
        "max_age_hours": policy.max_age.total_seconds() / 3600,
    }


def apply_policy_changes(
    policies: dict[EventCategory, FilterPolicy], changes: Any
) -> dict[EventCategory, FilterPolicy]:
    """
    Return a copy of `policies` with `changes` applied.

    `changes` looks like {"sale": {"min_eth": "0.2", "club_min_eth": {"999": "8"},
    "max_age_hours": 2}}. Every field is optional. Raises ValueError on the
    first bad entry; `policies` itself is never modified.
    """
    if not isinstance(changes, dict):
        raise ValueError("thresholds must be an object keyed by category")

    updated = _copy_policies(policies)
    for name, fields in changes.items():
        try:
            category = EventCategory(name)
        except ValueError:
            raise ValueError(f"Unknown category '{name}'") from None
        if not isinstance(fields, dict):
            raise ValueError(f"thresholds.{name} must be an object")
        unknown = set(fields) - POLICY_FIELDS
        if unknown:
            raise ValueError(f"Unknown threshold fields for {name}: {sorted(unknown)}")

        policy = updated[category]
        if "min_eth" in fields:
            policy.default_minimum = parse_eth_amount(fields["min_eth"], f"{name}.min_eth")
        if "max_age_hours" in fields:
            policy.max_age = parse_max_age_hours(fields["max_age_hours"], f"{name}.max_age_hours")

        clubs = fields.get("club_min_eth") or {}
        if not isinstance(clubs, dict):
            raise ValueError(f"{name}.club_min_eth must be an object")
        for tag, value in clubs.items():
            if tag not in POLICY_STATE_KEYS[category].clubs:
                raise ValueError(f"{name} has no '{tag}' club minimum")
            policy.club_minimums[tag] = parse_eth_amount(value, f"{name}.club_min_eth.{tag}")

    return updated


@dataclass(frozen=True)
class FilterDecision:
    """Outcome of FilterStage.evaluate."""

    accepted: bool
    reason: Optional[FilterReason] = None
    detail: str = ""
    threshold: Optional[Decimal] = None
    tags: tuple[str, ...] = ()

    @property
    def code(self) -> str:
        return "accepted" if self.accepted else self.reason.value


# =============================================================================
# INDIVIDUAL CHECKS
# =============================================================================


def check_status(
    candidate: "CandidateEvent", policy: FilterPolicy, now: datetime
) -> tuple[bool, str]:
    if candidate.value <= 0:
        return False, f"Non-positive value {candidate.value}"
    if not candidate.is_eth and not (candidate.is_stablecoin and policy.stablecoin_minimum):
        return False, f"Unsupported currency {candidate.currency}"

    if candidate.category == EventCategory.BID:
        if not candidate.is_active:
            return False, f"Bid status is '{candidate.status}'"
        if policy.min_validity_remaining is not None:
            if candidate.valid_until is None:
                return False, "Bid has no expiry"
            remaining = candidate.valid_until - now
            if remaining <= policy.min_validity_remaining:
                return False, f"Bid expires in {remaining.total_seconds() / 60:.0f}m"
    return True, ""


def check_identity(candidate: "CandidateEvent") -> tuple[bool, str]:
    if not candidate.subject_name:
        return False, f"No name for token {candidate.token_id}"
    return True, ""


def check_age(
    candidate: "CandidateEvent", max_age: timedelta, now: datetime
) -> tuple[bool, str]:
    age = now - candidate.occurred_at
    if age > max_age:
        return False, f"Event too old ({age.total_seconds():.0f}s > {max_age.total_seconds():.0f}s)"
    return True, ""


def compute_threshold(policy: FilterPolicy, tags: ClassifierResult) -> Decimal:
    """max(default minimum, minimum of every matching club)."""
    threshold = policy.default_minimum
    for tag in tags.tags:
        club_min = policy.club_minimums.get(tag)
        if club_min is not None and club_min > threshold:
            threshold = club_min
    return threshold


# =============================================================================
# STAGE
# =============================================================================


class FilterStage:
    """
    Applies the per-category policy to an admitted candidate.

    Usage:
        stage = FilterStage()
        decision = stage.evaluate(candidate)
        if not decision.accepted:
            log(decision.reason)
    """

    def __init__(
        self,
        policies: Optional[dict[EventCategory, FilterPolicy]] = None,
        classifier: Optional[Classifier] = None,
    ) -> None:
        self.policies = policies or default_policies()
        self._classifier = classifier or PatternClassifier()

    def policy_for(self, category: EventCategory) -> FilterPolicy:
        return self.policies[category]

    def _tags(self, name: str) -> ClassifierResult:
        try:
            return self._classifier.tags_for(name)
        except Exception as e:
            logger.warning(f"Classifier failed for {name}, treating as untagged: {e}")
            return ClassifierResult()

    def evaluate(
        self, candidate: "CandidateEvent", now: Optional[datetime] = None
    ) -> FilterDecision:
        now = now or datetime.now(timezone.utc)
        policy = self.policy_for(candidate.category)

        passed, detail = check_status(candidate, policy, now)
        if not passed:
            return FilterDecision(False, FilterReason.INVALID_STATUS, detail)

        passed, detail = check_identity(candidate)
        if not passed:
            return FilterDecision(False, FilterReason.UNRESOLVABLE_IDENTITY, detail)

        passed, detail = check_age(candidate, policy.max_age, now)
        if not passed:
            return FilterDecision(False, FilterReason.TOO_OLD, detail)

        if candidate.is_stablecoin and policy.stablecoin_minimum is not None:
            threshold = policy.stablecoin_minimum
            tags: tuple[str, ...] = ()
        else:
            result = self._tags(candidate.subject_name)
            threshold = compute_threshold(policy, result)
            tags = result.tags

        if candidate.value < threshold:
            return FilterDecision(
                False,
                FilterReason.BELOW_THRESHOLD,
                f"{candidate.value} {candidate.currency} < {threshold}",
                threshold=threshold,
                tags=tags,
            )

        return FilterDecision(True, threshold=threshold, tags=tags)


class PolicyStore:
    """
    Persists the FilterStage thresholds in system_state.

    load() overlays stored values on the stage's current policies, so the
    built-in defaults apply to anything never saved. update() validates a
    change set, writes it, then swaps the new policies into the stage.
    on_change receives every installed policy map (the publish worker keeps
    its post max ages in step with it).

    Usage:
        store = PolicyStore(stage, state_repo, on_change=worker.sync_max_ages)
        await store.load()
        await store.update({"sale": {"min_eth": "0.25"}})
    """

    def __init__(
        self,
        stage: FilterStage,
        state: "SystemStateRepository",
        on_change: Optional[Callable[[dict[EventCategory, FilterPolicy]], None]] = None,
    ) -> None:
        self._stage = stage
        self._state = state
        self._on_change = on_change

    @property
    def policies(self) -> dict[EventCategory, FilterPolicy]:
        return self._stage.policies

    async def _read(self, key: str, parse: Callable[[Any, str], Any], default: Any) -> Any:
        raw = await self._state.get(key)
        if raw is None:
            return default
        try:
            return parse(raw, key)
        except ValueError as e:
            logger.warning(f"Ignoring stored {key}={raw!r}: {e}")
            return default

    async def load(self) -> dict[EventCategory, FilterPolicy]:
        policies = _copy_policies(self._stage.policies)
        for category, keys in POLICY_STATE_KEYS.items():
            policy = policies.get(category)
            if policy is None:
                continue
            policy.default_minimum = await self._read(
                keys.minimum, parse_eth_amount, policy.default_minimum
            )
            policy.max_age = await self._read(
                keys.max_age_hours, parse_max_age_hours, policy.max_age
            )
            for tag, key in keys.clubs.items():
                value = await self._read(key, parse_eth_amount, policy.club_minimums.get(tag))
                if value is not None:
                    policy.club_minimums[tag] = value

        self._install(policies)
        logger.info(f"Filter thresholds: {self.to_dict()}")
        return policies

    async def save(self, policies: Optional[dict[EventCategory, FilterPolicy]] = None) -> None:
        policies = policies if policies is not None else self._stage.policies
        for category, keys in POLICY_STATE_KEYS.items():
            policy = policies.get(category)
            if policy is None:
                continue
            await self._state.set(keys.minimum, str(policy.default_minimum))
            await self._state.set(
                keys.max_age_hours, f"{policy.max_age.total_seconds() / 3600:g}"
            )
            for tag, key in keys.clubs.items():
                if tag in policy.club_minimums:
                    await self._state.set(key, str(policy.club_minimums[tag]))

    async def update(self, changes: Any) -> dict[EventCategory, FilterPolicy]:
        """Raises ValueError (nothing saved) when `changes` is invalid."""
        policies = apply_policy_changes(self._stage.policies, changes)
        await self.save(policies)
        self._install(policies)
        logger.info(f"Filter thresholds updated: {self.to_dict()}")
        return policies

    def _install(self, policies: dict[EventCategory, FilterPolicy]) -> None:
        self._stage.policies = policies
        if self._on_change:
            self._on_change(policies)

    def to_dict(self) -> dict:
        return {c.value: policy_to_dict(p) for c, p in self._stage.policies.items()}
