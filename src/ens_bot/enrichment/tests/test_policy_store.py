"""
Tests for operator-tuned filter thresholds: validation, persistence in
system_state, and the effect on FilterStage decisions.
"""
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from ens_bot.enrichment.classifier import CLUB_10K, CLUB_999
from ens_bot.enrichment.filters import (
    FilterReason,
    FilterStage,
    PolicyStore,
    apply_policy_changes,
    default_policies,
)
from ens_bot.storage.models import EventCategory


# =============================================================================
# Change validation
# =============================================================================


class TestApplyPolicyChanges:

    def test_changes_are_applied_to_a_copy(self):
        policies = default_policies()

        updated = apply_policy_changes(policies, {
            "sale": {"min_eth": "0.25", "club_min_eth": {"999": 8}, "max_age_hours": 3},
        })

        sale = updated[EventCategory.SALE]
        assert sale.default_minimum == Decimal("0.25")
        assert sale.club_minimums == {CLUB_10K: Decimal("0.5"), CLUB_999: Decimal("8")}
        assert sale.max_age == timedelta(hours=3)
        assert policies[EventCategory.SALE].default_minimum == Decimal("0.1")
        assert policies[EventCategory.SALE].club_minimums[CLUB_999] == Decimal("5")

    def test_untouched_fields_keep_their_values(self):
        updated = apply_policy_changes(default_policies(), {"bid": {"max_age_hours": 12}})

        bid = updated[EventCategory.BID]
        assert bid.default_minimum == Decimal("5")
        assert bid.stablecoin_minimum == Decimal("100")
        assert bid.min_validity_remaining == timedelta(minutes=30)

    @pytest.mark.parametrize("changes", [
        {"mint": {"min_eth": "1"}},
        {"sale": {"min_eth": "lots"}},
        {"sale": {"min_eth": "-1"}},
        {"sale": {"min_eth": True}},
        {"sale": {"min_eth": "NaN"}},
        {"sale": {"max_age_hours": 0}},
        {"sale": {"max_age_hours": "soon"}},
        {"sale": {"colour": "red"}},
        {"sale": {"club_min_eth": {"100k": "1"}}},
        {"registration": {"club_min_eth": {"999": "1"}}},
        {"sale": "0.2"},
        ["sale"],
    ])
    def test_invalid_changes_rejected(self, changes):
        with pytest.raises(ValueError):
            apply_policy_changes(default_policies(), changes)


# =============================================================================
# Persistence
# =============================================================================


class TestPolicyStore:

    async def test_load_without_stored_values_keeps_defaults(self, state):
        stage = FilterStage()

        await PolicyStore(stage, state).load()

        assert stage.policies == default_policies()

    async def test_load_reads_stored_keys(self, state):
        state.values.update({
            "autopost_min_eth_default": "0.3",
            "autopost_min_eth_999": "7.5",
            "autopost_max_age_hours": "2",
            "autopost_min_eth_registrations": "0.05",
            "autopost_max_age_hours_registrations": "4",
            "autopost_bids_min_eth_10k": "6",
        })
        stage = FilterStage()

        await PolicyStore(stage, state).load()

        sale = stage.policy_for(EventCategory.SALE)
        assert sale.default_minimum == Decimal("0.3")
        assert sale.club_minimums[CLUB_999] == Decimal("7.5")
        assert sale.club_minimums[CLUB_10K] == Decimal("0.5")
        assert sale.max_age == timedelta(hours=2)
        registration = stage.policy_for(EventCategory.REGISTRATION)
        assert registration.default_minimum == Decimal("0.05")
        assert registration.max_age == timedelta(hours=4)
        assert stage.policy_for(EventCategory.BID).club_minimums[CLUB_10K] == Decimal("6")

    async def test_bad_stored_value_falls_back_to_default(self, state):
        state.values["autopost_min_eth_default"] = "not-a-number"
        stage = FilterStage()

        await PolicyStore(stage, state).load()

        assert stage.policy_for(EventCategory.SALE).default_minimum == Decimal("0.1")

    async def test_update_then_load_round_trip(self, state):
        await PolicyStore(FilterStage(), state).update({
            "sale": {"min_eth": "0.2", "club_min_eth": {"10k": "1"}},
            "bid": {"max_age_hours": 6},
        })
        assert state.values["autopost_min_eth_default"] == "0.2"
        assert state.values["autopost_min_eth_10k"] == "1"
        assert state.values["autopost_bids_max_age_hours"] == "6"

        restarted = FilterStage()
        await PolicyStore(restarted, state).load()

        assert restarted.policy_for(EventCategory.SALE).default_minimum == Decimal("0.2")
        assert restarted.policy_for(EventCategory.SALE).club_minimums[CLUB_10K] == Decimal("1")
        assert restarted.policy_for(EventCategory.BID).max_age == timedelta(hours=6)

    async def test_invalid_update_saves_nothing(self, state):
        stage = FilterStage()
        store = PolicyStore(stage, state)

        with pytest.raises(ValueError):
            await store.update({"sale": {"min_eth": "0.2"}, "bid": {"min_eth": "x"}})

        assert state.values == {}
        assert stage.policy_for(EventCategory.SALE).default_minimum == Decimal("0.1")

    async def test_update_changes_decisions(self, state, make_sale, now):
        stage = FilterStage()
        sale = make_sale(value="0.15")
        assert stage.evaluate(sale, now).accepted

        await PolicyStore(stage, state).update({"sale": {"min_eth": "0.2"}})

        decision = stage.evaluate(sale, now)
        assert decision.reason == FilterReason.BELOW_THRESHOLD
        assert decision.threshold == Decimal("0.2")

    async def test_on_change_receives_installed_policies(self, state):
        on_change = MagicMock()
        store = PolicyStore(FilterStage(), state, on_change=on_change)

        await store.load()
        await store.update({"registration": {"max_age_hours": 1.5}})

        assert on_change.call_count == 2
        policies = on_change.call_args.args[0]
        assert policies[EventCategory.REGISTRATION].max_age == timedelta(hours=1.5)

    async def test_to_dict(self, state):
        store = PolicyStore(FilterStage(), state)

        data = store.to_dict()

        assert data["sale"] == {
            "min_eth": "0.1",
            "club_min_eth": {"10k": "0.5", "999": "5"},
            "max_age_hours": 1.0,
        }
        assert data["registration"]["club_min_eth"] == {}
