"""
Tests for the subscription lifecycle.
"""

from datetime import datetime, timezone

import pytest
from freezegun import freeze_time

from conftest import put_tier


def _tier(dynamodb, tier_id="tier_t"):
    return dynamodb.Table("fundify-membership-tiers").get_item(Key={"pk": tier_id, "sk": "TIER"})["Item"]


def _stored(dynamodb, subscription_id):
    return dynamodb.Table("fundify-subscriptions").get_item(
        Key={"pk": subscription_id, "sk": "SUBSCRIPTION"}
    )["Item"]


def _subscribe(user_id="user_1", tier_id="tier_t", external_id="sub_ext_1", **kwargs):
    from shared.subscriptions import create_subscription

    return create_subscription(user_id, tier_id, external_subscription_id=external_id, **kwargs)


class TestNextBillingDate:
    """Tests for compute_next_billing_date()."""

    def test_monthly_and_yearly(self):
        from shared.subscriptions import compute_next_billing_date

        now = datetime(2026, 1, 1, tzinfo=timezone.utc)

        assert compute_next_billing_date("MONTHLY", now).startswith("2026-01-31")
        assert compute_next_billing_date("YEARLY", now).startswith("2027-01-01")

    def test_unknown_interval(self):
        from shared.errors import ValidationError
        from shared.subscriptions import compute_next_billing_date

        with pytest.raises(ValidationError):
            compute_next_billing_date("WEEKLY")


class TestCreateSubscription:
    """Tests for create_subscription()."""

    @freeze_time("2026-03-01 12:00:00")
    def test_admits_subscriber(self, seeded_tier, mock_dynamodb):
        subscription = _subscribe(external_customer_id="cus_1")

        assert subscription["status"] == "ACTIVE"
        assert subscription["creator_id"] == "creator_1"
        assert subscription["next_billing_date"].startswith("2026-03-31")
        assert _tier(mock_dynamodb)["current_subscribers"] == 1

        stored = _stored(mock_dynamodb, subscription["subscription_id"])
        assert stored["external_customer_id"] == "cus_1"
        assert stored["payment_failures"] == 0

    def test_yearly_tier(self, mock_dynamodb):
        put_tier(mock_dynamodb, interval="YEARLY", max_subscribers=None)

        with freeze_time("2026-03-01"):
            subscription = _subscribe()

        assert subscription["next_billing_date"].startswith("2027-03-01")

    def test_tier_full(self, seeded_tier, mock_dynamodb):
        from shared.errors import ResourceExhaustedError
        from shared.subscriptions import find_by_external_id, get_live_subscription

        _subscribe("user_1", external_id="sub_1")

        with pytest.raises(ResourceExhaustedError):
            _subscribe("user_2", external_id="sub_2")

        assert _tier(mock_dynamodb)["current_subscribers"] == 1
        assert find_by_external_id("sub_2") is None
        assert get_live_subscription("user_2", "creator_1") is None

    def test_already_subscribed_to_creator(self, mock_dynamodb):
        from shared.errors import AlreadySubscribedError

        put_tier(mock_dynamodb, max_subscribers=None)
        put_tier(mock_dynamodb, tier_id="tier_gold", max_subscribers=None)

        _subscribe("user_1", "tier_t", "sub_1")

        with pytest.raises(AlreadySubscribedError):
            _subscribe("user_1", "tier_gold", "sub_2")

        assert _tier(mock_dynamodb, "tier_gold")["current_subscribers"] == 0

    def test_replayed_external_id_is_conflict(self, mock_dynamodb):
        from shared.errors import ConflictError

        put_tier(mock_dynamodb, max_subscribers=None)

        _subscribe("user_1", external_id="sub_1")

        with pytest.raises(ConflictError) as exc_info:
            _subscribe("user_1", external_id="sub_1")

        assert exc_info.value.code == "subscription_exists"
        assert _tier(mock_dynamodb)["current_subscribers"] == 1

    def test_inactive_tier(self, mock_dynamodb):
        from shared.errors import ValidationError

        put_tier(mock_dynamodb, is_active=False)

        with pytest.raises(ValidationError):
            _subscribe()

    def test_missing_tier(self, mock_dynamodb):
        from shared.errors import NotFoundError

        with pytest.raises(NotFoundError):
            _subscribe(tier_id="nope")

    def test_creator_mismatch(self, seeded_tier):
        from shared.errors import ValidationError

        with pytest.raises(ValidationError):
            _subscribe(creator_id="someone_else")


class TestTransition:
    """Tests for transition()."""

    def test_pause_resume_cycle(self, seeded_tier, mock_dynamodb):
        from shared.subscriptions import transition

        sub_id = _subscribe()["subscription_id"]

        paused = transition(sub_id, "PAUSED", "evt_1")
        resumed = transition(sub_id, "ACTIVE", "evt_2")

        assert paused.applied and paused.previous_status == "ACTIVE"
        assert resumed.applied and resumed.status == "ACTIVE"
        assert _stored(mock_dynamodb, sub_id)["status"] == "ACTIVE"
        assert _tier(mock_dynamodb)["current_subscribers"] == 1

    def test_same_identity_applied_once(self, seeded_tier, mock_dynamodb):
        from shared.subscriptions import transition

        sub_id = _subscribe()["subscription_id"]

        first = transition(sub_id, "EXPIRED", "evt_1", record_payment_failure=True)
        second = transition(sub_id, "EXPIRED", "evt_1", record_payment_failure=True)

        assert first.applied
        assert not second.applied
        assert second.reason == "duplicate"
        assert _stored(mock_dynamodb, sub_id)["payment_failures"] == 1

    def test_cancel_releases_slot_and_clears_billing(self, seeded_tier, mock_dynamodb):
        from shared.subscriptions import get_live_subscription, transition

        subscription = _subscribe()
        sub_id = subscription["subscription_id"]

        result = transition(sub_id, "CANCELLED", "evt_cancel")

        assert result.applied
        stored = _stored(mock_dynamodb, sub_id)
        assert stored["status"] == "CANCELLED"
        assert "cancelled_at" in stored
        assert "next_billing_date" not in stored
        assert stored["end_date"] == subscription["next_billing_date"]
        assert _tier(mock_dynamodb)["current_subscribers"] == 0
        assert get_live_subscription("user_1", "creator_1") is None

    def test_cancelled_is_absorbing(self, seeded_tier, mock_dynamodb):
        from shared.subscriptions import transition

        sub_id = _subscribe()["subscription_id"]
        transition(sub_id, "CANCELLED", "evt_1")

        for target in ["ACTIVE", "PAUSED", "EXPIRED", "CANCELLED"]:
            result = transition(sub_id, target, f"evt_{target}")
            assert not result.applied
            assert result.status == "CANCELLED"
            assert result.reason == "illegal_transition"

        assert _stored(mock_dynamodb, sub_id)["status"] == "CANCELLED"
        assert _tier(mock_dynamodb)["current_subscribers"] == 0

    def test_double_cancel_never_goes_negative(self, seeded_tier, mock_dynamodb):
        from shared.subscriptions import transition

        sub_id = _subscribe()["subscription_id"]

        transition(sub_id, "CANCELLED", "evt_1")
        transition(sub_id, "CANCELLED", "evt_2")

        assert _tier(mock_dynamodb)["current_subscribers"] == 0

    def test_cancel_when_counter_already_zero(self, seeded_tier, mock_dynamodb):
        from shared.subscriptions import transition

        sub_id = _subscribe()["subscription_id"]
        put_tier(mock_dynamodb, current_subscribers=0)

        result = transition(sub_id, "CANCELLED", "evt_1")

        assert result.applied
        assert _stored(mock_dynamodb, sub_id)["status"] == "CANCELLED"
        assert _tier(mock_dynamodb)["current_subscribers"] == 0

    def test_illegal_transition_is_noop(self, seeded_tier, mock_dynamodb):
        from shared.subscriptions import transition

        sub_id = _subscribe()["subscription_id"]
        transition(sub_id, "PAUSED", "evt_1")

        result = transition(sub_id, "EXPIRED", "evt_2")

        assert not result.applied
        assert result.reason == "illegal_transition"
        assert _stored(mock_dynamodb, sub_id)["status"] == "PAUSED"

    def test_stale_event_is_ignored(self, seeded_tier, mock_dynamodb):
        from shared.subscriptions import transition

        sub_id = _subscribe(event_created=100)["subscription_id"]

        newer = transition(sub_id, "ACTIVE", "evt_paid", event_created=200, reset_payment_failures=True)
        older = transition(sub_id, "EXPIRED", "evt_failed", event_created=150, record_payment_failure=True)

        assert newer.applied
        assert not older.applied
        assert older.reason == "stale_event"
        stored = _stored(mock_dynamodb, sub_id)
        assert stored["status"] == "ACTIVE"
        assert stored["last_event_at"] == 200

    def test_older_provider_cancellation_still_applies(self, seeded_tier, mock_dynamodb):
        from shared.subscriptions import transition

        sub_id = _subscribe(event_created=1000)["subscription_id"]

        paid = transition(sub_id, "ACTIVE", "evt_paid", event_created=1010, reset_payment_failures=True)
        deleted = transition(sub_id, "CANCELLED", "evt_deleted", event_created=1005)

        assert paid.applied
        assert deleted.applied
        assert deleted.previous_status == "ACTIVE"
        stored = _stored(mock_dynamodb, sub_id)
        assert stored["status"] == "CANCELLED"
        assert stored["last_event_at"] == 1010
        assert _tier(mock_dynamodb)["current_subscribers"] == 0

    def test_provider_cancellation_after_user_action(self, seeded_tier, mock_dynamodb):
        from shared.subscriptions import pause_subscription, transition

        sub_id = _subscribe(event_created=1000)["subscription_id"]
        pause_subscription(sub_id, "user_1", "req-pause")

        deleted = transition(sub_id, "CANCELLED", "evt_deleted", event_created=1005)

        assert deleted.applied
        assert _stored(mock_dynamodb, sub_id)["status"] == "CANCELLED"
        assert _tier(mock_dynamodb)["current_subscribers"] == 0

    def test_refresh_updates_billing_date(self, seeded_tier, mock_dynamodb):
        from shared.subscriptions import transition

        sub_id = _subscribe()["subscription_id"]

        result = transition(sub_id, "ACTIVE", "evt_paid", next_billing_date="2030-01-01T00:00:00+00:00")

        assert result.applied
        assert _stored(mock_dynamodb, sub_id)["next_billing_date"] == "2030-01-01T00:00:00+00:00"

    def test_expired_recovers_on_payment(self, seeded_tier, mock_dynamodb):
        from shared.subscriptions import transition

        sub_id = _subscribe()["subscription_id"]
        transition(sub_id, "EXPIRED", "evt_1", record_payment_failure=True)

        result = transition(sub_id, "ACTIVE", "evt_2", reset_payment_failures=True)

        assert result.applied
        stored = _stored(mock_dynamodb, sub_id)
        assert stored["status"] == "ACTIVE"
        assert stored["payment_failures"] == 0

    def test_unknown_subscription(self, mock_dynamodb):
        from shared.errors import NotFoundError
        from shared.subscriptions import transition

        with pytest.raises(NotFoundError):
            transition("missing", "PAUSED", "evt_1")

    def test_unknown_status(self, mock_dynamodb):
        from shared.errors import ValidationError
        from shared.subscriptions import transition

        with pytest.raises(ValidationError):
            transition("any", "DELETED")

    def test_resubscribe_after_cancel(self, seeded_tier, mock_dynamodb):
        from shared.subscriptions import transition

        sub_id = _subscribe("user_1", external_id="sub_1")["subscription_id"]
        transition(sub_id, "CANCELLED", "evt_1")

        again = _subscribe("user_1", external_id="sub_2")

        assert again["status"] == "ACTIVE"
        assert _tier(mock_dynamodb)["current_subscribers"] == 1


class TestUserActions:
    """Tests for cancel/pause/resume_subscription()."""

    def test_owner_can_pause_and_resume(self, seeded_tier, mock_dynamodb):
        from shared.subscriptions import pause_subscription, resume_subscription

        sub_id = _subscribe()["subscription_id"]

        assert pause_subscription(sub_id, "user_1", "req_1").status == "PAUSED"
        assert resume_subscription(sub_id, "user_1", "req_2").status == "ACTIVE"

    def test_resume_does_not_reactivate_expired(self, seeded_tier, mock_dynamodb):
        from shared.subscriptions import resume_subscription, transition

        sub_id = _subscribe()["subscription_id"]
        transition(sub_id, "EXPIRED", "evt_failed")

        result = resume_subscription(sub_id, "user_1", "req_1")

        assert not result.applied
        assert _stored(mock_dynamodb, sub_id)["status"] == "EXPIRED"

    def test_non_owner_is_forbidden(self, seeded_tier):
        from shared.errors import ForbiddenError
        from shared.subscriptions import cancel_subscription

        sub_id = _subscribe()["subscription_id"]

        with pytest.raises(ForbiddenError):
            cancel_subscription(sub_id, "intruder", "req_1")

    def test_count_live_subscriptions(self, mock_dynamodb):
        from shared.subscriptions import cancel_subscription, count_live_subscriptions

        put_tier(mock_dynamodb, max_subscribers=None)
        first = _subscribe("user_1", external_id="sub_1")
        _subscribe("user_2", external_id="sub_2")

        cancel_subscription(first["subscription_id"], "user_1", "req_1")

        assert count_live_subscriptions("tier_t") == 1
