"""Transaction ledger tests"""
import pytest
from datetime import timedelta

from timelens.core.errors import InvalidRequest, InvalidStateTransition, NotFoundError
from timelens.models.transaction import Transaction
from timelens.services import subscription_service, transaction_service
from timelens.utils.dates import utcnow


@pytest.mark.critical
class TestRecordEvent:
    """Idempotent recording keyed by the Stripe event id"""

    def test_record_paid(self, test_user, db_session):
        tx, created = transaction_service.record_event(
            "evt_1", test_user.id, 999, "USD", "paid", "subscription_start", db_session,
            subscription_id="sub_1", order_id="in_1"
        )

        assert created is True
        assert tx.amount_cents == 999
        assert tx.currency == "usd"
        assert tx.order_id == "in_1"

    def test_duplicate_event_is_noop(self, test_user, db_session):
        transaction_service.record_event("evt_1", test_user.id, 999, "usd", "paid", "recurring", db_session)
        tx, created = transaction_service.record_event("evt_1", test_user.id, 5, "usd", "failed", "recurring", db_session)

        assert created is False
        assert tx.amount_cents == 999
        assert tx.status == "paid"
        assert db_session.query(Transaction).count() == 1

    def test_failed_payment_marks_past_due(self, test_user, db_session):
        subscription_service.create_subscription("sub_1", test_user.id, "basic", db_session)

        transaction_service.record_event(
            "evt_fail", test_user.id, 999, "usd", "failed", "recurring", db_session, subscription_id="sub_1"
        )

        db_session.refresh(test_user)
        assert test_user.subscription_status == "past_due"
        assert subscription_service.get_subscription("sub_1", db_session).status == "past_due"

    def test_rejects_unknown_status_and_type(self, test_user, db_session):
        with pytest.raises(InvalidRequest):
            transaction_service.record_event("evt_x", test_user.id, 1, "usd", "settled", "recurring", db_session)
        with pytest.raises(InvalidRequest):
            transaction_service.record_event("evt_y", test_user.id, 1, "usd", "paid", "bonus", db_session)

    @pytest.mark.parametrize("reason,amount,expected", [
        ("subscription_create", 999, "subscription_start"),
        ("subscription_cycle", 999, "recurring"),
        ("subscription_update", 1000, "upgrade"),
        ("subscription_update", -1000, "downgrade"),
        (None, 999, "recurring"),
    ])
    def test_transaction_type_for_billing_reason(self, reason, amount, expected):
        assert transaction_service.transaction_type_for_billing_reason(reason, amount) == expected


@pytest.mark.high
class TestStatusChanges:
    """pending -> paid|failed, paid -> refunded"""

    def test_pending_to_paid(self, test_user, db_session):
        transaction_service.record_event("evt_1", test_user.id, 999, "usd", "pending", "recurring", db_session)

        tx = transaction_service.update_transaction_status("evt_1", "paid", db_session)

        assert tx.status == "paid"

    def test_failed_cannot_be_refunded(self, test_user, db_session):
        transaction_service.record_event("evt_1", test_user.id, 999, "usd", "failed", "recurring", db_session)

        with pytest.raises(InvalidStateTransition):
            transaction_service.update_transaction_status("evt_1", "refunded", db_session)

    def test_unknown_transaction(self, db_session):
        with pytest.raises(NotFoundError):
            transaction_service.update_transaction_status("evt_missing", "paid", db_session)

    def test_refund_order(self, test_user, db_session):
        transaction_service.record_event("evt_1", test_user.id, 999, "usd", "paid", "recurring", db_session, order_id="in_1")
        transaction_service.record_event("evt_2", test_user.id, 999, "usd", "paid", "recurring", db_session, order_id="in_2")

        refunded = transaction_service.refund_order("in_1", db_session)

        assert [tx.id for tx in refunded] == ["evt_1"]
        assert transaction_service.get_transaction("evt_2", db_session).status == "paid"
        assert [tx.id for tx in transaction_service.get_refund_transactions(db_session)] == ["evt_1"]


@pytest.mark.high
class TestRevenue:
    """Revenue totals and analytics"""

    def test_calculate_revenue_counts_paid_only(self, test_user, db_session):
        transaction_service.record_event("evt_1", test_user.id, 999, "usd", "paid", "subscription_start", db_session)
        transaction_service.record_event("evt_2", test_user.id, 1999, "usd", "paid", "recurring", db_session)
        transaction_service.record_event("evt_3", test_user.id, 500, "usd", "failed", "recurring", db_session)

        now = utcnow()
        revenue = transaction_service.calculate_revenue(db_session, now - timedelta(days=1), now + timedelta(days=1))

        assert revenue == 999 + 1999

    def test_revenue_analytics(self, test_user, db_session):
        transaction_service.record_event("evt_1", test_user.id, 999, "usd", "paid", "subscription_start", db_session)
        transaction_service.record_event("evt_2", test_user.id, 1999, "usd", "paid", "recurring", db_session)
        old = Transaction(
            id="evt_old", user_id=test_user.id, amount_cents=5000, currency="usd",
            status="paid", transaction_type="recurring", created_at=utcnow() - timedelta(days=90)
        )
        db_session.add(old)
        db_session.commit()

        analytics = transaction_service.revenue_analytics(db_session, period="month")

        assert analytics["total_revenue"] == 999 + 1999
        assert analytics["mrr"] == 1999
        assert analytics["revenue_by_type"] == {"subscription_start": 999, "recurring": 1999}
        assert transaction_service.revenue_analytics(db_session, period="year")["total_revenue"] == 999 + 1999 + 5000

    def test_revenue_analytics_rejects_bad_period(self, db_session):
        with pytest.raises(InvalidRequest):
            transaction_service.revenue_analytics(db_session, period="week")

    def test_user_and_failed_listings(self, test_user, test_user_2, db_session):
        transaction_service.record_event("evt_1", test_user.id, 999, "usd", "paid", "recurring", db_session)
        transaction_service.record_event("evt_2", test_user_2.id, 999, "usd", "failed", "recurring", db_session)

        assert [tx.id for tx in transaction_service.get_user_transactions(test_user.id, db_session)] == ["evt_1"]
        assert [tx.id for tx in transaction_service.get_failed_transactions(db_session)] == ["evt_2"]
