"""
Integration tests for the LedgerService facade.
"""

import threading
import uuid
from datetime import timedelta

import pytest

from quota_ledger.errors import MalformedBillingEventError
from quota_ledger.models.grant import Grant, GrantStatus, GrantTier
from quota_ledger.services.ledger_service import LedgerService
from quota_ledger.services.tenant_scope import TenantLockManager


def _tenant() -> str:
    return f"tenant-{uuid.uuid4().hex[:8]}"


def _stripe_event(event_type, obj, event_id=None):
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
        "type": event_type,
        "data": {"object": obj},
    }


def _stripe_subscription(sub_id, status="active", price_id="price_package_5", period_end=1893456000):
    return {
        "id": sub_id,
        "status": status,
        "current_period_start": period_end - 30 * 86400,
        "current_period_end": period_end,
        "cancel_at_period_end": False,
        "cancel_at": None,
        "items": {"data": [{"price": {"id": price_id}}]},
    }


class TestQuotaSummary:

    def test_stacking_breakdown(self, ledger, make_grant, make_resources, now):
        tenant_id = _tenant()
        make_grant(tenant_id, GrantTier.BASELINE, capacity=2, created_at=now - timedelta(days=10))
        make_grant(
            tenant_id, GrantTier.ADDON_SMALL, capacity=7,
            period_end=now + timedelta(days=20), created_at=now - timedelta(days=1),
        )
        make_resources(tenant_id, 5)

        summary = ledger.get_quota_summary(tenant_id)

        assert summary.total_quota == 7
        assert summary.used == 5
        assert summary.remaining == 2
        assert [(row.tier, row.used) for row in summary.breakdown] == [
            ("baseline", 2),
            ("addon_small", 3),
        ]
        assert summary.breakdown[1].days_until_renewal in (20, 21)

    def test_terminal_grants_excluded(self, ledger, make_grant):
        tenant_id = _tenant()
        make_grant(tenant_id, GrantTier.ADDON_LARGE, GrantStatus.EXPIRED, capacity=52)

        summary = ledger.get_quota_summary(tenant_id)

        assert summary.total_quota == 2
        assert [row.tier for row in summary.breakdown] == ["baseline"]


class TestProviderWebhookIngestion:

    def test_full_subscription_lifecycle(self, ledger):
        tenant_id = _tenant()
        sub = _stripe_subscription("sub_life", price_id="price_package_50")

        created = ledger.ingest_provider_webhook(_stripe_event("checkout.session.completed", {
            "mode": "subscription",
            "metadata": {"tenant_id": tenant_id},
            "subscription": sub,
        }))
        assert created.processed is True
        assert ledger.get_quota_summary(tenant_id).total_quota == 52

        ledger.ingest_provider_webhook(_stripe_event(
            "customer.subscription.updated", _stripe_subscription("sub_life", status="past_due")
        ))
        summary = ledger.get_quota_summary(tenant_id)
        assert summary.total_quota == 52
        assert summary.breakdown[1].status == GrantStatus.PAST_DUE.value

        ledger.ingest_provider_webhook(_stripe_event(
            "customer.subscription.deleted", _stripe_subscription("sub_life", status="canceled")
        ))
        assert ledger.get_quota_summary(tenant_id).total_quota == 2

    def test_redelivered_webhook_skipped(self, ledger):
        tenant_id = _tenant()
        payload = _stripe_event("checkout.session.completed", {
            "mode": "subscription",
            "metadata": {"tenant_id": tenant_id},
            "subscription": _stripe_subscription("sub_dup"),
        }, event_id="evt_dup")

        ledger.ingest_provider_webhook(payload)
        result = ledger.ingest_provider_webhook(payload)

        assert result.skipped_reason == "duplicate"

    def test_unhandled_type(self, ledger):
        result = ledger.ingest_provider_webhook(
            _stripe_event("invoice.payment_succeeded", {"id": "in_1"})
        )

        assert result.processed is False
        assert result.skipped_reason == "unhandled_event_type"

    def test_malformed_payload_raises(self, ledger):
        with pytest.raises(MalformedBillingEventError):
            ledger.ingest_provider_webhook({"type": "customer.subscription.updated"})

    def test_subscription_lookup_used(self, session_factory, provisioner, notifier, tier_catalog):
        fetched = []

        def lookup(subscription_id):
            fetched.append(subscription_id)
            return _stripe_subscription(subscription_id)

        service = LedgerService(
            session_factory, provisioner, notifier,
            tier_catalog=tier_catalog, subscription_lookup=lookup,
        )
        tenant_id = _tenant()

        result = service.ingest_provider_webhook(_stripe_event("checkout.session.completed", {
            "mode": "subscription",
            "metadata": {"tenant_id": tenant_id},
            "subscription": "sub_ref",
        }))

        assert result.processed is True
        assert fetched == ["sub_ref"]


class TestGracePeriodConfiguration:

    def test_default_grace_period_is_48_hours(self, ledger):
        assert ledger.grace_period == timedelta(hours=48)
        assert ledger.sweep.grace_period == timedelta(hours=48)

    def test_zero_grace_period_expires_at_period_end(
        self, session_factory, provisioner, notifier, tier_catalog, make_grant, now
    ):
        service = LedgerService(
            session_factory,
            provisioner,
            notifier,
            tier_catalog=tier_catalog,
            lock_manager=TenantLockManager(),
            grace_period=timedelta(0),
            lock_timeout=1.0,
        )
        tenant_id = _tenant()
        make_grant(tenant_id, GrantTier.BASELINE, capacity=2)
        addon = make_grant(
            tenant_id, GrantTier.ADDON_SMALL, GrantStatus.PAST_DUE,
            capacity=7, period_end=now, external_ref="sub_no_grace",
        )

        stats = service.run_expiration_sweep(now)

        assert service.grace_period == timedelta(0)
        assert service.sweep.grace_period == timedelta(0)
        assert stats.expired == 1
        session = session_factory()
        try:
            assert session.get(Grant, addon.id).status == GrantStatus.EXPIRED.value
        finally:
            session.close()


class TestSweepTimer:

    def test_timer_runs_sweep_until_stopped(self, ledger, monkeypatch):
        ran = threading.Event()

        def fake_run(now=None):
            ran.set()

        monkeypatch.setattr(ledger.sweep, "run", fake_run)

        ledger.start_sweep_timer(interval_seconds=0.01)
        try:
            assert ran.wait(timeout=2)
        finally:
            ledger.stop_sweep_timer(timeout=2)

        assert ledger._sweep_thread is None

    def test_start_is_idempotent(self, ledger, monkeypatch):
        monkeypatch.setattr(ledger.sweep, "run", lambda now=None: None)

        ledger.start_sweep_timer(interval_seconds=60)
        first = ledger._sweep_thread
        ledger.start_sweep_timer(interval_seconds=60)
        try:
            assert ledger._sweep_thread is first
        finally:
            ledger.stop_sweep_timer(timeout=2)
