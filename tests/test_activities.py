import pytest
from temporalio.testing import ActivityEnvironment

from cryptopay.activities import activities
from cryptopay.db.models import Order
from cryptopay.types.payment_types import DetectionSummary

from conftest import add_order


@pytest.fixture
def env(session_factory, monkeypatch):
    monkeypatch.setattr(activities, "SessionLocal", session_factory)
    return ActivityEnvironment()


@pytest.mark.asyncio
async def test_monitor_sweep_activity_returns_summary(env, monkeypatch):
    seen = {}

    async def fake_sweep(db, settings, registry):
        seen["coins"] = settings.supported_coins
        return DetectionSummary(addresses_monitored=2, addresses_processed=2, new_transactions_detected=1)

    monkeypatch.setattr(activities, "monitor_sweep", fake_sweep)

    result = await env.run(activities.activity_monitor_sweep)

    assert result["addressesMonitored"] == 2
    assert result["newTransactionsDetected"] == 1
    assert "BTC" in seen["coins"]


@pytest.mark.asyncio
async def test_monitor_sweep_activity_propagates_failures(env, monkeypatch):
    async def broken_sweep(db, settings, registry):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(activities, "monitor_sweep", broken_sweep)

    with pytest.raises(RuntimeError):
        await env.run(activities.activity_monitor_sweep)


@pytest.mark.asyncio
async def test_settle_expired_activity(env, db):
    order = add_order(db)

    assert await env.run(activities.activity_settle_expired) == 1

    db.expire_all()
    assert db.get(Order, order.id).crypto_payment_status == "expired"
