"""
Background job tests: stale transaction sweep and auto release.
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from config import Config
from conftest import BUYER_ID, SELLER_ID
from escrow_automation import EscrowAutomation
from models import CallbackOutcome, NormalizedEvent, OrderStatus


class BrokenEngine:
    async def release_matured_orders(self):
        raise RuntimeError("database went away")

    async def reconcile_stale(self):
        raise RuntimeError("database went away")


@pytest.mark.asyncio
async def test_sweep_accumulates_stats(engine, config, store, service, place_order, orders, mpesa):
    order = await place_order()
    await service.pay_order(order.id, BUYER_ID)
    mpesa.query_result = NormalizedEvent(
        correlation_ref='ignored', outcome=CallbackOutcome.SUCCESS, amount=Decimal('1000')
    )
    # Age the transaction past the collection timeout
    aged = datetime.now() - timedelta(seconds=config.collection_timeout + 60)
    transactions = store._state.transactions
    for transaction_id, transaction in list(transactions.items()):
        transactions[transaction_id] = transaction.model_copy(update={'created_at': aged})

    automation = EscrowAutomation(engine, config)
    summary = await automation.reconcile_stale_transactions()

    assert summary['finalized'] == 1
    assert automation.stats['sweeps'] == 1
    assert automation.stats['finalized'] == 1
    assert (await orders.get_order(order.id)).status == OrderStatus.PAID


@pytest.mark.asyncio
async def test_sweep_failure_is_logged_not_raised(config):
    automation = EscrowAutomation(BrokenEngine(), config)

    assert await automation.reconcile_stale_transactions() is None
    assert automation.stats['errors'] == 1


@pytest.mark.asyncio
async def test_start_schedules_jobs(engine, config):
    automation = EscrowAutomation(engine, config)
    await automation.start()
    try:
        job = automation.scheduler.get_job('reconcile_stale_transactions')
        assert job is not None
        assert job.trigger.interval == timedelta(seconds=config.reconcile_interval)
        assert automation.scheduler.get_job('auto_release_payments').trigger.interval == timedelta(
            seconds=config.auto_release_interval
        )
        assert automation.get_stats()['scheduled_jobs'] == 2

        await automation.start()
        assert len(automation.scheduler.get_jobs()) == 2
    finally:
        await automation.stop()

    assert not automation.is_running


@pytest.mark.asyncio
async def test_auto_release_job_pays_matured_orders(engine, config, store, service, place_order, collect, mpesa):
    order = await place_order()
    await collect(order)
    await service.mark_shipped(order.id, SELLER_ID, 'G4S-100')
    aged = datetime.now() - timedelta(days=config.auto_release_days, hours=1)
    store._state.orders[order.id] = store._state.orders[order.id].model_copy(update={'updated_at': aged})

    automation = EscrowAutomation(engine, config)
    summary = await automation.auto_release_payments()

    assert summary['released'] == 1
    assert automation.stats['auto_releases'] == 1
    assert 'auto_release_payments' in automation.stats['last_run']
    assert ('payout', SELLER_ID, Decimal('1000')) in mpesa.calls


@pytest.mark.asyncio
async def test_auto_release_failure_is_logged_not_raised(config):
    automation = EscrowAutomation(BrokenEngine(), config)

    assert await automation.auto_release_payments() is None
    assert automation.stats['errors'] == 1


@pytest.mark.asyncio
async def test_auto_release_disabled_with_zero_days(engine, config, monkeypatch):
    monkeypatch.setenv('AUTO_RELEASE_DAYS', '0')
    automation = EscrowAutomation(engine, Config())
    await automation.start()
    try:
        assert automation.scheduler.get_job('auto_release_payments') is None
        assert automation.get_stats()['scheduled_jobs'] == 1
    finally:
        await automation.stop()
