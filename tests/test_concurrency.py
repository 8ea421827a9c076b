import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from services.order.app import commands
from services.order.app.config import Settings
from services.order.app.errors import ConcurrentModification, InvalidTransition, PersistenceFailure
from services.order.app.repository import OrderRepository
from services.order.app.states import AuditAction, OrderStatus

DUE = datetime(2027, 1, 31, tzinfo=timezone.utc)


def interfering_repository(session_factory, interference, times=1):
    """
    save_order の直前に、別セッションで interference(order_id, session) を実行する
    リポジトリ。読み込みと書き込みの間に他のリクエストが割り込んだ状況を再現する。
    """
    state = {"remaining": times, "busy": False}

    class InterferingRepository(OrderRepository):
        async def save_order(self, order, expected_version):
            if state["remaining"] > 0 and not state["busy"]:
                state["remaining"] -= 1
                state["busy"] = True
                try:
                    async with session_factory() as other:
                        await interference(order.id, other)
                finally:
                    state["busy"] = False
            return await super().save_order(order, expected_version)

    return InterferingRepository


async def test_stale_write_is_rejected(paid_order, session_factory, reload):
    order = await paid_order()

    async with session_factory() as first, session_factory() as second:
        stale = await OrderRepository(first).find_order(order.id)
        await commands.dispatch_order(second, None, order.id, "ADMIN")

        stale.credit_due_date = DUE
        stale.audit_logs.append(AuditAction.UPDATED.value, "ADMIN", "stale edit")
        with pytest.raises(ConcurrentModification):
            await OrderRepository(first).save_order(stale, stale.version)
        await first.rollback()

    stored = await reload(order.id)
    assert stored.order_status is OrderStatus.IN_TRANSIT
    assert stored.credit_due_date is None
    assert len(stored.audit_logs) == len(order.audit_logs) + 1
    assert stored.audit_logs[-1].to_status is OrderStatus.IN_TRANSIT


async def test_conflict_is_retried_against_the_new_version(
    priced_order, session, session_factory, monkeypatch, reload
):
    order = await priced_order()

    async def extend(order_id, other):
        await commands.extend_credit_due_date(other, None, order_id, DUE, "ADMIN-2")

    monkeypatch.setattr(commands, "OrderRepository", interfering_repository(session_factory, extend))

    await commands.update_payment_status(session, None, order.id, "PAID", "ADMIN")

    stored = await reload(order.id)
    assert stored.order_status is OrderStatus.PAYMENT_CLEARED
    assert stored.credit_due_date == DUE
    assert stored.version == order.version + 2
    assert [e.action for e in stored.audit_logs][-2:] == [
        AuditAction.UPDATED.value,
        AuditAction.STATUS_CHANGE.value,
    ]


async def test_losing_racer_is_rejected_after_retry(
    paid_order, session, session_factory, monkeypatch, reload
):
    order = await paid_order()

    async def dispatch(order_id, other):
        await commands.dispatch_order(other, None, order_id, "ADMIN-2")

    monkeypatch.setattr(commands, "OrderRepository", interfering_repository(session_factory, dispatch))

    with pytest.raises(InvalidTransition):
        await commands.dispatch_order(session, None, order.id, "ADMIN")

    stored = await reload(order.id)
    assert stored.order_status is OrderStatus.IN_TRANSIT
    dispatches = [e for e in stored.audit_logs if e.to_status is OrderStatus.IN_TRANSIT]
    assert len(dispatches) == 1
    assert dispatches[0].changed_by == "ADMIN-2"


async def test_retries_are_bounded(priced_order, session, session_factory, monkeypatch, reload):
    order = await priced_order()

    async def extend(order_id, other):
        await commands.extend_credit_due_date(other, None, order_id, DUE, "ADMIN-2")

    monkeypatch.setattr(
        commands, "OrderRepository", interfering_repository(session_factory, extend, times=10)
    )

    with pytest.raises(ConcurrentModification):
        await commands.cancel_order(
            session, None, order.id, "ADMIN", settings=Settings(max_retries=2)
        )

    stored = await reload(order.id)
    assert stored.order_status is OrderStatus.WAITING_CLIENT_APPROVAL
    assert [e.action for e in stored.audit_logs][-2:] == [AuditAction.UPDATED.value] * 2


async def test_timeout_rolls_back_everything(priced_order, session, monkeypatch, reload):
    order = await priced_order()

    class SlowRepository(OrderRepository):
        async def save_order(self, order, expected_version):
            await asyncio.sleep(1)
            return await super().save_order(order, expected_version)

    monkeypatch.setattr(commands, "OrderRepository", SlowRepository)

    with pytest.raises(PersistenceFailure):
        await commands.cancel_order(
            session, None, order.id, "ADMIN", settings=Settings(persistence_timeout=0.05)
        )

    stored = await reload(order.id)
    assert stored.order_status is OrderStatus.WAITING_CLIENT_APPROVAL
    assert len(stored.audit_logs) == len(order.audit_logs)
    assert stored.version == order.version


async def test_storage_errors_become_persistence_failures(priced_order, session, monkeypatch, reload):
    order = await priced_order()

    class BrokenRepository(OrderRepository):
        async def save_order(self, order, expected_version):
            raise OperationalError("UPDATE orders", {}, Exception("disk I/O error"))

    monkeypatch.setattr(commands, "OrderRepository", BrokenRepository)

    with pytest.raises(PersistenceFailure):
        await commands.cancel_order(session, None, order.id, "ADMIN")

    stored = await reload(order.id)
    assert stored.order_status is OrderStatus.WAITING_CLIENT_APPROVAL
    assert len(stored.audit_logs) == len(order.audit_logs)


async def test_unexpected_errors_roll_back_and_propagate(priced_order, session, monkeypatch, reload):
    order = await priced_order()

    class FaultyRepository(OrderRepository):
        async def save_order(self, order, expected_version):
            raise ValueError("bad items payload")

    monkeypatch.setattr(commands, "OrderRepository", FaultyRepository)

    with pytest.raises(ValueError):
        await commands.cancel_order(session, None, order.id, "ADMIN")

    assert not session.in_transaction()
    stored = await reload(order.id)
    assert stored.order_status is OrderStatus.WAITING_CLIENT_APPROVAL
    assert stored.version == order.version
