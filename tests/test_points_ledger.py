import asyncio

import pytest
from sqlalchemy import select

from shared.database import PointsTransaction
from loyalty_api.services.points_ledger import (
    InsufficientBalance,
    PointsLedger,
    ReceiverNotEligible,
    TX_ADMIN_ADJUSTMENT,
    TX_REFERRAL,
)


@pytest.mark.asyncio
async def test_adjust_credits_and_records_transaction(session_factory) -> None:
    async with session_factory() as session:
        balance = await PointsLedger.adjust(session, "alice", 300, TX_ADMIN_ADJUSTMENT, reference_id="seed")
        await session.commit()

    assert balance == 300

    async with session_factory() as session:
        assert await PointsLedger.get_balance(session, "alice") == 300
        history = await PointsLedger.get_history(session, "alice")

    assert len(history) == 1
    assert history[0].amount == 300
    assert history[0].balance_after == 300
    assert history[0].transaction_type == TX_ADMIN_ADJUSTMENT


@pytest.mark.asyncio
async def test_unknown_user_has_zero_balance(session_factory) -> None:
    async with session_factory() as session:
        assert await PointsLedger.get_balance(session, "nobody") == 0
        assert await PointsLedger.get_history(session, "nobody") == []


@pytest.mark.asyncio
async def test_debit_below_zero_is_rejected(session_factory) -> None:
    async with session_factory() as session:
        await PointsLedger.adjust(session, "bob", 100, TX_ADMIN_ADJUSTMENT)
        await session.commit()

    async with session_factory() as session:
        with pytest.raises(InsufficientBalance):
            await PointsLedger.adjust(session, "bob", -150, TX_ADMIN_ADJUSTMENT)
        await session.rollback()

    async with session_factory() as session:
        assert await PointsLedger.get_balance(session, "bob") == 100


@pytest.mark.asyncio
async def test_ceiling_blocks_credit(session_factory) -> None:
    async with session_factory() as session:
        await PointsLedger.adjust(session, "carol", 60, TX_ADMIN_ADJUSTMENT)
        await session.commit()

    async with session_factory() as session:
        with pytest.raises(ReceiverNotEligible):
            await PointsLedger.adjust(session, "carol", 50, TX_REFERRAL, ceiling=50)
        await session.rollback()

    async with session_factory() as session:
        assert await PointsLedger.get_balance(session, "carol") == 60


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(session_factory) -> None:
    async with session_factory() as session:
        await PointsLedger.adjust(session, "dave", 500, TX_ADMIN_ADJUSTMENT)
        await session.commit()

    async def debit():
        async with session_factory() as session:
            try:
                await PointsLedger.adjust(session, "dave", -300, TX_ADMIN_ADJUSTMENT)
                await session.commit()
                return True
            except InsufficientBalance:
                await session.rollback()
                return False

    results = await asyncio.gather(debit(), debit(), debit())

    assert results.count(True) == 1

    async with session_factory() as session:
        assert await PointsLedger.get_balance(session, "dave") == 200
        rows = await session.execute(
            select(PointsTransaction).where(PointsTransaction.user_id == "dave")
        )
        assert len(rows.scalars().all()) == 2
