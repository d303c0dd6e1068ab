"""Credit balance checks, debits and deposits (library and add_credits CLI)."""
import pytest
from sqlalchemy import select

import add_credits
from cvrecon import billing, models
from cvrecon.errors import InputError, InsufficientCreditsError, NotFoundError


async def test_debit_charges_and_writes_ledger(session, make_user):
    user_id = await make_user(balance=1.0)

    balance = await billing.debit(session, user_id, 0.25, billing.ACTION_CV_PARSE_CHUNK, details="Chunk 1/1")
    await session.commit()

    assert balance == 0.75
    assert await billing.get_balance(session, user_id) == 0.75
    record = (await session.execute(select(models.UsageRecord))).scalar_one()
    assert (record.action, record.cost_usd, record.details) == ("cv_parse_chunk", 0.25, "Chunk 1/1")


async def test_debit_never_goes_negative(session, make_user):
    user_id = await make_user(balance=0.25)

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await billing.debit(session, user_id, 0.5, billing.ACTION_CV_PARSE_CHUNK)

    assert exc_info.value.current_balance == 0.25
    assert exc_info.value.required == 0.5
    assert await billing.get_balance(session, user_id) == 0.25
    assert (await session.execute(select(models.UsageRecord))).first() is None


async def test_ensure_balance(session, make_user):
    user_id = await make_user(balance=0.5)
    assert await billing.ensure_balance(session, user_id, 0.5) == 0.5
    with pytest.raises(InsufficientCreditsError):
        await billing.ensure_balance(session, user_id, 0.75)


async def test_check_balance_flags_low_balance(session, make_user, monkeypatch):
    monkeypatch.setattr(billing.settings.billing, "low_balance_warning", 0.5)
    low = await make_user(balance=0.25)
    high = await make_user(balance=5.0)

    low_status = await billing.check_balance(session, low)
    high_status = await billing.check_balance(session, high)

    assert low_status.has_balance and low_status.needs_reload
    assert high_status.has_balance and not high_status.needs_reload


async def test_add_credits(session, make_user):
    user_id = await make_user(balance=0.0)
    assert await billing.add_credits(session, user_id, 2.5) == 2.5
    await session.commit()
    record = (await session.execute(select(models.UsageRecord))).scalar_one()
    assert record.action == billing.ACTION_DEPOSIT


async def test_unknown_user(session):
    with pytest.raises(NotFoundError):
        await billing.get_balance(session, 999)
    with pytest.raises(NotFoundError):
        await billing.add_credits(session, 999, 1.0)


async def test_add_credits_rejects_non_positive_amounts(session, make_user):
    user_id = await make_user(balance=1.0)
    for amount in (0, -5.0):
        with pytest.raises(InputError):
            await billing.add_credits(session, user_id, amount)
    assert await billing.get_balance(session, user_id) == 1.0


async def test_top_up_command_commits_deposit(session_factory, make_user):
    user_id = await make_user(balance=0.5)

    balance = await add_credits.top_up(user_id, 10.0, "Conference voucher", session_factory=session_factory)

    assert balance == 10.5
    async with session_factory() as check:
        assert await billing.get_balance(check, user_id) == 10.5
        record = (await check.execute(select(models.UsageRecord))).scalar_one()
        assert (record.action, record.details) == (billing.ACTION_DEPOSIT, "Conference voucher")

    with pytest.raises(NotFoundError):
        await add_credits.top_up(999, 1.0, session_factory=session_factory)
