"""Prepaid credit balance: checks, debits and deposits.

Debits are a single conditional UPDATE (`balance >= cost`) plus a ledger row
in the same transaction, so two workers charging the same user can never
drive the balance below zero.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cvrecon import models
from cvrecon.config import settings
from cvrecon.errors import InputError, InsufficientCreditsError, NotFoundError

logger = logging.getLogger(__name__)

ACTION_CV_PARSE_CHUNK = "cv_parse_chunk"
ACTION_PUBMED_SEARCH = "pubmed_search"
ACTION_DEPOSIT = "deposit"


@dataclass
class BalanceStatus:
    """Snapshot returned by check_balance."""
    has_balance: bool
    current_balance: float
    needs_reload: bool


def needs_reload(balance: float) -> bool:
    return balance < settings.billing.low_balance_warning


async def get_balance(session: AsyncSession, user_id: int) -> float:
    """Current balance in USD.

    Raises:
        NotFoundError: If the user does not exist
    """
    balance = await session.scalar(select(models.User.balance_usd).where(models.User.id == user_id))
    if balance is None:
        raise NotFoundError("User not found")
    return float(balance)


async def check_balance(session: AsyncSession, user_id: int, required: float | None = None) -> BalanceStatus:
    """Whether the user can pay `required` (defaults to BILLING_MINIMUM_BALANCE)."""
    if required is None:
        required = settings.billing.minimum_balance
    balance = await get_balance(session, user_id)
    return BalanceStatus(
        has_balance=balance >= required,
        current_balance=balance,
        needs_reload=needs_reload(balance),
    )


async def ensure_balance(session: AsyncSession, user_id: int, required: float) -> float:
    """Return the balance, or raise InsufficientCreditsError if it cannot cover `required`."""
    status = await check_balance(session, user_id, required)
    if not status.has_balance:
        logger.info(f"User {user_id} balance ${status.current_balance:.2f} below required ${required:.2f}")
        raise InsufficientCreditsError(status.current_balance, required)
    return status.current_balance


async def debit(
    session: AsyncSession,
    user_id: int,
    amount: float,
    action: str,
    details: str | None = None,
) -> float:
    """Charge the user and write a ledger row. Does not commit.

    Args:
        session: Database session
        user_id: User to charge
        amount: Cost in USD
        action: Ledger action name
        details: Free-text ledger note

    Returns:
        Balance after the debit

    Raises:
        InsufficientCreditsError: If the balance no longer covers the amount
    """
    result = await session.execute(
        update(models.User)
        .where(models.User.id == user_id, models.User.balance_usd >= amount)
        .values(balance_usd=models.User.balance_usd - amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        balance = await get_balance(session, user_id)
        raise InsufficientCreditsError(balance, amount)

    session.add(models.UsageRecord(user_id=user_id, action=action, cost_usd=amount, details=details))
    await session.flush()

    balance = await get_balance(session, user_id)
    logger.info(f"Debited ${amount:.2f} from user {user_id} for {action}, balance ${balance:.2f}")
    return balance


async def add_credits(session: AsyncSession, user_id: int, amount: float, details: str | None = None) -> float:
    """Deposit credits and log the deposit. Does not commit.

    Raises:
        InputError: If the amount is not positive
        NotFoundError: If the user does not exist
    """
    if amount <= 0:
        raise InputError("Deposit amount must be positive")
    result = await session.execute(
        update(models.User)
        .where(models.User.id == user_id)
        .values(balance_usd=models.User.balance_usd + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError("User not found")

    session.add(
        models.UsageRecord(
            user_id=user_id,
            action=ACTION_DEPOSIT,
            cost_usd=0.0,
            details=details or f"Added ${amount:.2f} credits",
        )
    )
    await session.flush()

    balance = await get_balance(session, user_id)
    logger.info(f"Added ${amount:.2f} to user {user_id}, balance ${balance:.2f}")
    return balance
