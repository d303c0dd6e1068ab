"""Top up a user's credit balance.

Deposits are recorded in the usage log next to the charges. There is no
payment integration; operators run this by hand.

    python add_credits.py 42 10.00
    python add_credits.py 42 5 --note "Conference voucher"
"""

import argparse
import asyncio
import sys

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cvrecon import billing
from cvrecon.db import AsyncSessionMaker, engine
from cvrecon.errors import CVReconError


async def top_up(
    user_id: int,
    amount: float,
    note: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> float:
    """Deposit credits and return the new balance."""
    factory = session_factory or AsyncSessionMaker
    async with factory() as session:
        balance = await billing.add_credits(session, user_id, amount, details=note)
        await session.commit()
    return balance


async def main(user_id: int, amount: float, note: str | None):
    """Main entry point."""
    try:
        balance = await top_up(user_id, amount, note)
    except CVReconError as e:
        print(f"❌ {e}")
        sys.exit(1)
    finally:
        await engine.dispose()
    print(f"✓ Added ${amount:.2f} to user {user_id}")
    print(f"✅ New balance: ${balance:.2f}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("user_id", type=int, help="User to credit")
    parser.add_argument("amount", type=float, help="Amount in USD")
    parser.add_argument("--note", default=None, help="Text stored in the usage log")
    args = parser.parse_args()
    asyncio.run(main(args.user_id, args.amount, args.note))
