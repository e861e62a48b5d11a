"""
Account resolution for materialized transactions.

Matching order: exact number, then masked/unmasked last-4 agreement, then
display-name match (with a last-4 check when both sides carry a number).
Unmatched inputs create a new Account.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import func, literal, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from mailfin.models.tables import Account

logger = structlog.get_logger(__name__)

UNKNOWN_ACCOUNT = "Unknown Account"


@dataclass(frozen=True)
class AccountInput:
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    institution: Optional[str] = None
    is_external: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.account_number and not self.account_name


def normalize_account_number(number: str) -> str:
    return re.sub(r"[\s-]", "", number).upper()


def last4(number: str) -> Optional[str]:
    m = re.search(r"(\d{4})$", normalize_account_number(number))
    return m.group(1) if m else None


def is_masked(number: str) -> bool:
    return "X" in normalize_account_number(number)


def account_numbers_match(a: str, b: str) -> bool:
    norm_a, norm_b = normalize_account_number(a), normalize_account_number(b)
    if norm_a == norm_b:
        return True
    tail_a, tail_b = last4(norm_a), last4(norm_b)
    if not tail_a or tail_a != tail_b:
        return False
    # Same tail: a masked number matches anything with that tail; two full numbers must be equal
    return is_masked(norm_a) or is_masked(norm_b)


class AccountResolver(ABC):
    """resolve(input) -> account id, or None when the input names no account."""

    @abstractmethod
    async def resolve(self, session: AsyncSession, account: AccountInput) -> Optional[str]:
        ...


class DatabaseAccountResolver(AccountResolver):
    """
    Matches against the accounts table and creates on miss.
    Resolution is serialized per resolver so two concurrent emails cannot
    both create the same new account in this process.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    async def resolve(self, session: AsyncSession, account: AccountInput) -> Optional[str]:
        if account.is_empty:
            return None

        async with self._lock:
            existing = await self._find(session, account)
            if existing is not None:
                self._enrich(existing, account)
                await session.flush()
                return existing.id

            number = account.account_number
            created = Account(
                display_name=account.account_name or number or UNKNOWN_ACCOUNT,
                institution=account.institution,
                account_number=None if (number and is_masked(number)) else number,
                masked_number=number,
                is_external=account.is_external,
            )
            session.add(created)
            await session.flush()
            logger.info(
                "account_created",
                account_id=created.id,
                display_name=created.display_name,
                is_external=created.is_external,
            )
            return created.id

    async def _find(self, session: AsyncSession, account: AccountInput) -> Optional[Account]:
        if account.account_number:
            for candidate in await self._number_candidates(session, account.account_number):
                for known in (candidate.account_number, candidate.masked_number):
                    if known and account_numbers_match(account.account_number, known):
                        return candidate

        if account.account_name:
            wanted = account.account_name.lower().strip()
            for candidate in await self._name_candidates(session, wanted):
                name = (candidate.display_name or "").lower().strip()
                if not name:
                    continue
                if name == wanted:
                    return candidate
                if wanted in name or name in wanted:
                    if account.account_number and candidate.masked_number:
                        if last4(account.account_number) == last4(candidate.masked_number):
                            return candidate
                    else:
                        return candidate
        return None

    @staticmethod
    async def _number_candidates(session: AsyncSession, number: str) -> list[Account]:
        """Accounts whose stored number shares the normalized tail of `number`."""
        normalized = normalize_account_number(number)
        tail = last4(normalized)

        def matches(column):
            stored = func.upper(func.replace(func.replace(column, " ", ""), "-", ""))
            return stored.like(f"%{tail}") if tail else stored == normalized

        result = await session.execute(
            select(Account)
            .where(or_(matches(Account.account_number), matches(Account.masked_number)))
            .order_by(Account.created_at)
        )
        return list(result.scalars().all())

    @staticmethod
    async def _name_candidates(session: AsyncSession, wanted: str) -> list[Account]:
        name = func.lower(func.trim(Account.display_name))
        result = await session.execute(
            select(Account)
            .where(name != "", or_(name.contains(wanted, autoescape=True), literal(wanted).contains(name)))
            .order_by(Account.created_at)
        )
        return list(result.scalars().all())

    @staticmethod
    def _enrich(existing: Account, account: AccountInput) -> None:
        number = account.account_number
        if number and not is_masked(number) and (
            not existing.account_number or is_masked(existing.account_number)
        ):
            existing.account_number = number
        if account.account_name and existing.display_name in (
            None, "", existing.masked_number, UNKNOWN_ACCOUNT,
        ):
            existing.display_name = account.account_name
        if account.institution and not existing.institution:
            existing.institution = account.institution
