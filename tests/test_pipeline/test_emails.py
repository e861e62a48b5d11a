"""
Tests for email intake, resets, winners and set deletion.
"""

from datetime import datetime

import pytest
from sqlalchemy import func, select, update

from mailfin.errors import InvalidRequest, NotFound
from mailfin.models.enums import EmailStatus
from mailfin.models.tables import Email, EmailExtraction, EmailSet, ExtractionRun, Transaction
from mailfin.pipeline.emails import (
    WINNER_TIE,
    content_hash,
    create_email_set,
    delete_email_set,
    reprocess_email,
    reset_emails,
    set_winner,
    store_email,
)
from mailfin.pipeline.invoker import StubInvoker
from mailfin.schemas.runs import ExtractionRequest


async def _extract(make_orchestrator, set_id, prompt_id, invoker):
    request = ExtractionRequest(set_id=set_id, model_id="model-a", prompt_id=prompt_id, concurrency=1)
    return await make_orchestrator(invoker).run(request)


class TestStoreEmail:
    """Intake deduplicates on the content hash."""

    async def test_identical_email_stored_once(self, session):
        email_set = await create_email_set(session, "inbox")
        when = datetime(2024, 3, 1, 9, 0)
        first, created = await store_email(session, email_set.id, "Dividend", "a@b.example", when, "paid")
        again, created_again = await store_email(session, email_set.id, "Dividend", "a@b.example", when, "paid")

        assert created
        assert not created_again
        assert again.id == first.id
        await session.refresh(email_set)
        assert email_set.email_count == 1

    async def test_different_body_is_new_email(self, session):
        email_set = await create_email_set(session, "inbox")
        await store_email(session, email_set.id, "Dividend", body_text="one")
        _, created = await store_email(session, email_set.id, "Dividend", body_text="two")
        assert created

    def test_hash_is_stable(self):
        when = datetime(2024, 3, 1)
        assert content_hash("s", "f", when, "b") == content_hash("s", "f", when, "b")
        assert content_hash("s", "f", when, "b") != content_hash("s", "f", None, "b")


class TestResetEmails:

    async def test_requires_a_selector(self, session):
        with pytest.raises(InvalidRequest):
            await reset_emails(session)

    async def test_reset_by_set_skips_pending(self, session, seed_set):
        set_id, _, email_ids = await seed_set("a", "b", "c")
        await session.execute(
            update(Email).where(Email.id.in_(email_ids[:2])).values(status=EmailStatus.COMPLETED.value)
        )

        response = await reset_emails(session, set_id=set_id)

        assert response.reset == 2
        statuses = (await session.execute(select(Email.status).where(Email.set_id == set_id))).scalars().all()
        assert set(statuses) == {EmailStatus.PENDING.value}

    async def test_reset_by_ids_counts_unknown_and_pending_as_skipped(self, session, seed_set):
        _, _, email_ids = await seed_set("a")
        response = await reset_emails(session, email_ids=[email_ids[0], "missing"])
        assert (response.reset, response.skipped) == (0, 2)

    async def test_reset_by_run_removes_its_work(
        self, session_factory, seed_set, make_orchestrator, make_trade, make_document
    ):
        set_id, prompt_id, email_ids = await seed_set("a", "b")
        snapshot = await _extract(make_orchestrator, set_id, prompt_id, StubInvoker(default=make_document(make_trade())))

        async with session_factory() as session:
            response = await reset_emails(session, run_id=snapshot.run_id)
            await session.commit()

        assert response.reset == 2
        assert response.transactions_deleted == 2
        async with session_factory() as session:
            ledger = (await session.execute(
                select(func.count(EmailExtraction.id)).where(EmailExtraction.run_id == snapshot.run_id)
            )).scalar()
            assert ledger == 0
            email = await session.get(Email, email_ids[0])
            assert email.status == EmailStatus.PENDING.value

    async def test_reset_unknown_run(self, session):
        with pytest.raises(NotFound):
            await reset_emails(session, run_id="nope")

    async def test_reprocess_unknown_email(self, session):
        with pytest.raises(NotFound):
            await reprocess_email(session, "nope")


class TestWinner:

    async def _transaction(self, session_factory, seed_set, make_orchestrator, make_trade, make_document):
        set_id, prompt_id, email_ids = await seed_set("a", "b")
        invoker = StubInvoker({"a": make_document(make_trade()), "b": make_document(make_trade(symbol="MSFT"))})
        snapshot = await _extract(make_orchestrator, set_id, prompt_id, invoker)
        async with session_factory() as session:
            rows = (await session.execute(
                select(Transaction).where(Transaction.extraction_run_id == snapshot.run_id)
            )).scalars().all()
        by_email = {tx.source_email_id: tx.id for tx in rows}
        return email_ids, by_email

    async def test_set_tie_and_clear(self, session_factory, seed_set, make_orchestrator, make_trade, make_document):
        email_ids, by_email = await self._transaction(
            session_factory, seed_set, make_orchestrator, make_trade, make_document
        )
        async with session_factory() as session:
            email = await set_winner(session, email_ids[0], by_email[email_ids[0]])
            assert email.winner_transaction_id == by_email[email_ids[0]]
            email = await set_winner(session, email_ids[0], WINNER_TIE)
            assert email.winner_transaction_id == "tie"
            email = await set_winner(session, email_ids[0], None)
            assert email.winner_transaction_id is None

    async def test_transaction_from_other_email_rejected(
        self, session_factory, seed_set, make_orchestrator, make_trade, make_document
    ):
        email_ids, by_email = await self._transaction(
            session_factory, seed_set, make_orchestrator, make_trade, make_document
        )
        async with session_factory() as session:
            with pytest.raises(InvalidRequest):
                await set_winner(session, email_ids[0], by_email[email_ids[1]])

    async def test_unknown_transaction(self, session, seed_set):
        _, _, email_ids = await seed_set("a")
        with pytest.raises(NotFound):
            await set_winner(session, email_ids[0], "missing")


class TestDeleteEmailSet:

    async def test_cascades_to_runs_and_transactions(
        self, session_factory, seed_set, make_orchestrator, make_trade, make_document
    ):
        set_id, prompt_id, _ = await seed_set("a", "b")
        await _extract(make_orchestrator, set_id, prompt_id, StubInvoker(default=make_document(make_trade())))

        async with session_factory() as session:
            response = await delete_email_set(session, set_id)
            await session.commit()

        assert (response.emails_deleted, response.runs_deleted, response.transactions_deleted) == (2, 1, 2)
        async with session_factory() as session:
            assert await session.get(EmailSet, set_id) is None
            assert (await session.execute(select(func.count(ExtractionRun.id)))).scalar() == 0
            assert (await session.execute(select(func.count(Transaction.id)))).scalar() == 0

    async def test_unknown_set(self, session):
        with pytest.raises(NotFound):
            await delete_email_set(session, "nope")
