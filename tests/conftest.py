"""
Shared test fixtures.
Each test gets its own file-backed SQLite database.
"""

import os
from datetime import datetime

os.environ.setdefault("CLEANUP_STALE_RUNS_ON_STARTUP", "false")
os.environ.setdefault("INVOKER_BACKEND", "stub")

import pytest
import pytest_asyncio
from sqlalchemy import select

from mailfin.models.database import build_engine, build_session_factory, init_db
from mailfin.models.tables import Email, Prompt, Transaction
from mailfin.pipeline.emails import create_email_set, store_email
from mailfin.pipeline.invoker import StubInvoker
from mailfin.pipeline.job_registry import JobRegistry
from mailfin.pipeline.materializer import TransactionMaterializer
from mailfin.pipeline.orchestrator import ExtractionOrchestrator
from mailfin.schemas.runs import ExtractionRequest


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'mailfin-test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def registry():
    """Fresh registry so no run state leaks between tests."""
    return JobRegistry()


@pytest.fixture
def make_orchestrator(session_factory, registry):
    def factory(invoker, **kwargs):
        kwargs.setdefault("pause_poll_seconds", 0.01)
        kwargs.setdefault("materializer", TransactionMaterializer())
        return ExtractionOrchestrator(
            invoker,
            session_factory=session_factory,
            registry=registry,
            **kwargs,
        )

    return factory


@pytest.fixture
def seed_set(session_factory):
    """
    Create an email set with the given subjects and an extraction prompt.
    Returns (set_id, prompt_id, [email_id, ...]) in subject order.
    """

    async def seed(*subjects, name="inbox"):
        async with session_factory() as session:
            email_set = await create_email_set(session, name)
            prompt = Prompt(name="extract", content="Extract every financial transaction.")
            session.add(prompt)
            email_ids = []
            for index, subject in enumerate(subjects):
                email, _ = await store_email(
                    session,
                    email_set.id,
                    subject=subject,
                    sender="alerts@broker.example",
                    email_date=datetime(2024, 3, index + 1, 9, 30),
                    body_text=f"Body of {subject}",
                )
                email_ids.append(email.id)
            await session.commit()
            return email_set.id, prompt.id, email_ids

    return seed


def trade(amount="100.00", symbol="AAPL", **extra):
    """A transaction item as the extractor reports it."""
    item = {
        "transactionType": "stock_trade",
        "transactionDate": "2024-03-01",
        "amount": amount,
        "currency": "USD",
        "symbol": symbol,
        "quantity": "10",
        "accountNumber": "XXXX-1234",
        "institution": "Example Brokerage",
    }
    item.update(extra)
    return item


def transactional(*items, notes=None):
    return {
        "isTransactional": True,
        "emailType": "transaction",
        "transactions": list(items),
        "extractionNotes": notes,
    }


@pytest.fixture
def make_trade():
    return trade


@pytest.fixture
def make_document():
    return transactional


@pytest.fixture
def extracted_run(session_factory, seed_set, make_orchestrator):
    """
    Complete an extraction run over three trade confirmations.
    Returns (run_id, {subject: transaction_id}).
    """
    async def extract():
        set_id, prompt_id, _ = await seed_set("Trade A", "Trade B", "Trade C")
        invoker = StubInvoker({
            "Trade A": transactional(trade(amount="100.00", symbol="AAPL")),
            "Trade B": transactional(trade(amount="250.00", symbol=None, ticker="MSFT")),
            "Trade C": transactional(trade(amount="75.00", symbol="VTI")),
        })
        request = ExtractionRequest(set_id=set_id, model_id="model-a", prompt_id=prompt_id, concurrency=1)
        snapshot = await make_orchestrator(invoker).run(request)

        async with session_factory() as session:
            rows = await session.execute(
                select(Email.subject, Transaction.id)
                .select_from(Transaction)
                .join(Email, Email.id == Transaction.source_email_id)
                .where(Transaction.extraction_run_id == snapshot.run_id)
            )
            return snapshot.run_id, {subject: tx_id for subject, tx_id in rows.all()}

    return extract
