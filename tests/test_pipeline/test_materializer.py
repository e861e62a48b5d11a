"""
Tests for transaction materialization and account resolution.
"""

from decimal import Decimal

from sqlalchemy import func, select

from mailfin.models.tables import Account, Email, Transaction
from mailfin.pipeline.accounts import AccountInput, DatabaseAccountResolver, account_numbers_match
from mailfin.pipeline.materializer import TransactionMaterializer, normalize_confidence, normalize_item
from mailfin.pipeline.registry import create_run
from mailfin.schemas.extraction import ExtractionDocument, ExtractionItem


class TestNormalizeItem:
    """Mapping of extractor items onto columns and the data bag."""

    def test_columns(self):
        draft = normalize_item(ExtractionItem.model_validate({
            "transactionType": "Dividend",
            "transactionDate": "2024-02-01",
            "amount": "$1,250.00",
            "symbol": " vti ",
        }))
        assert draft.columns["type"] == "dividend"
        assert draft.columns["amount"] == Decimal("1250.00")
        assert draft.columns["currency"] == "USD"
        assert draft.columns["symbol"] == "VTI"
        assert "original_type" not in draft.data

    def test_unknown_type_kept_in_data(self):
        draft = normalize_item(ExtractionItem(transaction_type="crypto_swap"))
        assert draft.columns["type"] == "other"
        assert draft.data.get("original_type") == "crypto_swap"

    def test_extra_keys_go_to_data(self):
        draft = normalize_item(ExtractionItem.model_validate({
            "transactionType": "option_trade",
            "strikePrice": "150",
            "contractCount": 2,
            "additionalFields": {"exchange": "CBOE"},
        }), extraction_notes="two legs")
        assert draft.data.get("strike_price") == "150"
        assert draft.data.get("contractCount") == 2
        assert draft.data.get("exchange") == "CBOE"
        assert draft.data.get("extraction_notes") == "two legs"

    def test_confidence_scale(self):
        assert normalize_confidence(0.9) == Decimal("0.9")
        assert normalize_confidence(85) == Decimal("0.85")
        assert normalize_confidence(None) is None


class TestAccountMatching:

    def test_masked_matches_full_number(self):
        assert account_numbers_match("XXXX-1234", "5555 6666 1234")

    def test_two_full_numbers_must_be_equal(self):
        assert not account_numbers_match("9999-1234", "5555-1234")

    async def test_resolver_reuses_and_enriches(self, session):
        resolver = DatabaseAccountResolver()
        first = await resolver.resolve(session, AccountInput(account_number="XXXX-1234"))
        second = await resolver.resolve(
            session, AccountInput(account_number="5555-1234", account_name="Brokerage", institution="Example")
        )
        assert first == second

        account = await session.get(Account, first)
        assert account.account_number == "5555-1234"
        assert account.display_name == "Brokerage"
        assert account.institution == "Example"

    async def test_candidates_narrowed_by_number_tail(self, session):
        resolver = DatabaseAccountResolver()
        checking = await resolver.resolve(session, AccountInput(account_number="1111 2222 3333", account_name="Checking"))
        brokerage = await resolver.resolve(session, AccountInput(account_number="5555-6666-1234"))

        candidates = await resolver._number_candidates(session, "XXXX1234")
        assert [a.id for a in candidates] == [brokerage]
        assert await resolver.resolve(session, AccountInput(account_number="xxxx 1234")) == brokerage
        assert await resolver.resolve(session, AccountInput(account_number="9999-3333")) != checking

    async def test_name_containment_matches(self, session):
        resolver = DatabaseAccountResolver()
        savings = await resolver.resolve(session, AccountInput(account_name="Joint Savings"))
        await resolver.resolve(session, AccountInput(account_name="Brokerage"))

        assert await resolver.resolve(session, AccountInput(account_name="savings")) == savings
        assert await resolver.resolve(session, AccountInput(account_name="My Joint Savings Account")) == savings

    async def test_empty_input_resolves_to_none(self, session):
        assert await DatabaseAccountResolver().resolve(session, AccountInput()) is None


class TestTransactionMaterializer:
    """Per-item all-or-nothing writes."""

    async def _setup(self, session_factory, seed_set):
        set_id, prompt_id, email_ids = await seed_set("Trade confirmation")
        async with session_factory() as session:
            run = await create_run(session, set_id, "model-a", prompt_id)
            await session.commit()
        return run.id, email_ids[0]

    async def test_writes_one_row_per_item(self, session_factory, seed_set, make_trade, make_document):
        run_id, email_id = await self._setup(session_factory, seed_set)
        document = ExtractionDocument.model_validate(make_document(make_trade(), make_trade(symbol="MSFT")))

        async with session_factory() as session:
            email = await session.get(Email, email_id)
            result = await TransactionMaterializer().materialize(session, document, email, run_id)
            await session.commit()

            assert len(result.transaction_ids) == 2
            assert result.failures == []
            rows = (await session.execute(
                select(Transaction).where(Transaction.extraction_run_id == run_id)
            )).scalars().all()
            assert {tx.symbol for tx in rows} == {"AAPL", "MSFT"}
            assert all(tx.source_email_id == email_id for tx in rows)
            # Both items name the same account
            assert len({tx.account_id for tx in rows}) == 1

    async def test_bad_item_does_not_block_siblings(self, session_factory, seed_set, make_trade, make_document):
        run_id, email_id = await self._setup(session_factory, seed_set)
        document = ExtractionDocument.model_validate(
            make_document(make_trade(), make_trade(amount="lots"), make_trade(symbol="MSFT"))
        )

        async with session_factory() as session:
            email = await session.get(Email, email_id)
            result = await TransactionMaterializer().materialize(session, document, email, run_id)
            await session.commit()

            assert len(result.transaction_ids) == 2
            assert len(result.failures) == 1
            assert result.failures[0].item_index == 1
            count = (await session.execute(
                select(func.count(Transaction.id)).where(Transaction.extraction_run_id == run_id)
            )).scalar()
            assert count == 2

    async def test_wire_destination_is_external(self, session_factory, seed_set, make_document):
        run_id, email_id = await self._setup(session_factory, seed_set)
        document = ExtractionDocument.model_validate(make_document({
            "transactionType": "wire_transfer_out",
            "transactionDate": "2024-03-02",
            "amount": "5000",
            "accountNumber": "XXXX-1234",
            "toAccountName": "Landlord LLC",
            "toAccountNumber": "987654321",
        }))

        async with session_factory() as session:
            email = await session.get(Email, email_id)
            result = await TransactionMaterializer().materialize(session, document, email, run_id)
            tx = await session.get(Transaction, result.transaction_ids[0])
            destination = await session.get(Account, tx.to_account_id)
            assert destination.is_external
            assert destination.display_name == "Landlord LLC"
