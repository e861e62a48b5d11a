"""
Tests for building a corrected run from a reviewed QA run.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from mailfin.errors import AlreadySynthesized, InvalidRequest, InvalidTransition, NotFound
from mailfin.models.tables import ExtractionRun, QaRun, Transaction
from mailfin.pipeline.data_fields import DataBag, InvalidFieldPath, TransactionDraft
from mailfin.pipeline.emails import WINNER_TIE, set_field_overrides, set_winner
from mailfin.pipeline.invoker import StubInvoker, StubQaChecker
from mailfin.review.qa import execute_qa_run, list_results, review_result, start_qa_run
from mailfin.review.synthesizer import ChangeSet, apply_changes, synthesize, synthesize_comparison
from mailfin.schemas.extraction import DuplicateField, FieldIssue, QaFinding
from mailfin.schemas.review import MergeDecision, ReviewResultRequest, StartQaRequest
from mailfin.schemas.runs import ComparisonSynthesisRequest, ExtractionRequest


async def _qa_run(session_factory, run_id, findings, execute=True):
    async with session_factory() as session:
        qa_run = await start_qa_run(session, StartQaRequest(source_run_id=run_id, model_id="qa-model"))
        await session.commit()
    if execute:
        await execute_qa_run(qa_run.id, StubQaChecker(findings), session_factory=session_factory)
    return qa_run.id


async def _review(session_factory, qa_run_id, transaction_id, request):
    async with session_factory() as session:
        results = {r.transaction_id: r for r in await list_results(session, qa_run_id)}
        await review_result(session, qa_run_id, results[transaction_id].id, request)
        await session.commit()


async def _synthesize(session_factory, qa_run_id, name=None):
    async with session_factory() as session:
        response = await synthesize(session, qa_run_id, name=name)
        await session.commit()
        return response


async def _transactions(session_factory, run_id):
    async with session_factory() as session:
        rows = await session.execute(select(Transaction).where(Transaction.extraction_run_id == run_id))
        return list(rows.scalars().all())


class TestSynthesize:
    """The derived run carries every transaction, corrected where accepted."""

    async def test_accepted_amount_applied_to_clone(self, session_factory, extracted_run):
        run_id, tx = await extracted_run()
        finding = QaFinding(
            has_issues=True,
            field_issues=[FieldIssue(field="amount", current_value="100.00", suggested_value="150.00")],
        )
        qa_run_id = await _qa_run(session_factory, run_id, {tx["Trade A"]: finding})
        await _review(session_factory, qa_run_id, tx["Trade A"], ReviewResultRequest(accepted_fields={"amount": True}))

        response = await _synthesize(session_factory, qa_run_id)

        assert response.transactions_created == 3
        assert response.corrections_applied == 1
        assert response.version == 2

        clones = {t.source_transaction_id: t for t in await _transactions(session_factory, response.run_id)}
        assert set(clones) == set(tx.values())
        assert clones[tx["Trade A"]].amount == Decimal("150.00")
        assert clones[tx["Trade C"]].amount == Decimal("75.00")
        assert all(t.run_completed for t in clones.values())

        async with session_factory() as session:
            run = await session.get(ExtractionRun, response.run_id)
            assert run.is_synthesized
            assert run.synthesis_type == "qa_corrections"
            assert run.source_run_ids == [run_id]
            assert run.name == "QA Corrected v2 (from v1)"
            assert run.status == "completed"
            assert run.emails_processed == 3
            assert run.config["corrections_applied"] == 1
            qa_run = await session.get(QaRun, qa_run_id)
            assert qa_run.synthesized_run_id == response.run_id

    async def test_source_run_untouched(self, session_factory, extracted_run):
        run_id, tx = await extracted_run()
        finding = QaFinding(
            has_issues=True,
            field_issues=[FieldIssue(field="amount", current_value="100.00", suggested_value="150.00")],
        )
        qa_run_id = await _qa_run(session_factory, run_id, {tx["Trade A"]: finding})
        await _review(session_factory, qa_run_id, tx["Trade A"], ReviewResultRequest(accepted_fields={"amount": True}))

        await _synthesize(session_factory, qa_run_id)

        originals = {t.id: t for t in await _transactions(session_factory, run_id)}
        assert len(originals) == 3
        assert originals[tx["Trade A"]].amount == Decimal("100.00")
        assert originals[tx["Trade A"]].source_transaction_id is None

    async def test_merge_fills_column_and_drops_data_key(self, session_factory, extracted_run):
        run_id, tx = await extracted_run()
        finding = QaFinding(
            has_issues=True,
            duplicate_fields=[DuplicateField(fields=["symbol", "data.ticker"], suggested_canonical="symbol")],
        )
        qa_run_id = await _qa_run(session_factory, run_id, {tx["Trade B"]: finding})
        await _review(
            session_factory,
            qa_run_id,
            tx["Trade B"],
            ReviewResultRequest(accepted_merges=[MergeDecision(canonical="symbol", merged=["data.ticker"])]),
        )

        response = await _synthesize(session_factory, qa_run_id, name="Merged tickers")

        clones = {t.source_transaction_id: t for t in await _transactions(session_factory, response.run_id)}
        merged = clones[tx["Trade B"]]
        assert merged.symbol == "MSFT"
        assert "ticker" not in merged.data
        assert response.corrections_applied == 1

    async def test_unconvertible_merge_does_not_block_synthesis(self, session_factory, extracted_run):
        run_id, tx = await extracted_run()
        finding = QaFinding(
            has_issues=True,
            duplicate_fields=[DuplicateField(fields=["fees", "data.ticker"], suggested_canonical="fees")],
        )
        qa_run_id = await _qa_run(session_factory, run_id, {tx["Trade B"]: finding})
        await _review(
            session_factory,
            qa_run_id,
            tx["Trade B"],
            ReviewResultRequest(accepted_merges=[MergeDecision(canonical="fees", merged=["data.ticker"])]),
        )

        response = await _synthesize(session_factory, qa_run_id)

        assert response.transactions_created == 3
        assert response.corrections_applied == 0
        clones = {t.source_transaction_id: t for t in await _transactions(session_factory, response.run_id)}
        assert clones[tx["Trade B"]].fees is None
        assert clones[tx["Trade B"]].data["ticker"] == "MSFT"

    async def test_unreviewed_findings_are_not_applied(self, session_factory, extracted_run):
        run_id, tx = await extracted_run()
        finding = QaFinding(
            has_issues=True,
            field_issues=[FieldIssue(field="amount", current_value="100.00", suggested_value="150.00")],
        )
        qa_run_id = await _qa_run(session_factory, run_id, {tx["Trade A"]: finding})

        response = await _synthesize(session_factory, qa_run_id)

        assert response.corrections_applied == 0
        clones = {t.source_transaction_id: t for t in await _transactions(session_factory, response.run_id)}
        assert clones[tx["Trade A"]].amount == Decimal("100.00")

    async def test_second_synthesis_rejected(self, session_factory, extracted_run):
        run_id, _ = await extracted_run()
        qa_run_id = await _qa_run(session_factory, run_id, {})
        first = await _synthesize(session_factory, qa_run_id)

        with pytest.raises(AlreadySynthesized) as exc:
            await _synthesize(session_factory, qa_run_id)
        assert exc.value.synthesized_run_id == first.run_id

        async with session_factory() as session:
            runs = (await session.execute(select(func.count(ExtractionRun.id)))).scalar()
        assert runs == 2

    async def test_qa_run_must_be_completed(self, session_factory, extracted_run):
        run_id, _ = await extracted_run()
        qa_run_id = await _qa_run(session_factory, run_id, {}, execute=False)
        with pytest.raises(InvalidTransition):
            await _synthesize(session_factory, qa_run_id)


class TestApplyChanges:

    def _draft(self):
        return TransactionDraft(
            columns={"type": "stock_trade", "date": datetime(2024, 3, 1, tzinfo=timezone.utc), "amount": Decimal("1")},
            data=DataBag({"ticker": "AAPL"}),
        )

    def test_unknown_and_invalid_values_skipped(self):
        draft = self._draft()
        changes = ChangeSet(overwrites=[("bogus", "x"), ("date", None), ("amount", "ten dollars")])
        assert apply_changes(draft, changes, "tx-1") == 0
        assert draft.columns["amount"] == Decimal("1")

    def test_data_overwrite_and_merge(self):
        draft = self._draft()
        changes = ChangeSet(
            overwrites=[("data.venue", "NYSE")],
            merges=[("symbol", ["data.ticker"])],
        )
        assert apply_changes(draft, changes, "tx-1") == 2
        assert draft.columns["symbol"] == "AAPL"
        assert draft.data.to_dict() == {"venue": "NYSE"}

    def test_merge_with_unconvertible_value_skipped(self):
        draft = self._draft()
        changes = ChangeSet(merges=[("fees", ["data.ticker"])])
        assert apply_changes(draft, changes, "tx-1") == 0
        assert draft.columns.get("fees") is None
        assert draft.data.to_dict() == {"ticker": "AAPL"}

    def test_empty_change_set_is_falsy(self):
        assert not ChangeSet()


class TestComparisonSynthesis:
    """Two runs of one set combined through per-email winners."""

    async def _two_runs(self, session_factory, seed_set, make_orchestrator, make_trade, make_document):
        set_id, prompt_id, email_ids = await seed_set("a", "b", "c")
        outputs = {
            "model-a": {
                "a": make_document(make_trade(amount="100.00")),
                "b": make_document(make_trade(amount="200.00", symbol="MSFT")),
                "c": make_document(make_trade(amount="300.00", symbol=None)),
            },
            "model-b": {
                "a": make_document(make_trade(amount="101.00")),
                "b": make_document(make_trade(amount="201.00", symbol="MSFT")),
                "c": make_document(make_trade(amount="301.00", symbol="VTI", fees="1.50")),
            },
        }
        run_ids = []
        for model_id, responses in outputs.items():
            request = ExtractionRequest(set_id=set_id, model_id=model_id, prompt_id=prompt_id, concurrency=1)
            snapshot = await make_orchestrator(StubInvoker(responses)).run(request)
            run_ids.append(snapshot.run_id)

        by_run = {}
        for run_id in run_ids:
            by_run[run_id] = {tx.source_email_id: tx.id for tx in await _transactions(session_factory, run_id)}
        return email_ids, run_ids, by_run

    async def test_winners_ties_and_overrides(
        self, session_factory, seed_set, make_orchestrator, make_trade, make_document
    ):
        email_ids, (run_a, run_b), by_run = await self._two_runs(
            session_factory, seed_set, make_orchestrator, make_trade, make_document
        )
        a, b, c = email_ids
        async with session_factory() as session:
            await set_winner(session, a, by_run[run_b][a])
            await set_winner(session, b, WINNER_TIE)
            await set_field_overrides(session, b, {"amount": "250.00", "data.venue": "NYSE"})
            await session.commit()

        async with session_factory() as session:
            response = await synthesize_comparison(
                session, ComparisonSynthesisRequest(run_a_id=run_a, run_b_id=run_b, primary_run_id=run_a)
            )
            await session.commit()

        assert (response.from_a, response.from_b, response.ties, response.no_winner) == (0, 1, 1, 1)
        assert response.transactions_created == 3
        assert response.overrides_applied == 2
        assert response.version == 3

        clones = {t.source_email_id: t for t in await _transactions(session_factory, response.run_id)}
        assert clones[a].source_transaction_id == by_run[run_b][a]
        assert clones[a].amount == Decimal("101.00")
        assert clones[b].source_transaction_id == by_run[run_a][b]
        assert clones[b].amount == Decimal("250.00")
        assert clones[b].data["venue"] == "NYSE"
        # No winner: primary run wins, the other run fills its gaps
        assert clones[c].source_transaction_id == by_run[run_a][c]
        assert clones[c].amount == Decimal("300.00")
        assert clones[c].symbol == "VTI"
        assert clones[c].fees == Decimal("1.50")

        async with session_factory() as session:
            run = await session.get(ExtractionRun, response.run_id)
            assert run.synthesis_type == "comparison_winners"
            assert run.source_run_ids == [run_a, run_b]
            assert run.name == "Synthesized v3 (1 vs 2 winners)"
            assert run.emails_processed == 3
            assert run.config["primary_run_id"] == run_a

        originals = {t.source_email_id: t for t in await _transactions(session_factory, run_a)}
        assert originals[b].amount == Decimal("200.00")
        assert originals[c].symbol is None

    async def test_primary_must_be_a_source(
        self, session_factory, seed_set, make_orchestrator, make_trade, make_document
    ):
        _, (run_a, run_b), _ = await self._two_runs(
            session_factory, seed_set, make_orchestrator, make_trade, make_document
        )
        async with session_factory() as session:
            with pytest.raises(InvalidRequest):
                await synthesize_comparison(
                    session, ComparisonSynthesisRequest(run_a_id=run_a, run_b_id=run_b, primary_run_id="other")
                )
            with pytest.raises(InvalidRequest):
                await synthesize_comparison(
                    session, ComparisonSynthesisRequest(run_a_id=run_a, run_b_id=run_a, primary_run_id=run_a)
                )

    async def test_unknown_run(self, session_factory, extracted_run):
        run_id, _ = await extracted_run()
        async with session_factory() as session:
            with pytest.raises(NotFound):
                await synthesize_comparison(
                    session, ComparisonSynthesisRequest(run_a_id=run_id, run_b_id="missing", primary_run_id=run_id)
                )

    async def test_overrides_reject_unknown_fields(self, session, seed_set):
        _, _, email_ids = await seed_set("a")
        with pytest.raises(InvalidFieldPath):
            await set_field_overrides(session, email_ids[0], {"bogus": 1})
        email = await set_field_overrides(session, email_ids[0], {})
        assert email.field_overrides is None
