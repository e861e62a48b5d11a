"""
Tests for the transaction field namespace and draft operations.
"""

from decimal import Decimal

import pytest

from mailfin.pipeline.data_fields import (
    DataBag,
    FieldPath,
    InvalidFieldPath,
    TransactionDraft,
)


def _draft(**columns):
    data = columns.pop("data", {})
    base = {"type": "stock_trade", "currency": "USD", "symbol": None, "amount": Decimal("100")}
    base.update(columns)
    return TransactionDraft(columns=base, data=DataBag(data))


class TestFieldPath:
    """Only typed columns and data.<key> are valid paths."""

    def test_column(self):
        path = FieldPath.parse("amount")
        assert path == FieldPath("amount", is_data=False)
        assert str(path) == "amount"

    def test_data_key(self):
        path = FieldPath.parse("data.ticker")
        assert path.is_data
        assert path.name == "ticker"
        assert str(path) == "data.ticker"

    def test_unknown_column_rejected(self):
        with pytest.raises(InvalidFieldPath):
            FieldPath.parse("account_number")

    def test_nested_data_rejected(self):
        with pytest.raises(InvalidFieldPath):
            FieldPath.parse("data.a.b")

    def test_empty_rejected(self):
        with pytest.raises(InvalidFieldPath):
            FieldPath.parse("data.")

    def test_try_parse(self):
        assert FieldPath.try_parse("bogus") is None
        assert FieldPath.try_parse("symbol") is not None


class TestDataBag:

    def test_mutations_return_new_bags(self):
        bag = DataBag({"a": 1})
        updated = bag.with_value("b", 2)
        assert "b" not in bag
        assert updated.to_dict() == {"a": 1, "b": 2}

    def test_without(self):
        assert DataBag({"a": 1, "b": 2}).without(["a", "zzz"]).to_dict() == {"b": 2}

    def test_filled_from_only_fills_empty_keys(self):
        filled = DataBag({"a": 1, "b": "", "c": None}).filled_from({"a": 9, "b": 2, "c": None, "d": 4})
        assert filled.to_dict() == {"a": 1, "b": 2, "c": None, "d": 4}


class TestTransactionDraft:

    def test_fill_gaps_respects_kept_columns(self):
        draft = _draft(type="dividend", data={"venue": ""})
        other = _draft(type="stock_trade", symbol="AAPL", amount=Decimal("1"), data={"venue": "NYSE", "lot": 3})
        draft.fill_gaps(other, keep=("type",))
        assert draft.columns["type"] == "dividend"
        assert draft.columns["symbol"] == "AAPL"
        assert draft.columns["amount"] == Decimal("100")
        assert draft.data.to_dict() == {"venue": "NYSE", "lot": 3}

    def test_overwrite_numeric_column_coerces(self):
        draft = _draft()
        draft.overwrite(FieldPath.parse("amount"), "150.00")
        assert draft.columns["amount"] == Decimal("150.00")

    def test_overwrite_data_key(self):
        draft = _draft(data={"ticker": "AAPL"})
        draft.overwrite(FieldPath.parse("data.ticker"), "MSFT")
        assert draft.data.get("ticker") == "MSFT"

    def test_required_column_cannot_be_cleared(self):
        draft = _draft()
        with pytest.raises(InvalidFieldPath):
            draft.overwrite(FieldPath.parse("currency"), None)

    def test_merge_fills_empty_canonical(self):
        draft = _draft(data={"ticker": "AAPL", "note": "keep"})
        copied = draft.merge(FieldPath.parse("symbol"), [FieldPath.parse("data.ticker")])
        assert copied
        assert draft.columns["symbol"] == "AAPL"
        assert draft.data.to_dict() == {"note": "keep"}

    def test_merge_keeps_populated_canonical_but_drops_keys(self):
        draft = _draft(symbol="MSFT", data={"ticker": "AAPL"})
        copied = draft.merge(FieldPath.parse("symbol"), [FieldPath.parse("data.ticker")])
        assert not copied
        assert draft.columns["symbol"] == "MSFT"
        assert "ticker" not in draft.data

    def test_merge_takes_first_non_null(self):
        draft = _draft(data={"sym": None, "ticker": "AAPL", "code": "XXX"})
        draft.merge(
            FieldPath.parse("symbol"),
            [FieldPath.parse("data.sym"), FieldPath.parse("data.ticker"), FieldPath.parse("data.code")],
        )
        assert draft.columns["symbol"] == "AAPL"
        assert len(draft.data) == 0

    def test_merge_into_data_canonical(self):
        draft = _draft(data={"tkr": "AAPL"})
        draft.merge(FieldPath.parse("data.ticker"), [FieldPath.parse("data.tkr")])
        assert draft.data.to_dict() == {"ticker": "AAPL"}
