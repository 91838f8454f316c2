"""Tests for the inventory ledger."""

import pytest
from bson import ObjectId

from errors import NotFoundError, OutOfStockError, ValidationError
from inventory import InventoryLedger


@pytest.fixture
def ledger(db):
    return InventoryLedger(db)


class TestReadAndReserve:
    def test_available_reads_bucket(self, ledger, make_product):
        pid = make_product(sizes={8: 2, 9: 5})
        assert ledger.available(pid, 8) == 2
        assert ledger.available(pid, 9) == 5

    def test_missing_size_has_no_stock(self, ledger, make_product):
        pid = make_product(sizes={9: 5})
        assert ledger.available(pid, 11) == 0

    def test_reserve_clamps_to_available(self, ledger, make_product):
        pid = make_product(sizes={9: 3})
        assert ledger.reserve(pid, 9, 2) == 2
        assert ledger.reserve(pid, 9, 7) == 3
        assert ledger.reserve(pid, 10, 1) == 0

    def test_reserve_does_not_mutate(self, ledger, make_product, stock):
        pid = make_product(sizes={9: 3})
        ledger.reserve(pid, 9, 3)
        assert stock(pid, 9) == 3

    def test_unknown_product(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.available(str(ObjectId()), 9)

    def test_malformed_product_id(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.available("not-an-id", 9)


class TestCommit:
    def test_commit_decrements(self, ledger, make_product, stock):
        pid = make_product(sizes={9: 5})
        ledger.commit(pid, 9, 2)
        assert stock(pid, 9) == 3

    def test_commit_to_zero_removes_bucket(self, ledger, make_product, db):
        pid = make_product(sizes={8: 1, 9: 2})
        ledger.commit(pid, 9, 2)
        sizes = [b["size"] for b in db["product"].find_one({"_id": ObjectId(pid)})["size_quantity"]]
        assert sizes == [8]

    def test_commit_more_than_available_changes_nothing(self, ledger, make_product, stock):
        pid = make_product(sizes={9: 1})
        with pytest.raises(OutOfStockError) as exc_info:
            ledger.commit(pid, 9, 2)
        assert exc_info.value.available == 1
        assert stock(pid, 9) == 1

    def test_commit_only_touches_matching_size(self, ledger, make_product, stock):
        pid = make_product(sizes={8: 4, 9: 4})
        ledger.commit(pid, 8, 1)
        assert stock(pid, 8) == 3
        assert stock(pid, 9) == 4

    @pytest.mark.parametrize("qty", [0, -1])
    def test_non_positive_quantity_rejected(self, ledger, make_product, qty):
        pid = make_product()
        with pytest.raises(ValidationError):
            ledger.commit(pid, 9, qty)

    def test_competing_commits_never_oversell(self, ledger, make_product, stock):
        """Both buyers pass the clamp check before either commits."""
        pid = make_product(sizes={9: 1})
        assert ledger.reserve(pid, 9, 1) == 1
        assert ledger.reserve(pid, 9, 1) == 1

        ledger.commit(pid, 9, 1)
        with pytest.raises(OutOfStockError):
            ledger.commit(pid, 9, 1)
        assert stock(pid, 9) is None

    def test_total_committed_never_exceeds_starting_stock(self, ledger, make_product, stock):
        pid = make_product(sizes={9: 7})
        committed = 0
        for qty in [3, 3, 3, 1, 2]:
            try:
                ledger.commit(pid, 9, qty)
                committed += qty
            except OutOfStockError:
                pass
        assert committed == 7
        assert stock(pid, 9) is None


class TestRelease:
    def test_release_increments_existing_bucket(self, ledger, make_product, stock):
        pid = make_product(sizes={9: 2})
        ledger.release(pid, 9, 3)
        assert stock(pid, 9) == 5

    def test_release_recreates_sold_out_bucket(self, ledger, make_product, stock):
        pid = make_product(sizes={9: 1})
        ledger.commit(pid, 9, 1)
        assert stock(pid, 9) is None
        ledger.release(pid, 9, 1)
        assert stock(pid, 9) == 1

    def test_release_unknown_product(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.release(str(ObjectId()), 9, 1)
