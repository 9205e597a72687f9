# Overview: Pytest coverage for batch documents and the optimistic write transaction.

import threading

import pytest

from boutique.extensions import db
from boutique.models import ProductBatch
from boutique.services import batch_store, stock_ledger
from boutique.services.concurrency import TransactionConflictError, run_in_transaction


class TestReadAndCreate:
    def test_read_batch(self, stocked_batch):
        snapshot = batch_store.read_batch("batch_1")
        assert [p.id for p in snapshot.products] == ["P1", "V1"]
        assert snapshot.find("P1").stock == 5
        assert snapshot.to_dict()["updated_at"].endswith("Z")

    def test_missing_batch(self, db_session):
        with pytest.raises(batch_store.BatchNotFoundError):
            batch_store.read_batch("batch_404")

    def test_missing_product(self, stocked_batch):
        with pytest.raises(batch_store.ProductNotInBatchError):
            batch_store.read_batch("batch_1").find("P404")

    def test_locate_and_find_product(self, second_batch):
        assert batch_store.locate_product("P2") == "batch_2"
        batch_id, product = batch_store.find_product("V1")
        assert batch_id == "batch_1"
        assert product.stock == 6
        with pytest.raises(batch_store.ProductNotInBatchError):
            batch_store.locate_product("P404")

    def test_product_ids_must_be_disjoint_across_batches(self, stocked_batch):
        with pytest.raises(batch_store.DuplicateProductError):
            batch_store.create_batch("batch_2", [{"id": "P1", "stock": 1}])

    def test_duplicate_inside_one_batch(self, db_session):
        with pytest.raises(batch_store.DuplicateProductError):
            batch_store.create_batch("batch_1", [{"id": "A", "stock": 1}, {"id": "A", "stock": 2}])

    def test_existing_batch_id_rejected(self, stocked_batch):
        with pytest.raises(batch_store.DuplicateProductError):
            batch_store.create_batch("batch_1", [{"id": "Z", "stock": 1}])

    def test_plan_batches_uses_soft_capacity(self, app):
        products = [{"id": f"P{i}", "stock": 1} for i in range(7)]
        chunks = batch_store.plan_batches(products, capacity=3)
        assert [len(c) for c in chunks] == [3, 3, 1]
        assert len(batch_store.plan_batches(products)) == 1
        with pytest.raises(ValueError):
            batch_store.plan_batches(products, capacity=0)


class TestWriteBatch:
    def test_write_bumps_version(self, stocked_batch):
        before = batch_store.read_batch("batch_1").version_id

        def _mutate(products):
            products[0].apply_delta(1)
            return products

        after = batch_store.write_batch("batch_1", _mutate)
        assert after.version_id == before + 1
        assert after.find("P1").stock == 6

    def test_mutator_error_rolls_back(self, stocked_batch):
        def _mutate(products):
            products[0].apply_delta(-1)
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            batch_store.write_batch("batch_1", _mutate)
        assert batch_store.read_batch("batch_1").find("P1").stock == 5

    def test_mutator_must_return_products(self, stocked_batch):
        with pytest.raises(TypeError):
            batch_store.write_batch("batch_1", lambda products: None)

    def test_other_products_untouched(self, stocked_batch):
        batch_store.update_product("batch_1", "P1", lambda p: p.apply_delta(-1))
        snapshot = batch_store.read_batch("batch_1")
        assert snapshot.find("V1").to_dict()["name"] == "Pleated Skirt"
        assert snapshot.find("V1").stock == 6


class TestRunInTransaction:
    def test_conflict_budget_exhausted(self, app):
        from sqlalchemy.orm.exc import StaleDataError

        calls = []

        def _always_conflicts():
            calls.append(1)
            raise StaleDataError("version mismatch")

        with pytest.raises(TransactionConflictError):
            run_in_transaction(_always_conflicts, attempts=3, backoff_base=0)
        assert len(calls) == 3

    def test_succeeds_after_conflict(self, app):
        from sqlalchemy.orm.exc import StaleDataError

        calls = []

        def _conflicts_once():
            calls.append(1)
            if len(calls) == 1:
                raise StaleDataError("version mismatch")
            return "ok"

        assert run_in_transaction(_conflicts_once, attempts=3, backoff_base=0) == "ok"
        assert len(calls) == 2


class TestConcurrentWriters:
    def test_interleaved_commit_forces_a_rerun(self, file_app):
        """
        Another writer commits between our read and our commit. Our commit
        must fail on the version check and the mutator must run again on
        the fresh row.
        """
        app = file_app()
        with app.app_context():
            batch_store.create_batch("batch_1", [{"id": "P1", "stock": 5}])

            calls = []

            def _competitor():
                with app.app_context():
                    stock_ledger.reserve("batch_1", "P1", 2)
                    db.session.remove()

            def _mutate(products):
                calls.append(products[0].stock)
                if len(calls) == 1:
                    worker = threading.Thread(target=_competitor)
                    worker.start()
                    worker.join()
                products[0].apply_delta(-1)
                return products

            result = batch_store.write_batch("batch_1", _mutate)

            assert calls == [5, 3]
            assert result.find("P1").stock == 2
            assert db.session.get(ProductBatch, "batch_1", populate_existing=True).version_id == 3
            db.session.remove()
