# Overview: Pytest coverage for the typed product records stored in batch documents.

import pytest

from boutique.records import ProductRecord, VariantKey, dump_products, load_products


BLACK_M = VariantKey(size="M", color="Black")


def _variant_record():
    return ProductRecord.from_dict({
        "id": "V1",
        "name": "Pleated Skirt",
        "stock": 999,  # stale stored value; grid wins
        "variants": {"sizes": ["M", "L"], "stock": {"M": {"Black": 2, "White": 1}, "L": {"Black": 3}}},
    })


class TestProductRecordParsing:
    def test_scalar_product(self):
        record = ProductRecord.from_dict({"id": "P1", "stock": 4, "price": 250000})
        assert record.has_variants is False
        assert record.stock == 4
        assert record.extra == {"price": 250000}

    def test_variant_stock_is_derived_from_grid(self):
        record = _variant_record()
        assert record.has_variants is True
        assert record.stock == 6

    def test_unknown_fields_round_trip(self):
        record = _variant_record()
        out = record.to_dict()
        assert out["name"] == "Pleated Skirt"
        assert out["variants"]["sizes"] == ["M", "L"]
        assert out["variants"]["stock"]["M"]["White"] == 1
        assert out["stock"] == 6

    def test_variants_without_stock_grid_are_opaque(self):
        record = ProductRecord.from_dict({"id": "P9", "stock": 2, "variants": {"sizes": ["S"]}})
        assert record.has_variants is False
        assert record.to_dict()["variants"] == {"sizes": ["S"]}

    def test_missing_id_rejected(self):
        with pytest.raises(ValueError):
            ProductRecord.from_dict({"stock": 1})

    def test_load_and_dump_lists(self):
        raw = [{"id": "A", "stock": 1}, {"id": "B", "stock": 0}]
        assert dump_products(load_products(raw)) == raw
        assert load_products(None) == []


class TestVariantKey:
    def test_requires_size_and_color(self):
        with pytest.raises(ValueError):
            VariantKey.from_dict({"size": "M"})

    def test_empty_means_no_variant(self):
        assert VariantKey.from_dict(None) is None
        assert VariantKey.from_dict({}) is None


class TestApplyDelta:
    def test_scalar_delta(self):
        record = ProductRecord.from_dict({"id": "P1", "stock": 4})
        record.apply_delta(-3)
        assert record.stock == 1
        with pytest.raises(ValueError):
            record.apply_delta(-2)
        assert record.stock == 1

    def test_variant_delta_keeps_total_in_sync(self):
        record = _variant_record()
        record.apply_delta(-2, BLACK_M)
        assert record.available(BLACK_M) == 0
        assert record.stock == 4
        assert record.to_dict()["stock"] == 4

    def test_missing_cell_reads_zero_and_restore_creates_it(self):
        record = _variant_record()
        red_s = VariantKey(size="S", color="Red")
        assert record.available(red_s) == 0
        record.apply_delta(2, red_s)
        assert record.variants.cells["S"]["Red"] == 2
        assert record.stock == 8

    def test_variant_product_needs_a_variant(self):
        record = _variant_record()
        with pytest.raises(ValueError):
            record.apply_delta(-1)

    def test_variant_request_on_scalar_product_uses_scalar_stock(self):
        record = ProductRecord.from_dict({"id": "P1", "stock": 4})
        assert record.available(BLACK_M) == 4
        record.apply_delta(-1, BLACK_M)
        assert record.stock == 3
