"""
Product records stored inside a batch document.

A batch row keeps its products as a JSON list. These dataclasses are the typed
view of one entry of that list. Variant presence is explicit: a product either
carries a scalar ``stock`` (``variants is None``) or a size -> color -> units grid,
in which case the scalar stock is always the sum of the grid and is never
stored independently of it.

Keys that this module does not model (name, price, images, ...) are preserved in
``extra`` so a read-modify-write never drops catalog data it does not own.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class VariantKey:
    size: str
    color: str

    @classmethod
    def from_dict(cls, data: dict | None) -> "VariantKey | None":
        if not data:
            return None
        size = data.get("size")
        color = data.get("color")
        if not size or not color:
            raise ValueError("variant requires both size and color")
        return cls(size=str(size), color=str(color))

    def to_dict(self) -> dict:
        return {"size": self.size, "color": self.color}


@dataclass
class VariantStock:
    """Stock grid keyed by size, then color."""
    cells: dict[str, dict[str, int]]
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "VariantStock":
        raw = data.get("stock") or {}
        cells = {
            str(size): {str(color): int(units or 0) for color, units in (colors or {}).items()}
            for size, colors in raw.items()
        }
        extra = {k: copy.deepcopy(v) for k, v in data.items() if k != "stock"}
        return cls(cells=cells, extra=extra)

    def to_dict(self) -> dict:
        out = copy.deepcopy(self.extra)
        out["stock"] = {size: dict(colors) for size, colors in self.cells.items()}
        return out

    def total(self) -> int:
        return sum(units for colors in self.cells.values() for units in colors.values())

    def cell(self, key: VariantKey) -> int:
        # Missing cells read as zero units.
        return int(self.cells.get(key.size, {}).get(key.color, 0))


@dataclass
class ProductRecord:
    id: str
    scalar_stock: int = 0
    variants: VariantStock | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def stock(self) -> int:
        if self.variants is not None:
            return self.variants.total()
        return self.scalar_stock

    @property
    def has_variants(self) -> bool:
        return self.variants is not None

    @classmethod
    def from_dict(cls, data: dict) -> "ProductRecord":
        if "id" not in data:
            raise ValueError("product record without id")
        variants = None
        raw_variants = data.get("variants")
        if isinstance(raw_variants, dict) and isinstance(raw_variants.get("stock"), dict):
            variants = VariantStock.from_dict(raw_variants)
        extra = {
            k: copy.deepcopy(v)
            for k, v in data.items()
            if k not in ("id", "stock") and not (k == "variants" and variants is not None)
        }
        return cls(
            id=str(data["id"]),
            scalar_stock=int(data.get("stock") or 0),
            variants=variants,
            extra=extra,
        )

    def to_dict(self) -> dict:
        out = copy.deepcopy(self.extra)
        out["id"] = self.id
        out["stock"] = self.stock
        if self.variants is not None:
            out["variants"] = self.variants.to_dict()
        return out

    def uses_variant(self, variant: VariantKey | None) -> bool:
        # A variant request against a product without a grid falls back to scalar stock.
        return variant is not None and self.variants is not None

    def available(self, variant: VariantKey | None = None) -> int:
        if self.uses_variant(variant):
            return self.variants.cell(variant)
        return self.stock

    def apply_delta(self, delta: int, variant: VariantKey | None = None) -> None:
        """
        Add ``delta`` units (negative to take stock) to the scalar stock or the
        addressed grid cell. Raises ValueError if the result would be negative;
        callers check availability first to produce a business error.
        """
        if self.uses_variant(variant):
            current = self.variants.cell(variant)
            if current + delta < 0:
                raise ValueError("variant stock cannot go negative")
            self.variants.cells.setdefault(variant.size, {})[variant.color] = current + delta
            return
        if self.variants is not None:
            raise ValueError("product tracks stock per variant; size and color are required")
        if self.scalar_stock + delta < 0:
            raise ValueError("stock cannot go negative")
        self.scalar_stock += delta


def load_products(raw: list[dict] | None) -> list[ProductRecord]:
    return [ProductRecord.from_dict(item) for item in (raw or [])]


def dump_products(products: list[ProductRecord]) -> list[dict]:
    return [p.to_dict() for p in products]
