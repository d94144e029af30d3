"""
Tests for the inventory availability checker.
"""
import pytest

from storefront.core.exceptions import NotFoundError
from storefront.services.inventory import InventoryChecker


class TestClassify:

    def setup_method(self):
        self.checker = InventoryChecker(low_stock_threshold=5, max_line_quantity=10)

    @pytest.mark.parametrize("quantity,level", [(0, "none"), (3, "low"), (5, "low"), (8, "medium"), (10, "medium"), (11, "high")])
    def test_stock_levels(self, quantity, level):
        assert self.checker.classify(1, quantity).stock_level == level

    def test_negative_stock_counts_as_zero(self):
        availability = self.checker.classify(1, -4)
        assert availability.available_quantity == 0
        assert availability.is_available is False
        assert availability.is_low_stock is False

    def test_low_stock_flag(self):
        assert self.checker.classify(1, 2).is_low_stock is True
        assert self.checker.classify(1, 6).is_low_stock is False

    def test_zero_threshold_is_not_replaced_by_default(self):
        checker = InventoryChecker(low_stock_threshold=0)
        assert checker.low_stock_threshold == 0
        assert checker.classify(1, 1).is_low_stock is False
        assert checker.classify(1, 1).stock_level == "high"


class TestValidateQuantity:

    def setup_method(self):
        self.checker = InventoryChecker(low_stock_threshold=5, max_line_quantity=10)

    def test_within_stock(self):
        result = self.checker.validate_quantity(self.checker.classify(1, 50), 4)
        assert result.is_valid is True
        assert result.max_quantity == 10

    def test_over_stock(self):
        result = self.checker.validate_quantity(self.checker.classify(1, 3), 4)
        assert result.is_valid is False
        assert result.errors == ["Only 3 available"]

    def test_over_line_cap(self):
        result = self.checker.validate_quantity(self.checker.classify(1, 50), 11)
        assert result.errors == ["Maximum 10 per order"]

    def test_out_of_stock(self):
        result = self.checker.validate_quantity(self.checker.classify(1, 0), 1)
        assert result.errors == ["This item is out of stock"]

    def test_zero_requested(self):
        result = self.checker.validate_quantity(self.checker.classify(1, 5), 0)
        assert result.is_valid is False

    def test_low_stock_warning(self):
        result = self.checker.validate_quantity(self.checker.classify(1, 2), 1)
        assert result.is_valid is True
        assert result.warnings


class TestStockReads:

    @pytest.mark.asyncio
    async def test_check_availability(self, db, catalog):
        availability = await InventoryChecker().check_availability(db, catalog["tee_m"])
        assert availability.available_quantity == 3
        assert availability.is_low_stock is True

    @pytest.mark.asyncio
    async def test_unknown_variant(self, db, catalog):
        with pytest.raises(NotFoundError):
            await InventoryChecker().check_availability(db, 9999)

    @pytest.mark.asyncio
    async def test_check_many_defaults_unknown_to_zero(self, db, catalog):
        result = await InventoryChecker().check_many(db, [catalog["tee_s"], 9999])
        assert result[catalog["tee_s"]].available_quantity == 10
        assert result[9999].is_available is False

    @pytest.mark.asyncio
    async def test_inactive_product_has_no_stock(self, db, catalog):
        checker = InventoryChecker()
        variant = await checker.load_variant(db, catalog["hoodie_v"])
        variant.product.is_active = False
        await db.commit()
        assert (await checker.check_availability(db, catalog["hoodie_v"])).is_available is False
