from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.catalog import CatalogStore
from app.errors import InsufficientStockError, NotFoundError, ValidationError
from app.models import Product
from app.validation import (
    PriceStockValidator,
    parse_id,
    parse_order_request,
    parse_status_update,
    price_items,
)
from conftest import ADDRESS, order_request


# ── 注文リクエストの形の検証 ─────────────────────


class TestParseOrderRequest:
    def test_valid_request(self):
        request = parse_order_request(
            [{"productId": 1, "quantity": 2}, {"productId": 7, "quantity": 100}], ADDRESS
        )
        assert [(i.product_id, i.quantity) for i in request.items] == [(1, 2), (7, 100)]
        assert request.delivery.method == "delivery"
        assert request.delivery.address == "12 rue des Lilas, Lyon"

    @pytest.mark.parametrize("items", [None, [], "1,2", {"productId": 1}])
    def test_empty_or_missing_items(self, items):
        with pytest.raises(ValidationError, match="at least one item"):
            parse_order_request(items, ADDRESS)

    def test_too_many_items(self):
        items = [{"productId": i, "quantity": 1} for i in range(1, 102)]
        with pytest.raises(ValidationError, match="more than 100"):
            parse_order_request(items, ADDRESS)

    def test_exactly_one_hundred_items(self):
        items = [{"productId": i, "quantity": 1} for i in range(1, 101)]
        assert len(parse_order_request(items, ADDRESS).items) == 100

    @pytest.mark.parametrize("product_id", [0, -3, "5", 1.0, True, None])
    def test_product_id_must_be_positive_integer(self, product_id):
        with pytest.raises(ValidationError, match="productId"):
            parse_order_request([{"productId": product_id, "quantity": 1}], ADDRESS)

    def test_product_id_within_id_range(self):
        assert parse_order_request([{"productId": 2**31 - 1, "quantity": 1}], ADDRESS)
        with pytest.raises(ValidationError, match="productId"):
            parse_order_request([{"productId": 2**31, "quantity": 1}], ADDRESS)

    @pytest.mark.parametrize("quantity", [0, 101, -1, 2.5, "3", None, False])
    def test_quantity_range(self, quantity):
        with pytest.raises(ValidationError, match="quantity"):
            parse_order_request([{"productId": 1, "quantity": quantity}], ADDRESS)

    def test_item_must_be_object(self):
        with pytest.raises(ValidationError, match=r"items\[0\]"):
            parse_order_request([[1, 2]], ADDRESS)

    def test_duplicate_products_rejected(self):
        with pytest.raises(ValidationError, match="more than once"):
            parse_order_request(
                [{"productId": 1, "quantity": 1}, {"productId": 1, "quantity": 2}], ADDRESS
            )

    def test_client_price_is_ignored(self):
        request = parse_order_request(
            [{"productId": 1, "quantity": 1, "price": "0.01"}], ADDRESS
        )
        assert not hasattr(request.items[0], "price")


class TestParseDelivery:
    def test_invalid_method(self):
        with pytest.raises(ValidationError, match="delivery.method"):
            order_request((1, 1), delivery={"method": "drone", "address": "x"})

    def test_delivery_requires_address(self):
        with pytest.raises(ValidationError, match="address"):
            order_request((1, 1), delivery={"method": "delivery", "address": "   "})

    def test_pickup_requires_pickup_point(self):
        with pytest.raises(ValidationError, match="pickupPoint"):
            order_request((1, 1), delivery={"method": "pickup"})

    def test_pickup_point_stored_as_address(self):
        request = order_request((1, 1), delivery={"method": "pickup", "pickupPoint": "Relay 42"})
        assert request.delivery.method == "pickup"
        assert request.delivery.address == "Relay 42"

    def test_missing_method_defaults_to_delivery(self):
        request = order_request((1, 1), delivery={"address": "1 Main St"})
        assert request.delivery.method == "delivery"

    def test_missing_delivery_requires_address(self):
        with pytest.raises(ValidationError, match="address"):
            order_request((1, 1), delivery=None)


# ── ステータス更新の検証 ─────────────────────────


class TestParseStatusUpdate:
    def test_nothing_provided(self):
        with pytest.raises(ValidationError, match="Nothing to update"):
            parse_status_update()

    def test_invalid_order_status_lists_allowed_values(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_status_update(order_status="lost")
        message = exc_info.value.message
        assert "orderStatus" in message
        for value in ("pending", "paid", "preparing", "shipped", "delivered", "cancelled"):
            assert value in message

    def test_first_invalid_value_is_reported(self):
        with pytest.raises(ValidationError, match="paymentStatus"):
            parse_status_update(
                order_status="shipped", payment_status="charged", delivery_status="teleported"
            )

    def test_invalid_delivery_status(self):
        with pytest.raises(ValidationError, match="deliveryStatus"):
            parse_status_update(delivery_status="returned")

    def test_estimated_at_parsing(self):
        update = parse_status_update(estimated_at="2026-11-02T10:00:00Z")
        assert update.estimated_at == datetime(2026, 11, 2, 10, 0, tzinfo=timezone.utc)
        assert update.changes() == {"estimatedAt": "2026-11-02T10:00:00+00:00"}

    @pytest.mark.parametrize("value", ["tomorrow", "", 12345])
    def test_invalid_estimated_at(self, value):
        with pytest.raises(ValidationError, match="estimatedAt"):
            parse_status_update(estimated_at=value)

    def test_changes_only_include_provided_fields(self):
        update = parse_status_update(order_status="shipped", delivery_status="shipped")
        assert update.changes() == {"orderStatus": "shipped", "deliveryStatus": "shipped"}


@pytest.mark.parametrize("value, expected", [(3, 3), ("42", 42), (" 7 ", 7)])
def test_parse_id(value, expected):
    assert parse_id(value) == expected


@pytest.mark.parametrize(
    "value", ["abc", "0", 0, -1, "1.5", None, 2**31, "2147483648", "9" * 5000]
)
def test_parse_id_rejects_malformed(value):
    with pytest.raises(ValidationError):
        parse_id(value)


# ── 価格・在庫チェック ───────────────────────────


def _catalog(*products):
    return {p.id: p for p in products}


class TestPriceItems:
    def test_total_uses_catalog_prices(self):
        catalog = _catalog(
            Product(id=1, name="Tea", price=Decimal("4.50"), stock=10),
            Product(id=2, name="Mug", price=Decimal("12.99"), stock=3),
        )
        validated = price_items(order_request((1, 3), (2, 2)), catalog)
        assert validated.total == Decimal("39.48")
        assert [(i.product_id, i.quantity, i.price) for i in validated.items] == [
            (1, 3, Decimal("4.50")),
            (2, 2, Decimal("12.99")),
        ]

    def test_missing_products_are_all_named(self):
        catalog = _catalog(Product(id=1, name="Tea", price=Decimal("4.50"), stock=10))
        with pytest.raises(NotFoundError) as exc_info:
            price_items(order_request((1, 1), (8, 1), (9, 1)), catalog)
        assert exc_info.value.missing_ids == [8, 9]
        assert "8" in exc_info.value.message and "9" in exc_info.value.message

    def test_insufficient_stock_details(self):
        catalog = _catalog(Product(id=1, name="Tea", price=Decimal("4.50"), stock=2))
        with pytest.raises(InsufficientStockError) as exc_info:
            price_items(order_request((1, 3)), catalog)
        error = exc_info.value
        assert (error.product_name, error.available, error.requested) == ("Tea", 2, 3)
        assert "available 2, requested 3" in error.message

    def test_exact_stock_is_enough(self):
        catalog = _catalog(Product(id=1, name="Tea", price=Decimal("4.50"), stock=3))
        assert price_items(order_request((1, 3)), catalog).total == Decimal("13.50")


async def test_validator_reads_products_without_side_effects(db, shop):
    p1 = await shop.add_product(name="P1", price="10.00", stock=5)
    validator = PriceStockValidator(CatalogStore())

    async with db.snapshot() as session:
        validated = await validator.validate(session, order_request((p1, 3)))

    assert validated.total == Decimal("30.00")
    assert await shop.stock(p1) == 5


async def test_validator_unknown_product(db, shop):
    await shop.add_product()
    validator = PriceStockValidator(CatalogStore())
    async with db.snapshot() as session:
        with pytest.raises(NotFoundError) as exc_info:
            await validator.validate(session, order_request((999, 1)))
    assert exc_info.value.missing_ids == [999]
