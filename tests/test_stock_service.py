import pytest

from shopcart.exceptions import InsufficientStockError, NotFoundError, ValidationError
from shopcart.models import CommitItem, StockItem


def assert_available_invariant(record):
    assert record.available == max(0, record.quantity - record.reserved)


def test_reserve_then_overreserve(stock):
    stock.create_record("p1", 10)

    stock.reserve_stock([StockItem(product_id="p1", quantity=10)])
    record = stock.get_record("p1")
    assert record.reserved == 10
    assert record.available == 0

    with pytest.raises(InsufficientStockError) as exc_info:
        stock.reserve_stock([StockItem(product_id="p1", quantity=1)])
    assert exc_info.value.in_stock == 0
    assert str(exc_info.value) == "Only 0 items available"


def test_batch_is_all_or_nothing(stock):
    stock.create_record("a", 5)
    stock.create_record("b", 5)
    stock.create_record("c", 1)

    with pytest.raises(InsufficientStockError) as exc_info:
        stock.reserve_stock([
            StockItem(product_id="a", quantity=2),
            StockItem(product_id="b", quantity=3),
            StockItem(product_id="c", quantity=2),
        ])

    assert exc_info.value.product_id == "c"
    assert exc_info.value.in_stock == 1
    assert stock.get_record("a").reserved == 0
    assert stock.get_record("b").reserved == 0


def test_same_record_twice_in_batch_is_checked_cumulatively(stock):
    stock.create_record("a", 5)

    with pytest.raises(InsufficientStockError):
        stock.reserve_stock([
            StockItem(product_id="a", quantity=3),
            StockItem(product_id="a", quantity=3),
        ])
    assert stock.get_record("a").reserved == 0


def test_reserve_release_round_trip(stock):
    stock.create_record("a", 8)
    stock.reserve_stock([StockItem(product_id="a", quantity=2)])
    before = stock.get_record("a").reserved

    stock.reserve_stock([StockItem(product_id="a", quantity=3)])
    stock.release_stock([StockItem(product_id="a", quantity=3)])

    record = stock.get_record("a")
    assert record.reserved == before
    assert_available_invariant(record)


def test_over_release_clamps_at_zero(stock):
    stock.create_record("a", 4)
    stock.reserve_stock([StockItem(product_id="a", quantity=1)])
    stock.release_stock([StockItem(product_id="a", quantity=5)])

    record = stock.get_record("a")
    assert record.reserved == 0
    assert record.available == 4


def test_backorder_allows_overselling_holds(stock):
    stock.create_record("a", 1, allow_backorder=True)
    stock.reserve_stock([StockItem(product_id="a", quantity=3)])

    record = stock.get_record("a")
    assert record.reserved == 3
    assert record.available == 0
    assert stock.check_availability("a", 10).available


def test_untracked_inventory_is_always_available(stock):
    stock.create_record("digital", 0, track_inventory=False)

    availability = stock.check_availability("digital", 1000)
    assert availability.available
    assert availability.in_stock is None

    stock.reserve_stock([StockItem(product_id="digital", quantity=50)])
    assert stock.get_record("digital").reserved == 0


def test_missing_record_raises_not_found(stock):
    with pytest.raises(NotFoundError):
        stock.check_availability("ghost", 1)
    with pytest.raises(NotFoundError):
        stock.reserve_stock([StockItem(product_id="ghost", quantity=1)])
    with pytest.raises(NotFoundError):
        stock.check_availability("widget", 1, variant_id="nope")


def test_variant_records_are_independent(stock):
    stock.create_record("tee", 0)
    stock.create_record("tee", 2, variant_id="m")

    assert stock.check_availability("tee", 2, variant_id="m").available
    assert not stock.check_availability("tee", 1).available


def test_commit_reserved_stock(stock, low_stock_alerts):
    stock.create_record("a", 10, low_stock_threshold=3)
    stock.reserve_stock([StockItem(product_id="a", quantity=4)])

    low = stock.commit_stock([CommitItem(product_id="a", quantity=4)])

    record = stock.get_record("a")
    assert record.quantity == 6
    assert record.reserved == 0
    assert record.available == 6
    assert stock.get_sold_count("a") == 4
    assert low == []
    assert low_stock_alerts == []


def test_commit_reports_low_stock_after_the_write(stock, low_stock_alerts):
    stock.create_record("a", 5, low_stock_threshold=2)
    stock.reserve_stock([StockItem(product_id="a", quantity=3)])

    low = stock.commit_stock([CommitItem(product_id="a", quantity=3)])

    assert [record.quantity for record in low] == [2]
    assert [record.product_id for record in low_stock_alerts] == ["a"]


def test_notifier_failure_does_not_fail_commit(redis_client):
    from shopcart.stock_service import StockService

    def broken(record):
        raise RuntimeError("mail server down")

    stock = StockService(redis_client, low_stock_notifier=broken)
    stock.create_record("a", 1, low_stock_threshold=1)

    low = stock.commit_stock([CommitItem(product_id="a", quantity=1, reserved=False)])
    assert len(low) == 1
    assert stock.get_record("a").quantity == 0


def test_commit_unreserved_line_cannot_oversell(stock):
    stock.create_record("a", 3)
    stock.reserve_stock([StockItem(product_id="a", quantity=2)])

    with pytest.raises(InsufficientStockError) as exc_info:
        stock.commit_stock([CommitItem(product_id="a", quantity=2, reserved=False)])

    assert exc_info.value.in_stock == 1
    record = stock.get_record("a")
    assert record.quantity == 3
    assert record.reserved == 2


def test_variant_commit_counts_sales_on_the_product(stock):
    stock.create_record("tee", 0)
    stock.create_record("tee", 4, variant_id="m")
    stock.reserve_stock([StockItem(product_id="tee", variant_id="m", quantity=2)])

    stock.commit_stock([CommitItem(product_id="tee", variant_id="m", quantity=2)])

    assert stock.get_record("tee", "m").quantity == 2
    assert stock.get_sold_count("tee") == 2


def test_sales_counter_is_not_a_product_record(stock):
    stock.create_record("hat", 3, variant_id="s")
    stock.commit_stock([CommitItem(product_id="hat", variant_id="s", quantity=1, reserved=False)])

    assert stock.get_sold_count("hat") == 1
    with pytest.raises(NotFoundError):
        stock.check_availability("hat", 1)
    with pytest.raises(NotFoundError):
        stock.reserve_stock([StockItem(product_id="hat", quantity=50)])
    with pytest.raises(NotFoundError):
        stock.release_stock([StockItem(product_id="hat", quantity=1)])
    with pytest.raises(NotFoundError):
        stock.adjust_stock("hat", 5, "Restock")
    assert stock.get_record("hat", "s").quantity == 2


def test_adjust_stock_records_history(stock, clock):
    stock.create_record("a", 5)
    stock.reserve_stock([StockItem(product_id="a", quantity=2)])

    addition = stock.adjust_stock("a", 10, "Restock")
    deduction = stock.adjust_stock("a", -20, "Damaged in warehouse")

    assert addition.previous_stock == 5
    assert addition.new_stock == 15
    assert deduction.type == "deduction"
    assert deduction.new_stock == 0

    record = stock.get_record("a")
    assert record.quantity == 0
    assert record.available == 0

    history = stock.get_history("a")
    assert [entry.type for entry in history] == ["addition", "deduction"]
    assert history[0].reason == "Restock"
    assert history[0].date == clock.now
    assert history[1].quantity == 20


def test_adjust_stock_rejects_zero_and_missing(stock):
    stock.create_record("a", 5)
    with pytest.raises(ValidationError):
        stock.adjust_stock("a", 0, "noop")
    with pytest.raises(NotFoundError):
        stock.adjust_stock("ghost", 1, "restock")


def test_create_record_keeps_existing_holds(stock):
    stock.create_record("a", 5)
    stock.reserve_stock([StockItem(product_id="a", quantity=2)])

    record = stock.create_record("a", 8)

    assert record.reserved == 2
    assert record.available == 6


def test_low_stock_listing(stock):
    stock.create_record("a", 1, low_stock_threshold=2)
    stock.create_record("b", 50, low_stock_threshold=2)
    stock.create_record("c", 0, track_inventory=False)

    assert [record.product_id for record in stock.get_low_stock()] == ["a"]
    assert {record.product_id for record in stock.get_low_stock(threshold=100)} == {"a", "b"}
