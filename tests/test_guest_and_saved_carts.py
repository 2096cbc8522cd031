from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from shopcart.exceptions import NotFoundError, ValidationError
from shopcart.models import (
    AddedFrom,
    AddItemOptions,
    AutoReplenish,
    CartIdentifier,
    GuestMetadata,
    ProductStatus,
    ReplenishFrequency,
    SaveCartOptions,
    SavedCartPurpose,
    TemplateOptions,
)
from shopcart.saved_cart_service import add_months, next_replenish_date

from .conftest import START

USER = CartIdentifier(user_id="u1")
GUEST = CartIdentifier(session_id="s1")


# --- guest sessions ----------------------------------------------------------

def test_create_guest_cart_is_idempotent(seeded, fake_redis, clock):
    first = seeded.guests.create_guest_cart("s1", GuestMetadata(ip_address="203.0.113.9", landing_page="/sale"))
    clock.advance(minutes=5)
    second = seeded.guests.create_guest_cart("s1")

    assert first.id == second.id
    assert first.session_id == "s1"
    session = seeded.guests.sessions.get("s1")
    assert session.cart_id == first.id
    assert session.ip_address == "203.0.113.9"
    assert session.created_at == START
    assert session.last_activity == clock.now
    assert fake_redis.ttl("guest_session:s1") > 0


def test_guest_metadata_rejects_unknown_fields():
    with pytest.raises(ValueError):
        GuestMetadata(fingerprint="abc")


def test_convert_guest_to_user_merges_cart(seeded, clock):
    seeded.guests.create_guest_cart("s1")
    seeded.cart_service.add_to_cart(GUEST, "widget", 2)
    seeded.cart_service.add_to_cart(USER, "lamp", 1)

    cart = seeded.guests.convert_guest_to_user("s1", "u1")

    assert {item.product_id for item in cart.items} == {"widget", "lamp"}
    session = seeded.guests.sessions.get("s1")
    assert session.converted_to_user == "u1"
    assert session.conversion_date == clock.now
    assert seeded.carts.find_by_session("s1") is None


def test_convert_unknown_guest(seeded):
    with pytest.raises(NotFoundError):
        seeded.guests.convert_guest_to_user("nobody", "u1")


# --- saved carts -------------------------------------------------------------

@pytest.fixture
def filled_cart(seeded):
    seeded.cart_service.add_to_cart(USER, "widget", 2)
    seeded.cart_service.add_to_cart(USER, "tee", 1, AddItemOptions(variant_id="m"))
    return seeded


def test_save_cart_snapshots_lines(filled_cart):
    saved = filled_cart.saved_carts.save_cart("u1", SaveCartOptions(name="Party", tags=["summer"]))

    assert saved.name == "Party"
    assert saved.user_id == "u1"
    assert [(item.product_id, item.variant_id, item.quantity) for item in saved.items] == [
        ("widget", None, 2),
        ("tee", "m", 1),
    ]
    assert saved.total_items_when_saved == 3
    assert saved.items[1].saved_price == Decimal("22.00")
    assert filled_cart.saved_carts.saved_carts.get(saved.id) == saved
    assert not filled_cart.cart_service.get_cart(USER).cart.is_empty


def test_save_cart_can_clear_live_cart(filled_cart):
    filled_cart.saved_carts.save_cart("u1", SaveCartOptions(clear_cart=True))
    assert filled_cart.cart_service.get_cart(USER).cart.is_empty


def test_empty_cart_cannot_be_saved(seeded):
    with pytest.raises(ValidationError):
        seeded.saved_carts.save_cart("u1")


def test_price_changes_are_reported(filled_cart, products):
    saved = filled_cart.saved_carts.save_cart("u1")
    filled_cart.catalog.save(products["widget"].model_copy(update={"base_price": Decimal("12.00")}))

    report = filled_cart.saved_carts.update_prices(saved)

    assert report.has_changes
    widget = report.items[0]
    assert widget.current_price == Decimal("12.00")
    assert widget.price_change_amount == Decimal("2.00")
    assert widget.price_change_percent == Decimal("20.00")
    assert not report.items[1].price_changed
    assert report.total_price_change == Decimal("4.00")
    assert filled_cart.carts.find_by_user("u1").items[0].price == Decimal("10.00")


def test_saved_carts_are_listed_newest_first(filled_cart, clock):
    filled_cart.saved_carts.save_cart("u1", SaveCartOptions(name="First"))
    clock.advance(hours=1)
    filled_cart.saved_carts.save_cart("u1", SaveCartOptions(name="Second"))

    listed = filled_cart.saved_carts.get_saved_carts("u1")

    assert [saved.name for saved, _ in listed] == ["Second", "First"]
    assert all(not report.has_changes for _, report in listed)
    assert filled_cart.saved_carts.get_saved_carts("u2") == []


def test_activate_saved_cart_replays_lines(filled_cart, products):
    saved = filled_cart.saved_carts.save_cart("u1", SaveCartOptions(clear_cart=True))
    filled_cart.catalog.save(products["tee"].model_copy(update={"status": ProductStatus.ARCHIVED}))

    view = filled_cart.saved_carts.activate_saved_cart(saved.id, "u1")

    assert [(item.product_id, item.quantity) for item in view.cart.items] == [("widget", 2)]
    assert view.cart.items[0].metadata.added_from == AddedFrom.SAVED_CART
    stored = filled_cart.saved_carts.saved_carts.get(saved.id)
    assert stored.activation_count == 1
    assert stored.last_activated is not None


def test_activate_without_merge_replaces_live_cart(filled_cart):
    saved = filled_cart.saved_carts.save_cart("u1")
    filled_cart.cart_service.add_to_cart(USER, "lamp", 1)

    view = filled_cart.saved_carts.activate_saved_cart(saved.id, "u1", merge=False)

    assert {item.product_id: item.quantity for item in view.cart.items} == {"widget": 2, "tee": 1}


def test_saved_carts_belong_to_their_owner(filled_cart):
    saved = filled_cart.saved_carts.save_cart("u1")

    with pytest.raises(NotFoundError):
        filled_cart.saved_carts.activate_saved_cart(saved.id, "u2")
    with pytest.raises(NotFoundError):
        filled_cart.saved_carts.delete_saved_cart(saved.id, "u2")

    filled_cart.saved_carts.delete_saved_cart(saved.id, "u1")
    assert filled_cart.saved_carts.get_saved_carts("u1") == []


def test_template_is_replenished_on_schedule(filled_cart, clock):
    template = filled_cart.saved_carts.create_cart_template("u1", TemplateOptions(
        name="Weekly basics",
        auto_replenish=AutoReplenish(enabled=True, frequency=ReplenishFrequency.WEEKLY)
    ))
    assert template.is_template
    assert template.purpose == SavedCartPurpose.RECURRING
    assert template.auto_replenish.next_date == START + timedelta(weeks=1)

    filled_cart.cart_service.clear_cart(USER)
    clock.advance(days=1)
    assert filled_cart.saved_carts.process_auto_replenish() == 0

    clock.advance(days=6)
    assert filled_cart.saved_carts.process_auto_replenish() == 1

    assert filled_cart.cart_service.get_cart(USER).cart.item_count == 3
    stored = filled_cart.saved_carts.saved_carts.get(template.id)
    assert stored.auto_replenish.next_date == START + timedelta(weeks=2)
    assert stored.activation_count == 1
    assert filled_cart.saved_carts.process_auto_replenish() == 0


def test_template_without_auto_replenish_is_never_due(filled_cart, clock):
    filled_cart.saved_carts.create_cart_template("u1", TemplateOptions(name="Manual"))
    clock.advance(days=400)
    assert filled_cart.saved_carts.process_auto_replenish() == 0


def test_month_arithmetic_clamps_to_month_end():
    jan_31 = datetime(2027, 1, 31, tzinfo=timezone.utc)
    assert add_months(jan_31, 1) == datetime(2027, 2, 28, tzinfo=timezone.utc)
    assert add_months(datetime(2026, 11, 30, tzinfo=timezone.utc), 3) == datetime(2027, 2, 28, tzinfo=timezone.utc)
    assert next_replenish_date(jan_31, ReplenishFrequency.BIWEEKLY) == jan_31 + timedelta(weeks=2)
    assert next_replenish_date(jan_31, ReplenishFrequency.QUARTERLY) == datetime(2027, 4, 30, tzinfo=timezone.utc)
