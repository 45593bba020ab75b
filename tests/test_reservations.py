import datetime as dt
import logging
import threading

import pytest
from sqlalchemy.exc import OperationalError

from storefront.database import SessionLocal
from storefront.errors import NotFound, StoreUnavailable, ValidationError
from storefront.rate_limiter import InMemoryCounterStore, RateLimiter
from storefront.reservations import ReservationEngine
from storefront.session_validator import SessionValidator
from storefront.sweeper import start_reservation_sweeper, sweep_once


def active_total(engine, reservations):
    now = engine.clock()
    return sum(r.quantity for r in reservations if r.is_active(now))


# -----------------------------
# reserve
# -----------------------------


def test_reserve_creates_hold_and_reports_remaining_stock(engine, make_product, reservations_of, clock):
    make_product("coat", stock=3)

    result = engine.reserve("coat", "session-a", 2)

    assert result["success"] is True
    assert result["available_stock"] == 1
    assert result["quantity"] == 2
    [held] = reservations_of("coat")
    assert held.session_id == "session-a"
    assert held.quantity == 2
    assert held.reserved_until == clock.now + dt.timedelta(minutes=10)


def test_capacity_never_exceeded_by_sequential_reservations(engine, make_product, store):
    make_product("dress", stock=7)
    requests = [("s1", 3), ("s2", 3), ("s3", 2), ("s1", 1), ("s3", 3), ("s4", 5), ("s2", 1), ("s5", 2)]

    for session_id, quantity in requests:
        engine.reserve("dress", session_id, quantity)
        snapshot = store.load("dress")
        assert active_total(engine, snapshot.reservations) <= snapshot.stock


def test_same_session_replaces_quantity_instead_of_adding(engine, make_product, reservations_of):
    make_product("boots", stock=10)

    engine.reserve("boots", "session-a", 2)
    result = engine.reserve("boots", "session-a", 5)

    assert result["success"] is True
    reservations = reservations_of("boots")
    assert len(reservations) == 1
    assert reservations[0].quantity == 5
    assert result["available_stock"] == 5


def test_session_may_grow_its_own_hold_up_to_full_stock(engine, make_product):
    make_product("scarf", stock=4)
    engine.reserve("scarf", "session-a", 3)

    # own hold is not counted against the new quantity
    assert engine.reserve("scarf", "session-a", 4)["success"] is True


def test_insufficient_stock_is_a_structured_failure(engine, make_product, reservations_of, clock):
    make_product("bag", stock=5)
    engine.reserve("bag", "session-a", 5)

    refused = engine.reserve("bag", "session-b", 1)
    assert refused["success"] is False
    assert refused["available_stock"] == 0
    assert "Only 0 items available" in refused["error"]
    assert [r.session_id for r in reservations_of("bag")] == ["session-a"]

    clock.advance(minutes=11)
    accepted = engine.reserve("bag", "session-b", 1)
    assert accepted["success"] is True
    assert accepted["available_stock"] == 4


def test_insufficient_stock_clears_after_release(engine, make_product):
    make_product("bag", stock=5)
    engine.reserve("bag", "session-a", 5)
    assert engine.reserve("bag", "session-b", 1)["success"] is False

    engine.release("bag", "session-a", 5)

    assert engine.reserve("bag", "session-b", 1)["success"] is True


def test_expired_reservations_are_ignored_before_any_sweep(engine, make_product, clock, store):
    make_product("hat", stock=2)
    engine.reserve("hat", "session-a", 2)
    clock.advance(minutes=10, seconds=1)

    availability = engine.get_availability("hat", "session-a")
    assert availability["available_stock"] == 2
    assert availability["reserved_by_current_user"] == 0

    # expired hold does not count as owned: releasing is a no-op
    assert engine.release("hat", "session-a", 1)["released"] == 0
    # the raw row is still there until something rewrites the product
    assert len(store.load("hat").reservations) == 1


def test_reserve_drops_expired_entries_when_writing(engine, make_product, clock, reservations_of):
    make_product("hat", stock=4)
    engine.reserve("hat", "session-a", 1)
    clock.advance(minutes=20)

    engine.reserve("hat", "session-b", 1)

    assert [r.session_id for r in reservations_of("hat")] == ["session-b"]


@pytest.mark.parametrize("quantity", [0, -1, 1.5, "2", True, None])
def test_reserve_rejects_non_positive_or_non_integer_quantity(engine, make_product, quantity):
    make_product("tee", stock=3)
    with pytest.raises(ValidationError):
        engine.reserve("tee", "session-a", quantity)


@pytest.mark.parametrize("session_id", ["", "   ", None, "all", "bad session id"])
def test_reserve_rejects_missing_or_malformed_session(engine, make_product, session_id):
    make_product("tee", stock=3)
    with pytest.raises(ValidationError):
        engine.reserve("tee", session_id, 1)


def test_reserve_unknown_product_raises_not_found(engine, make_product):
    with pytest.raises(NotFound):
        engine.reserve("ghost", "session-a", 1)


def test_reserve_broadcasts_only_on_success(engine, make_product, publisher):
    make_product("belt", stock=1)
    engine.reserve("belt", "session-a", 1)
    engine.reserve("belt", "session-b", 1)

    assert publisher.actions == ["reserve"]
    routing_key, payload = publisher.events[0]
    assert routing_key == "stock.reserve"
    assert payload["product_id"] == "belt"
    assert payload["available_stock"] == 0


# -----------------------------
# release
# -----------------------------


def test_release_is_idempotent(engine, make_product, reservations_of):
    make_product("skirt", stock=3)
    engine.reserve("skirt", "session-a", 2)

    first = engine.release("skirt", "session-a", 2)
    second = engine.release("skirt", "session-a", 2)

    assert first == {**first, "success": True, "released": 2}
    assert second["success"] is True
    assert second["released"] == 0
    assert reservations_of("skirt") == []


def test_partial_release_decrements_in_place(engine, make_product, reservations_of):
    make_product("skirt", stock=5)
    engine.reserve("skirt", "session-a", 4)

    result = engine.release("skirt", "session-a", 1)

    assert result["released"] == 1
    assert result["remaining_reserved"] == 3
    assert result["available_stock"] == 2
    [held] = reservations_of("skirt")
    assert held.quantity == 3


def test_over_release_removes_entry_entirely(engine, make_product, reservations_of):
    make_product("skirt", stock=5)
    engine.reserve("skirt", "session-a", 2)
    engine.reserve("skirt", "session-b", 1)

    result = engine.release("skirt", "session-a", 10)

    assert result["released"] == 2
    assert [r.session_id for r in reservations_of("skirt")] == ["session-b"]


def test_release_leaves_other_sessions_untouched(engine, make_product, reservations_of, publisher):
    make_product("skirt", stock=5)
    engine.reserve("skirt", "session-a", 2)
    engine.reserve("skirt", "session-b", 2)

    engine.release("skirt", "session-b", 2)

    [held] = reservations_of("skirt")
    assert (held.session_id, held.quantity) == ("session-a", 2)
    assert publisher.actions[-1] == "release"


# -----------------------------
# batch release
# -----------------------------


def test_batch_release_validates_everything_before_writing(engine, make_product, reservations_of):
    make_product("p1", stock=5)
    make_product("p2", stock=5)
    engine.reserve("p1", "session-a", 2)

    result = engine.batch_release(
        "session-a",
        [{"product_id": "p1", "quantity": 1}, {"product_id": "p2", "quantity": 1}],
    )

    assert result["success"] is False
    assert result["released_items"] == []
    assert result["errors"] == [{"product_id": "p2", "error": "No reservation found for product p2"}]
    [held] = reservations_of("p1")
    assert held.quantity == 2


def test_batch_release_reports_every_invalid_item(engine, make_product):
    make_product("p1", stock=5)
    make_product("p2", stock=5)
    engine.reserve("p1", "session-a", 1)

    result = engine.batch_release(
        "session-a",
        [
            {"product_id": "p1", "quantity": 3},
            {"product_id": "p2", "quantity": 1},
            {"product_id": "missing", "quantity": 1},
        ],
    )

    assert {e["product_id"] for e in result["errors"]} == {"p1", "p2", "missing"}
    assert "Insufficient reserved quantity" in result["errors"][0]["error"]


def test_batch_release_applies_all_items(engine, make_product, reservations_of, publisher):
    make_product("p1", stock=5)
    make_product("p2", stock=5)
    engine.reserve("p1", "session-a", 2)
    engine.reserve("p2", "session-a", 3)
    engine.reserve("p2", "session-b", 1)

    result = engine.batch_release(
        "session-a",
        [{"product_id": "p1", "quantity": 2}, {"product_id": "p2", "quantity": 1}],
    )

    assert result["success"] is True
    assert result["errors"] == []
    assert result["released_items"] == [
        {"product_id": "p1", "quantity": 2},
        {"product_id": "p2", "quantity": 1},
    ]
    assert reservations_of("p1") == []
    assert sorted((r.session_id, r.quantity) for r in reservations_of("p2")) == [("session-a", 2), ("session-b", 1)]
    assert publisher.actions.count("release") == 2


def test_batch_release_merges_duplicate_products(engine, make_product, reservations_of):
    make_product("p1", stock=5)
    engine.reserve("p1", "session-a", 3)

    result = engine.batch_release(
        "session-a",
        [{"product_id": "p1", "quantity": 1}, {"product_id": "p1", "quantity": 1}],
    )

    assert result["released_items"] == [{"product_id": "p1", "quantity": 2}]
    [held] = reservations_of("p1")
    assert held.quantity == 1


def test_batch_release_requires_items(engine):
    with pytest.raises(ValidationError):
        engine.batch_release("session-a", [])


# -----------------------------
# rollback release
# -----------------------------


def test_rollback_release_reholds_for_thirty_minutes(engine, make_product, reservations_of, clock):
    make_product("vest", stock=2)
    engine.reserve("vest", "session-a", 2)
    engine.release("vest", "session-a", 2)

    result = engine.rollback_release("vest", "session-a", 2)

    assert result["success"] is True
    [held] = reservations_of("vest")
    assert held.reserved_until == clock.now + dt.timedelta(minutes=30)


def test_rollback_release_fails_softly_when_stock_was_taken(engine, make_product):
    make_product("vest", stock=1)
    engine.reserve("vest", "session-b", 1)

    result = engine.rollback_release("vest", "session-a", 1)

    assert result["success"] is False
    assert result["available_stock"] == 0


def test_rollback_release_is_rate_limited_per_session(store, make_product, clock):
    make_product("vest", stock=100)
    validator = SessionValidator(InMemoryCounterStore(clock=clock), clock=clock)
    engine = ReservationEngine(store, session_validator=validator, clock=clock, sleep=lambda _: None)

    for _ in range(10):
        assert engine.rollback_release("vest", "session-a", 1, ip_address="10.0.0.1")["success"] is True

    blocked = engine.rollback_release("vest", "session-a", 1, ip_address="10.0.0.1")
    assert blocked["success"] is False
    assert blocked["rate_limited"] is True
    assert blocked["remaining"] == 0
    assert blocked["reset_time"].endswith("Z")

    # a different session is not affected
    assert engine.rollback_release("vest", "session-b", 1, ip_address="10.0.0.1")["success"] is True

    clock.advance(minutes=5, seconds=1)
    assert engine.rollback_release("vest", "session-a", 1, ip_address="10.0.0.1")["success"] is True


# -----------------------------
# clear / sweep
# -----------------------------


def test_clear_all_wipes_every_hold(engine, make_product, reservations_of, publisher):
    make_product("jeans", stock=6)
    engine.reserve("jeans", "session-a", 2)
    engine.reserve("jeans", "session-b", 3)

    result = engine.clear_reservation("jeans", "all")

    assert result["cleared_count"] == 2
    assert result["available_stock"] == 6
    assert reservations_of("jeans") == []
    assert publisher.actions[-1] == "clear"


def test_clear_single_session(engine, make_product, reservations_of):
    make_product("jeans", stock=6)
    engine.reserve("jeans", "session-a", 2)
    engine.reserve("jeans", "session-b", 3)

    result = engine.clear_reservation("jeans", "session-a")

    assert result["cleared_count"] == 1
    assert result["available_stock"] == 3
    assert [r.session_id for r in reservations_of("jeans")] == ["session-b"]


def test_clear_without_matching_hold_writes_nothing(engine, make_product, publisher):
    make_product("jeans", stock=6)

    result = engine.clear_reservation("jeans", "session-a")

    assert result == {**result, "success": True, "cleared_count": 0}
    assert publisher.events == []


def test_cleanup_sweep_only_removes_expired_entries(engine, make_product, reservations_of, clock):
    make_product("a", stock=5)
    make_product("b", stock=5)
    make_product("c", stock=5)
    engine.reserve("a", "old", 1)
    engine.reserve("b", "old", 2)
    clock.advance(minutes=8)
    engine.reserve("b", "fresh", 1)
    engine.reserve("c", "fresh", 1)
    clock.advance(minutes=3)

    result = engine.cleanup_expired_reservations(batch_size=2)

    assert result == {"success": True, "total_products": 3, "cleared_count": 2, "errors": []}
    assert reservations_of("a") == []
    assert [r.session_id for r in reservations_of("b")] == ["fresh"]
    assert [r.session_id for r in reservations_of("c")] == ["fresh"]


def test_cleanup_sweep_broadcasts_only_changed_products(engine, make_product, clock, publisher):
    make_product("a", stock=5)
    make_product("b", stock=5)
    engine.reserve("a", "old", 2)
    clock.advance(minutes=8)
    engine.reserve("b", "fresh", 1)
    clock.advance(minutes=3)
    publisher.events.clear()

    engine.cleanup_expired_reservations()

    assert publisher.events == [
        ("stock.cleanup", {**publisher.events[0][1], "action": "cleanup", "product_id": "a", "available_stock": 5}),
    ]


def test_cleanup_sweep_collects_per_product_failures(engine, make_product, store, clock, monkeypatch):
    make_product("a", stock=5)
    make_product("b", stock=5)
    engine.reserve("a", "old", 1)
    engine.reserve("b", "old", 1)
    clock.advance(minutes=11)

    original_save = store.save_reservations

    def flaky_save(product_id, reservations):
        if product_id == "a":
            raise OperationalError("UPDATE", {}, Exception("database is locked"))
        return original_save(product_id, reservations)

    monkeypatch.setattr(store, "save_reservations", flaky_save)

    result = engine.cleanup_expired_reservations()

    assert result["success"] is False
    assert result["cleared_count"] == 1
    assert [e["product_id"] for e in result["errors"]] == ["a"]


# -----------------------------
# permanent stock changes
# -----------------------------


def test_decrement_stock_subtracts_and_floors_at_zero(engine, make_product, store):
    make_product("shirt", stock=5)

    assert engine.decrement_stock("shirt", 2) == {
        "success": True,
        "product_id": "shirt",
        "previous_stock": 5,
        "new_stock": 3,
    }
    assert engine.decrement_stock("shirt", 10)["new_stock"] == 0
    assert store.load("shirt").stock == 0


def test_decrement_to_zero_logs_manual_restock_warning(engine, make_product, caplog):
    make_product("shirt", stock=1, title="Silk shirt")

    with caplog.at_level(logging.WARNING, logger="storefront.reservations"):
        engine.decrement_stock("shirt", 1)

    assert "PERMANENTLY OUT OF STOCK" in caplog.text
    assert "Silk shirt" in caplog.text


def test_decrement_stock_does_not_touch_reservations(engine, make_product, reservations_of):
    make_product("shirt", stock=5)
    engine.reserve("shirt", "session-a", 2)

    engine.decrement_stock("shirt", 1)

    assert len(reservations_of("shirt")) == 1


def test_set_out_of_stock_and_update_stock(engine, make_product, store, publisher):
    make_product("shirt", stock=5)

    assert engine.set_out_of_stock("shirt")["previous_stock"] == 5
    assert store.load("shirt").stock == 0

    assert engine.update_stock("shirt", 4) == {
        "success": True,
        "product_id": "shirt",
        "previous_stock": 0,
        "new_stock": 4,
    }
    assert publisher.actions == ["out_of_stock", "update"]

    with pytest.raises(ValidationError):
        engine.update_stock("shirt", -1)


def test_stock_change_on_unknown_product(engine):
    with pytest.raises(NotFound):
        engine.decrement_stock("ghost", 1)


# -----------------------------
# availability, retries, throttle
# -----------------------------


def test_availability_messages(engine, make_product):
    make_product("cap", stock=3)
    engine.reserve("cap", "session-b", 1)

    mine = engine.get_availability("cap", "session-b")
    assert mine["is_reserved_by_current_user"] is True
    assert mine["message"] == "You reserved 1 item"

    other = engine.get_availability("cap", "session-a")
    assert other["available"] is True
    assert other["available_stock"] == 2
    assert other["message"] == "2 in stock, 1 currently reserved by others"

    engine.reserve("cap", "session-b", 3)
    taken = engine.get_availability("cap", "session-a")
    assert taken["available"] is False
    assert taken["is_reserved_by_other_user"] is True

    engine.set_out_of_stock("cap")
    gone = engine.get_availability("cap")
    assert gone["permanently_out_of_stock"] is True
    assert gone["available_stock"] == 0


def test_transient_store_errors_are_retried(engine, make_product, store, monkeypatch):
    make_product("gloves", stock=2)
    original_load = store.load
    calls = {"n": 0}

    def flaky_load(product_id, lock=False):
        calls["n"] += 1
        if calls["n"] < 3:
            raise OperationalError("SELECT", {}, Exception("timeout"))
        return original_load(product_id, lock=lock)

    monkeypatch.setattr(store, "load", flaky_load)

    assert engine.reserve("gloves", "session-a", 1)["success"] is True
    assert calls["n"] == 3


def test_store_unavailable_after_retry_ceiling(engine, make_product, store, monkeypatch):
    make_product("gloves", stock=2)

    def broken_load(product_id, lock=False):
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    monkeypatch.setattr(store, "load", broken_load)

    with pytest.raises(StoreUnavailable):
        engine.reserve("gloves", "session-a", 1)


def test_store_write_throttle_surfaces_as_unavailable(store, make_product, clock):
    make_product("gloves", stock=10)
    limiter = RateLimiter(InMemoryCounterStore(clock=clock), key_prefix="store-writes", max_attempts=2, window_ms=60_000)
    engine = ReservationEngine(store, store_limiter=limiter, clock=clock, sleep=lambda _: None)

    engine.reserve("gloves", "session-a", 1)
    engine.reserve("gloves", "session-a", 2)
    with pytest.raises(StoreUnavailable):
        engine.reserve("gloves", "session-a", 3)


def test_trigger_stock_update_broadcasts_current_figures(engine, make_product, publisher):
    make_product("cap", stock=3)
    engine.reserve("cap", "session-a", 1)

    result = engine.trigger_stock_update("cap")

    assert result["broadcast"] is True
    routing_key, payload = publisher.events[-1]
    assert routing_key == "stock.refresh"
    assert (payload["stock"], payload["available_stock"]) == (3, 2)

    with pytest.raises(ValidationError):
        engine.trigger_stock_update("cap", "explode")


def test_scheduled_sweep_uses_its_own_session(engine, make_product, reservations_of, clock):
    make_product("cap", stock=3)
    engine.reserve("cap", "session-a", 1)
    clock.advance(minutes=15)

    result = sweep_once(SessionLocal, clock=clock)

    assert result["cleared_count"] == 1
    assert reservations_of("cap") == []


def test_sweeper_disabled_without_interval():
    assert start_reservation_sweeper(0) is None


def test_sweeper_keeps_running_after_unexpected_error():
    attempts = []
    retried = threading.Event()

    def broken_session_factory():
        attempts.append(1)
        if len(attempts) >= 2:
            retried.set()
        raise RuntimeError("unexpected")

    stop = start_reservation_sweeper(0.01, session_factory=broken_session_factory)
    try:
        assert retried.wait(timeout=5)
    finally:
        stop.set()
