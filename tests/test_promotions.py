from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW
from errors import ConflictError, IneligibleError, NotFoundError
from promotions import (
    FAR_FUTURE,
    CartContext,
    PricedLine,
    evaluate_coupon,
    evaluate_offer,
    upgrade_coupon_document,
    within_schedule,
)
from schemas import Coupon, Offer, Principal, ScheduleSettings, TimeSlot, UsageRecord

UTC = timezone.utc
ALICE = Principal(id="u1", email="alice@example.com")
BOB = Principal(id="u2", email="bob@example.com")


def cart(total=1000.0, category="tops", product_id="p1"):
    return CartContext([PricedLine(product_id, category, total, 1)])


def make_coupon(**kw):
    data = dict(code="save100", type="flat", discount_amount=100, expiry_date=datetime(2030, 1, 1, tzinfo=UTC))
    data.update(kw)
    return Coupon(**data)


def make_offer(**kw):
    data = dict(
        name="Tops sale",
        category_ids=["tops"],
        discount_percentage=10,
        max_discount_amount=500,
        start_date=datetime(2026, 1, 1, tzinfo=UTC),
        end_date=datetime(2030, 1, 1, tzinfo=UTC),
    )
    data.update(kw)
    return Offer(**data)


# -----------------
# Coupon checks
# -----------------
def test_code_is_stored_upper_case():
    assert make_coupon(code="  save100 ").code == "SAVE100"


def test_min_cart_value():
    result = evaluate_coupon(make_coupon(min_cart_value=500), cart(400), now=NOW)
    assert not result.eligible
    assert result.reason == "below_min_cart_value"


def test_upto_coupon_is_capped():
    coupon = make_coupon(type="upto", discount_amount=None, discount_percentage=20, max_discount_amount=150)
    result = evaluate_coupon(coupon, cart(1000), now=NOW)
    assert result.eligible
    assert result.discount_amount == 150


def test_percent_coupon_without_cap():
    coupon = make_coupon(type="percent", discount_amount=None, discount_percentage=10)
    assert evaluate_coupon(coupon, cart(1234), now=NOW).discount_amount == 123.4


def test_flat_discount_above_total_is_invalid():
    result = evaluate_coupon(make_coupon(discount_amount=500), cart(400), now=NOW)
    assert result.reason == "invalid_discount"


@pytest.mark.parametrize("overrides, reason", [
    ({"is_active": False}, "inactive"),
    ({"expiry_date": datetime(2026, 3, 1, tzinfo=UTC)}, "expired"),
    ({"usage_limit": 2, "usage_count": 2}, "usage_limit_reached"),
    ({"applicable_categories": ["shoes"]}, "not_applicable"),
    ({"excluded_products": ["p1"]}, "excluded_items"),
    ({"is_user_specific": True, "target_user_id": "u2"}, "not_for_user"),
])
def test_coupon_rejections(overrides, reason):
    result = evaluate_coupon(make_coupon(**overrides), cart(), ALICE, now=NOW)
    assert not result.eligible
    assert result.reason == reason


def test_checks_stop_at_first_failure():
    coupon = make_coupon(is_active=False, min_cart_value=5000)
    assert evaluate_coupon(coupon, cart(), now=NOW).reason == "inactive"


def test_missing_coupon():
    assert evaluate_coupon(None, cart(), now=NOW).reason == "not_found"


def test_single_use_per_user():
    coupon = make_coupon(used_by=[UsageRecord(user_id="u1", order_id="o1")], usage_count=1)
    assert evaluate_coupon(coupon, cart(), ALICE, now=NOW).reason == "already_used"
    assert evaluate_coupon(coupon, cart(), BOB, now=NOW).eligible


def test_segments():
    coupon = make_coupon(target_user_segments=["first_order"])
    assert evaluate_coupon(coupon, cart(), ALICE, now=NOW, order_count=0).eligible
    assert evaluate_coupon(coupon, cart(), ALICE, now=NOW, order_count=2).reason == "segment_mismatch"
    assert evaluate_coupon(coupon, cart(), None, now=NOW).reason == "segment_mismatch"

    premium = make_coupon(target_user_segments=["premium_users"])
    assert evaluate_coupon(premium, cart(), Principal(id="u3", role="premium"), now=NOW).eligible


# -----------------
# Schedules
# -----------------
def test_schedule_day_and_slot():
    settings = ScheduleSettings(days_of_week=["monday"], time_slots=[TimeSlot(start="11:00", end="13:00")])
    assert within_schedule(True, settings, NOW)
    assert not within_schedule(True, settings, NOW + timedelta(hours=2))
    assert not within_schedule(True, settings, NOW + timedelta(days=1))
    assert within_schedule(False, settings, NOW + timedelta(days=1))


def test_overnight_slot():
    settings = ScheduleSettings(time_slots=[TimeSlot(start="22:00", end="02:00")])
    late = datetime(2026, 3, 2, 18, 0, tzinfo=UTC)  # 23:30 store time
    assert within_schedule(True, settings, late)
    assert not within_schedule(True, settings, NOW)


def test_scheduled_coupon_outside_slot():
    coupon = make_coupon(is_scheduled=True, schedule_settings=ScheduleSettings(days_of_week=["sunday"]))
    assert evaluate_coupon(coupon, cart(), now=NOW).reason == "outside_schedule"


# -----------------
# Offers
# -----------------
def test_offer_checks():
    assert evaluate_offer(make_offer(id="o1"), cart(1000), now=NOW).discount_amount == 100
    assert evaluate_offer(make_offer(start_date=datetime(2026, 4, 1, tzinfo=UTC)), cart(), now=NOW).reason == "not_started"
    assert evaluate_offer(make_offer(), cart(category="shoes"), now=NOW).reason == "not_applicable"
    assert evaluate_offer(make_offer(min_cart_value=2000), cart(), now=NOW).reason == "below_min_cart_value"


def test_best_offer_prefers_priority_then_discount(evaluator, promotion_store):
    promotion_store.create_offer(make_offer(name="Big", discount_percentage=20, priority=1))
    promotion_store.create_offer(make_offer(name="Pinned", discount_percentage=5, max_discount_amount=100, priority=5))
    promotion_store.create_offer(make_offer(name="Also pinned", discount_percentage=8, max_discount_amount=100, priority=5))
    promotion_store.create_offer(make_offer(name="Shoes", category_ids=["shoes"], priority=9))

    ranking = evaluator.best_offer(cart(1000), now=NOW)

    assert ranking.best.name == "Also pinned"
    assert ranking.best.discount_amount == 80
    assert [o.name for o in ranking.offers] == ["Also pinned", "Pinned", "Big"]


def test_best_offer_none_eligible(evaluator, promotion_store):
    promotion_store.create_offer(make_offer(min_cart_value=5000))
    assert evaluator.best_offer(cart(1000), now=NOW).best is None


def test_offer_usage_is_recorded_once(evaluator, promotion_store):
    offer = promotion_store.create_offer(make_offer())
    assert evaluator.apply_offer(offer.id, "order1", 100)
    assert not evaluator.apply_offer(offer.id, "order1", 100)
    stored = promotion_store.find_offer(offer.id)
    assert stored.applied_count == 1
    assert stored.total_savings == 100


# -----------------
# Redemption
# -----------------
def test_usage_limit_allows_exactly_one(evaluator, promotion_store):
    coupon = promotion_store.create_coupon(make_coupon(usage_limit=1))

    assert evaluator.apply_coupon(coupon, ALICE, "order1", 1000, 100)
    assert not evaluator.apply_coupon(coupon, ALICE, "order1", 1000, 100)
    with pytest.raises(ConflictError) as exc:
        evaluator.apply_coupon(coupon, BOB, "order2", 1000, 100)
    assert exc.value.reason == "usage_limit_reached"

    stored = promotion_store.find_coupon(coupon.id)
    assert stored.usage_count == 1
    assert stored.total_savings == 100
    assert evaluator.evaluate_code("SAVE100", cart(), BOB, now=NOW).reason == "usage_limit_reached"


def test_same_user_cannot_redeem_twice(evaluator, promotion_store):
    coupon = promotion_store.create_coupon(make_coupon())
    evaluator.apply_coupon(coupon, ALICE, "order1", 1000, 100)
    with pytest.raises(ConflictError) as exc:
        evaluator.apply_coupon(coupon, ALICE, "order2", 1000, 100)
    assert exc.value.reason == "already_used"


def test_require_coupon(evaluator, promotion_store):
    promotion_store.create_coupon(make_coupon(min_cart_value=2000))
    with pytest.raises(NotFoundError):
        evaluator.require_coupon("NOPE", cart(), now=NOW)
    with pytest.raises(IneligibleError) as exc:
        evaluator.require_coupon("save100", cart(), now=NOW)
    assert exc.value.reason == "below_min_cart_value"


def test_duplicate_code_conflicts(promotion_store):
    promotion_store.create_coupon(make_coupon())
    with pytest.raises(ConflictError) as exc:
        promotion_store.create_coupon(make_coupon(code="Save100"))
    assert exc.value.reason == "duplicate_code"


# -----------------
# Older coupon documents
# -----------------
def test_upgrade_percent_document():
    doc = {
        "_id": "x",
        "code": "OLD15",
        "discount_type": "percent",
        "value": 15,
        "max_uses": 5,
        "uses": 2,
        "expires_at": None,
        "min_order_amount": 300,
        "firstOrderOnly": True,
    }
    coupon = Coupon.model_validate(upgrade_coupon_document(doc))

    assert coupon.type == "percent"
    assert coupon.discount_percentage == 15
    assert coupon.usage_limit == 5
    assert coupon.usage_count == 2
    assert coupon.min_cart_value == 300
    assert coupon.expiry_date == FAR_FUTURE
    assert coupon.target_user_segments == ["first_order"]


def test_upgrade_fixed_gift_document():
    doc = {"code": "GIFT50", "discount_type": "fixed", "value": 50, "giftToUser": "u9"}
    coupon = Coupon.model_validate(upgrade_coupon_document(doc))

    assert coupon.type == "flat"
    assert coupon.discount_amount == 50
    assert coupon.is_user_specific and coupon.target_user_id == "u9"
    assert evaluate_coupon(coupon, cart(), ALICE, now=NOW).reason == "not_for_user"


def test_current_documents_pass_through():
    doc = {"code": "NEW", "type": "flat", "discount_amount": 10}
    assert upgrade_coupon_document(doc) is doc
