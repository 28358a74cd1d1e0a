from datetime import date

import pytest

from pricing.src.insurance_rules import OfferRules, suggest_offers
from pricing.src.models import OfferContext

TODAY = date(2025, 3, 10)


@pytest.fixture
def rules():
    return OfferRules()


def codes(offers):
    return [o.code for o in offers]


def test_road_assist_always_offered(rules):
    offers = rules.evaluate(OfferContext(category="engine", today=TODAY))
    assert codes(offers) == ["ROAD_ASSIST"]
    assert offers[0].price == 1200.0


@pytest.mark.parametrize("description", ["broken glass", "тріщина на скло", "разбито стекло"])
def test_glass_keywords(rules, description):
    offers = rules.evaluate(OfferContext(category="other", description=description, today=TODAY))
    assert "KASKO_GLASS" in codes(offers)


def test_collision_keywords(rules):
    offers = rules.evaluate(OfferContext(category="other", description="ДТП на перехресті", today=TODAY))
    assert codes(offers) == ["TPL_PLUS", "ROAD_ASSIST"]


def test_old_vehicle_gets_breakdown_cover(rules):
    old = rules.evaluate(OfferContext(category="engine", vehicle_year=2013, today=TODAY))
    newer = rules.evaluate(OfferContext(category="engine", vehicle_year=2014, today=TODAY))

    assert "MECH_BREAK" in codes(old)
    assert "MECH_BREAK" not in codes(newer)


def test_high_mileage_gets_breakdown_cover(rules):
    offers = rules.evaluate(OfferContext(category="engine", vehicle_year=2022, mileage=200001, today=TODAY))
    assert "MECH_BREAK" in codes(offers)


def test_loyalty_discount_on_every_offer(rules):
    ctx = OfferContext(category="glass", vehicle_year=2010, repeat_issues=2, today=TODAY)
    offers = {o.code: o.price for o in rules.evaluate(ctx)}

    assert offers == {"KASKO_GLASS": 2250.0, "ROAD_ASSIST": 1080.0, "MECH_BREAK": 2880.0}


def test_single_repeat_is_not_discounted(rules):
    offers = rules.evaluate(OfferContext(category="engine", repeat_issues=1, today=TODAY))
    assert offers[0].price == 1200.0


def test_suggest_offers_shortcut():
    assert codes(suggest_offers(OfferContext(category="glass", today=TODAY))) == ["KASKO_GLASS", "ROAD_ASSIST"]
