import pytest

from pricing.src.estimator import EstimateCalculator
from pricing.src.models import Coefficients, EstimateFlags
from pricing.src.money import round2, round_whole, to_base_units


@pytest.fixture
def calc():
    return EstimateCalculator()


class TestEstimateCalculator:
    """Template pricing with profile coefficients, modifiers and discounts"""

    def test_standard_engine_totals(self, calc):
        result = calc.calculate("engine", calc.resolve_profile("STANDARD"))

        assert [p.total for p in result.parts] == [560.0, 220.0, 720.0]
        assert result.parts_cost == 1500.0
        assert result.labor_hours == 8.0
        assert result.labor_cost == 3200.0
        assert result.total == 4700.0
        assert result.discount_amount == 0.0

    def test_premium_scales_unit_prices_and_rate(self, calc):
        result = calc.calculate("engine", calc.resolve_profile("premium"))

        assert result.profile == "PREMIUM"
        assert result.parts[0].unit_price == 161.0
        assert result.labor[0].rate == 460.0
        assert result.total == 5405.0

    def test_night_modifier_only_when_flag_set(self, calc):
        coeffs = calc.resolve_profile("STANDARD")
        day = calc.calculate("engine", coeffs)
        night = calc.calculate("engine", coeffs, flags=EstimateFlags(night=True))

        assert day.total == 4700.0
        assert night.parts_coeff == pytest.approx(1.1)
        assert night.total == 5170.0

    def test_discount_applied_after_rounding(self, calc):
        result = calc.calculate("engine", calc.resolve_profile("STANDARD"), discount_percent=10)

        assert result.total_before_discount == 4700.0
        assert result.discount_amount == 470.0
        assert result.total == 4230.0

    def test_half_discount(self, calc):
        result = calc.calculate("brakes", calc.resolve_profile("STANDARD"), discount_percent=50)
        assert result.total == 1035.0
        assert result.discount_amount == result.total

    def test_discount_clamped(self, calc):
        coeffs = calc.resolve_profile("STANDARD")

        assert calc.calculate("engine", coeffs, discount_percent=95).discount_percent == 80.0
        assert calc.calculate("engine", coeffs, discount_percent=-5).discount_percent == 0.0

    def test_unknown_category_uses_generic_template(self, calc):
        result = calc.calculate("bodywork", calc.resolve_profile("STANDARD"))

        assert result.category == "other"
        assert result.total == 2100.0

    def test_unknown_profile(self, calc):
        assert calc.resolve_profile("GOLD") is None

    def test_custom_profile_wins(self, calc):
        custom = Coefficients(code="FLEET", parts=0.5, labor=0.5, labor_rate=300.0, profile_id=7)
        result = calc.calculate("brakes", calc.resolve_profile("STANDARD", custom))

        assert result.profile == "FLEET"
        assert result.profile_id == 7
        assert result.labor[0].rate == 150.0

    def test_same_inputs_same_total(self, calc):
        coeffs = calc.resolve_profile("ECONOMY")
        flags = EstimateFlags(night=True, urgent=True, suv=True)
        first = calc.calculate("suspension", coeffs, flags=flags, discount_percent=12.5)
        second = calc.calculate("suspension", coeffs, flags=flags, discount_percent=12.5)

        assert first.total == second.total
        assert first.total == round2(first.parts_cost + first.labor_cost - first.discount_amount)

    def test_summary_override_and_meta(self, calc):
        result = calc.calculate("electrical", calc.resolve_profile("STANDARD"),
                                summary="  Alternator check ", comment=" ", package_name="Winter")

        assert result.summary == "Alternator check"
        assert result.comment is None
        meta = result.meta()
        assert "parts" not in meta and "labor" not in meta
        assert meta["package_name"] == "Winter"


class TestMoney:
    def test_half_up(self):
        assert round2(2.675) == 2.68
        assert round2(1.005) == 1.01
        assert round_whole(2.5) == 3

    def test_base_units(self):
        assert to_base_units(12.5, 6) == 12_500_000
        assert to_base_units(0.1, 18) == 10 ** 17
