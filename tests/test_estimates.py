from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import select

from backend.errors import ForbiddenError, InvalidInputError, NotFoundError, StateConflictError
from backend.models import Estimate, OrderStatus
from backend.schemas import CalcProfileCreate, CalcProfileUpdate, EstimateCalcRequest
from backend.services import calc_profiles, estimates, orders, timeline


@pytest.fixture
def estimate(session, order, staff, dispatcher):
    return estimates.auto_calculate_estimate(session, order.id, EstimateCalcRequest(), staff, dispatcher=dispatcher)


class TestAutoCalculate:
    def test_prices_order_and_moves_to_quote(self, session, order, estimate, broadcaster):
        assert estimate.total == 4700.0
        assert estimate.currency == "UAH"
        assert [p.name for p in estimate.parts] == ["Engine oil", "Oil filter", "Spark plugs"]
        assert estimate.labor[0].rate == 400.0
        assert estimate.meta["profile"] == "STANDARD"
        assert order.status == OrderStatus.QUOTE
        assert timeline.count(session, order.id, "Estimate auto-calculated") == 1
        assert "estimate.calculated" in broadcaster.kinds(order.id)

    def test_valid_until_uses_clock(self, session, order, staff, dispatcher):
        now = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
        est = estimates.auto_calculate_estimate(session, order.id, EstimateCalcRequest(), staff, now=now,
                                                dispatcher=dispatcher)
        assert est.valid_until == now + timedelta(days=7)

    def test_timestamps_come_back_as_aware_utc(self, session, order, staff, dispatcher):
        naive = datetime(2025, 3, 10, 12, 0)
        est = estimates.auto_calculate_estimate(session, order.id, EstimateCalcRequest(), staff, now=naive,
                                                dispatcher=dispatcher)
        session.expire_all()
        stored = session.get(Estimate, est.id)

        assert stored.valid_until == datetime(2025, 3, 17, 12, 0, tzinfo=timezone.utc)
        assert stored.created_at.utcoffset() == timedelta(0)
        assert stored.updated_at.tzinfo is not None

    def test_recalculation_replaces(self, session, order, estimate, staff, dispatcher):
        estimates.approve_estimate(session, order.id, staff, dispatcher=dispatcher)
        again = estimates.auto_calculate_estimate(
            session, order.id, EstimateCalcRequest(profile="PREMIUM", discount_percent=10), staff,
            dispatcher=dispatcher,
        )

        assert again.id == estimate.id
        assert again.approved is False
        assert again.total == 4864.5
        assert len(session.exec(select(Estimate).where(Estimate.order_id == order.id)).all()) == 1

    def test_stored_profile_wins(self, session, order, staff, dispatcher):
        calc_profiles.create_profile(
            session, CalcProfileCreate(code="fleet", name="Fleet", parts_coeff=0.5, labor_coeff=0.5,
                                       labor_rate=300), staff,
        )
        est = estimates.auto_calculate_estimate(session, order.id, EstimateCalcRequest(profile="FLEET"), staff,
                                                dispatcher=dispatcher)
        assert est.meta["profile"] == "FLEET"
        assert est.meta["profile_id"] is not None
        assert est.labor[0].rate == 150.0

    def test_unknown_profile(self, session, order, staff, dispatcher):
        with pytest.raises(InvalidInputError) as exc:
            estimates.auto_calculate_estimate(session, order.id, EstimateCalcRequest(profile="GOLD"), staff,
                                              dispatcher=dispatcher)
        assert exc.value.code == "UNKNOWN_PROFILE"

    def test_owner_cannot_calculate(self, session, order, owner, dispatcher):
        with pytest.raises(ForbiddenError):
            estimates.auto_calculate_estimate(session, order.id, EstimateCalcRequest(), owner, dispatcher=dispatcher)

    def test_closed_order(self, session, order, staff, dispatcher):
        orders.complete_order(session, order.id, staff, dispatcher=dispatcher)
        with pytest.raises(StateConflictError) as exc:
            estimates.auto_calculate_estimate(session, order.id, EstimateCalcRequest(), staff, dispatcher=dispatcher)
        assert exc.value.code == "INVALID_STATE"


class TestApproval:
    def test_owner_approves_once(self, session, order, estimate, owner, dispatcher):
        first = estimates.approve_estimate(session, order.id, owner, dispatcher=dispatcher)
        second = estimates.approve_estimate(session, order.id, owner, dispatcher=dispatcher)

        assert first.approved and second.approved
        assert second.approved_at == first.approved_at
        assert order.status == OrderStatus.APPROVED
        assert timeline.count(session, order.id, "Estimate approved") == 1
        assert timeline.count(session, order.id, "Status changed to APPROVED") == 1

    def test_missing_estimate(self, session, order, owner, dispatcher):
        with pytest.raises(NotFoundError) as exc:
            estimates.approve_estimate(session, order.id, owner, dispatcher=dispatcher)
        assert exc.value.code == "ESTIMATE_NOT_FOUND"

    def test_terminal_order_rejects_approval(self, session, order, estimate, staff, owner, dispatcher):
        orders.transition(session, order.id, OrderStatus.CANCELLED, staff, dispatcher=dispatcher)
        with pytest.raises(StateConflictError):
            estimates.approve_estimate(session, order.id, owner, dispatcher=dispatcher)

    def test_reject_records_reason(self, session, order, estimate, owner, dispatcher):
        estimates.approve_estimate(session, order.id, owner, dispatcher=dispatcher)
        rejected = estimates.reject_estimate(session, order.id, owner, "  ", dispatcher=dispatcher)

        assert rejected.approved is False
        assert rejected.approved_at is None
        entry = timeline.latest(session, order.id, "Estimate rejected")
        assert entry.details["reason"] == "No reason provided"

    def test_lock_notifies(self, session, order, estimate, staff, dispatcher, queue):
        locked = estimates.lock_estimate(session, order.id, staff, dispatcher=dispatcher)

        assert locked.approved
        assert [(j.type.value, j.estimate_id) for j in queue.jobs] == [("estimate_locked", estimate.id)]

    def test_owner_cannot_lock(self, session, order, estimate, owner, dispatcher):
        with pytest.raises(ForbiddenError):
            estimates.lock_estimate(session, order.id, owner, dispatcher=dispatcher)


class TestCalcProfiles:
    def test_create_update_deactivate(self, session, staff):
        profile = calc_profiles.create_profile(session, CalcProfileCreate(code="vip", name="VIP"), staff)
        assert profile.code == "VIP"

        updated = calc_profiles.update_profile(session, profile.id, CalcProfileUpdate(labor_rate=520), staff)
        assert updated.labor_rate == 520
        assert updated.parts_coeff == 1.0

        calc_profiles.deactivate_profile(session, profile.id, staff)
        assert calc_profiles.find_active(session, "vip") is None
        assert calc_profiles.list_profiles(session) == []
        assert len(calc_profiles.list_profiles(session, include_inactive=True)) == 1

    def test_duplicate_code(self, session, staff):
        calc_profiles.create_profile(session, CalcProfileCreate(code="VIP", name="VIP"), staff)
        with pytest.raises(StateConflictError) as exc:
            calc_profiles.create_profile(session, CalcProfileCreate(code="vip", name="Again"), staff)
        assert exc.value.code == "PROFILE_EXISTS"

    def test_staff_only(self, session, owner):
        with pytest.raises(ForbiddenError):
            calc_profiles.create_profile(session, CalcProfileCreate(code="VIP", name="VIP"), owner)

    def test_missing_profile(self, session, staff):
        with pytest.raises(NotFoundError):
            calc_profiles.update_profile(session, 404, CalcProfileUpdate(name="x"), staff)
