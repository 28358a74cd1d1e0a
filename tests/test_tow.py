from datetime import datetime

import pytest

from backend.errors import ForbiddenError, InvalidInputError, NotFoundError, StateConflictError
from backend.models import OrderStatus, TowPartner, TowStatus
from backend.schemas import DriverInfo
from backend.services import orders, timeline, tow
from pricing.src.models import GeoPoint


@pytest.fixture
def quoted(session, order, owner, dispatcher, day_time):
    return tow.quote_tow_for_order(session, order.id, owner, now=day_time, dispatcher=dispatcher)


class TestQuote:
    def test_quote_from_order_locations(self, session, order, quoted, broadcaster):
        assert quoted.status == TowStatus.REQUESTED
        assert 7 < quoted.distance_km < 9
        assert quoted.price > 800
        assert quoted.is_night is False
        assert timeline.count(session, order.id, "Tow quoted") == 1
        assert "tow.quote" in broadcaster.kinds(order.id)

    def test_explicit_points_override(self, session, order, staff, dispatcher):
        night = datetime(2025, 3, 10, 23, 30)
        quote = tow.quote_tow_for_order(session, order.id, staff, GeoPoint(lat=50.45, lng=30.52),
                                        GeoPoint(lat=50.51, lng=30.79), now=night, dispatcher=dispatcher)
        assert quote.is_night is True
        assert quote.distance_km > 15

    def test_requote_resets_assignment(self, session, order, quoted, partner, staff, dispatcher, day_time):
        tow.assign_tow(session, order.id, partner.id, staff, DriverInfo(name="Taras"), dispatcher=dispatcher)
        again = tow.quote_tow_for_order(session, order.id, staff, now=day_time, dispatcher=dispatcher)

        assert again.id == quoted.id
        assert again.status == TowStatus.REQUESTED
        assert again.partner_id is None
        assert again.driver_name is None

    def test_order_without_route(self, session, make_order, staff, dispatcher):
        bare = make_order(with_route=False)
        with pytest.raises(InvalidInputError) as exc:
            tow.quote_tow_for_order(session, bare.id, staff, dispatcher=dispatcher)
        assert exc.value.code == "INVALID_ROUTE"

    def test_same_point(self, session, order, staff, dispatcher):
        point = GeoPoint(lat=50.45, lng=30.52)
        with pytest.raises(InvalidInputError):
            tow.quote_tow_for_order(session, order.id, staff, point, point, dispatcher=dispatcher)

    def test_stranger_cannot_quote(self, session, order, stranger, dispatcher):
        with pytest.raises(ForbiddenError):
            tow.quote_tow_for_order(session, order.id, stranger, dispatcher=dispatcher)


class TestDispatch:
    def test_assign_schedules_order(self, session, order, quoted, partner, staff, dispatcher):
        assigned = tow.assign_tow(session, order.id, partner.id, staff,
                                  DriverInfo(name="Taras", phone="+380671112233", vehicle="MAN AA0001AA"),
                                  dispatcher=dispatcher)

        assert assigned.status == TowStatus.ASSIGNED
        assert assigned.partner_id == partner.id
        assert assigned.vehicle_info == "MAN AA0001AA"
        assert order.status == OrderStatus.SCHEDULED

    def test_inactive_partner(self, session, order, quoted, staff, dispatcher):
        retired = TowPartner(name="Closed Co", active=False)
        session.add(retired)
        session.commit()
        with pytest.raises(NotFoundError) as exc:
            tow.assign_tow(session, order.id, retired.id, staff, dispatcher=dispatcher)
        assert exc.value.code == "PARTNER_NOT_FOUND"

    def test_assign_without_quote(self, session, order, partner, staff, dispatcher):
        with pytest.raises(NotFoundError) as exc:
            tow.assign_tow(session, order.id, partner.id, staff, dispatcher=dispatcher)
        assert exc.value.code == "TOW_REQUEST_NOT_FOUND"

    @pytest.mark.parametrize("final", [OrderStatus.CANCELLED, OrderStatus.CLOSED])
    def test_closed_or_cancelled_order_cannot_get_a_tow(self, session, order, quoted, partner, staff, dispatcher,
                                                         broadcaster, final):
        orders.transition(session, order.id, final, staff, dispatcher=dispatcher)
        with pytest.raises(StateConflictError) as exc:
            tow.assign_tow(session, order.id, partner.id, staff, dispatcher=dispatcher)

        assert exc.value.code == "INVALID_STATE"
        assert tow.get_tow_status(session, order.id, staff).status == TowStatus.REQUESTED
        assert "tow.assigned" not in broadcaster.kinds(order.id)

    def test_customer_cannot_assign(self, session, order, quoted, partner, owner, dispatcher):
        with pytest.raises(ForbiddenError):
            tow.assign_tow(session, order.id, partner.id, owner, dispatcher=dispatcher)

    def test_status_progress_moves_order_forward(self, session, order, quoted, partner, staff, dispatcher):
        tow.assign_tow(session, order.id, partner.id, staff, dispatcher=dispatcher)
        tow.update_tow_status(session, order.id, TowStatus.ARRIVED, staff, dispatcher=dispatcher)
        assert order.status == OrderStatus.INSERVICE

        tow.update_tow_status(session, order.id, TowStatus.ENROUTE, staff, dispatcher=dispatcher)
        assert order.status == OrderStatus.INSERVICE

        done = tow.update_tow_status(session, order.id, TowStatus.COMPLETED, staff, dispatcher=dispatcher)
        assert done.status == TowStatus.COMPLETED
        assert order.status == OrderStatus.READY
        assert timeline.count(session, order.id, "Tow status changed to COMPLETED") == 1

    def test_final_tow_is_frozen(self, session, order, quoted, partner, staff, dispatcher):
        tow.update_tow_status(session, order.id, TowStatus.CANCELLED, staff, dispatcher=dispatcher)
        with pytest.raises(StateConflictError):
            tow.update_tow_status(session, order.id, TowStatus.ENROUTE, staff, dispatcher=dispatcher)
        with pytest.raises(StateConflictError):
            tow.assign_tow(session, order.id, partner.id, staff, dispatcher=dispatcher)

    @pytest.mark.parametrize("status", [TowStatus.REQUESTED, TowStatus.ASSIGNED])
    def test_status_not_settable(self, session, order, quoted, staff, dispatcher, status):
        with pytest.raises(InvalidInputError) as exc:
            tow.update_tow_status(session, order.id, status, staff, dispatcher=dispatcher)
        assert exc.value.code == "INVALID_STATUS"

    def test_get_status(self, session, order, quoted, owner):
        assert tow.get_tow_status(session, order.id, owner).id == quoted.id
