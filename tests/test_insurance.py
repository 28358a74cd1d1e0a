from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import event

from backend.errors import ForbiddenError, NotFoundError, StateConflictError
from backend.models import OfferStatus
from backend.services import insurance, timeline

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def glass_order(make_order):
    return make_order(category="other", description="Broken glass after hail")


@pytest.fixture
def offers(session, glass_order, owner, dispatcher):
    return insurance.generate_offers(session, glass_order.id, owner, now=NOW, dispatcher=dispatcher)


def by_code(offers):
    return {o.code: o for o in offers}


class TestGenerate:
    def test_rules_drive_offers(self, offers, broadcaster, glass_order):
        assert list(by_code(offers)) == ["KASKO_GLASS", "ROAD_ASSIST"]
        assert all(o.status == OfferStatus.OFFERED for o in offers)
        assert all(o.valid_until == NOW + timedelta(days=14) for o in offers)
        assert "offers" in broadcaster.kinds(glass_order.id)

    def test_regenerate_adds_no_duplicates(self, session, offers, glass_order, owner, dispatcher):
        again = insurance.generate_offers(session, glass_order.id, owner, now=NOW, dispatcher=dispatcher)
        assert [o.id for o in again] == [o.id for o in offers]

    def test_repeat_issues_discount(self, session, make_order, owner, dispatcher):
        make_order(category="brakes")
        make_order(category="brakes")
        third = make_order(category="brakes")

        assert insurance.count_repeat_issues(session, third) == 2
        offered = insurance.generate_offers(session, third.id, owner, now=NOW, dispatcher=dispatcher)
        assert by_code(offered)["ROAD_ASSIST"].price == 1080.0

    def test_old_vehicle(self, session, vehicle, make_order, owner, dispatcher):
        vehicle.year = 2005
        session.add(vehicle)
        session.commit()
        order = make_order(category="engine")
        offered = insurance.generate_offers(session, order.id, owner, now=NOW, dispatcher=dispatcher)
        assert "MECH_BREAK" in by_code(offered)

    def test_stranger(self, session, glass_order, stranger, dispatcher):
        with pytest.raises(ForbiddenError):
            insurance.generate_offers(session, glass_order.id, stranger, now=NOW, dispatcher=dispatcher)


class TestAccept:
    def test_accept_declines_siblings(self, session, offers, owner, dispatcher, glass_order):
        glass = by_code(offers)["KASKO_GLASS"]
        accepted = insurance.accept_offer(session, glass.id, owner, now=NOW, dispatcher=dispatcher)

        assert accepted.status == OfferStatus.ACCEPTED
        assert accepted.accepted_at == NOW
        statuses = {o.code: o.status for o in insurance.list_offers(session, glass_order.id)}
        assert statuses == {"KASKO_GLASS": OfferStatus.ACCEPTED, "ROAD_ASSIST": OfferStatus.DECLINED}
        assert timeline.count(session, glass_order.id, "Insurance offer accepted") == 1

    def test_accept_is_idempotent(self, engine, session, offers, owner, dispatcher, glass_order, broadcaster):
        glass = by_code(offers)["KASKO_GLASS"]
        insurance.accept_offer(session, glass.id, owner, now=NOW, dispatcher=dispatcher)

        writes = []

        def capture(conn, cursor, statement, parameters, context, executemany):
            if statement.lstrip().upper().startswith(("UPDATE", "INSERT")):
                writes.append(statement)

        event.listen(engine, "before_cursor_execute", capture)
        try:
            again = insurance.accept_offer(session, glass.id, owner, now=NOW + timedelta(days=30),
                                           dispatcher=dispatcher)
        finally:
            event.remove(engine, "before_cursor_execute", capture)

        assert writes == []
        assert again.status == OfferStatus.ACCEPTED
        assert again.accepted_at == NOW
        statuses = {o.code: o.status for o in insurance.list_offers(session, glass_order.id)}
        assert statuses == {"KASKO_GLASS": OfferStatus.ACCEPTED, "ROAD_ASSIST": OfferStatus.DECLINED}
        assert timeline.count(session, glass_order.id, "Insurance offer accepted") == 1
        assert broadcaster.kinds(glass_order.id).count("offer.accepted") == 1

    def test_one_accepted_per_order(self, session, offers, owner, dispatcher):
        insurance.accept_offer(session, by_code(offers)["KASKO_GLASS"].id, owner, now=NOW, dispatcher=dispatcher)
        with pytest.raises(StateConflictError) as exc:
            insurance.accept_offer(session, by_code(offers)["ROAD_ASSIST"].id, owner, now=NOW, dispatcher=dispatcher)
        assert exc.value.code == "OFFER_ALREADY_ACCEPTED"

    def test_expired(self, session, offers, owner, dispatcher):
        with pytest.raises(StateConflictError) as exc:
            insurance.accept_offer(session, offers[0].id, owner, now=NOW + timedelta(days=15), dispatcher=dispatcher)
        assert exc.value.code == "OFFER_EXPIRED"

    def test_declined(self, session, offers, owner, dispatcher):
        road = by_code(offers)["ROAD_ASSIST"]
        road.status = OfferStatus.DECLINED
        session.add(road)
        session.commit()
        with pytest.raises(StateConflictError) as exc:
            insurance.accept_offer(session, road.id, owner, now=NOW, dispatcher=dispatcher)
        assert exc.value.code == "OFFER_NOT_AVAILABLE"

    def test_missing(self, session, owner, dispatcher):
        with pytest.raises(NotFoundError):
            insurance.accept_offer(session, 404, owner, dispatcher=dispatcher)
