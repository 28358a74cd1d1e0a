from typing import Optional

from loguru import logger
from sqlmodel import Session, select

from backend.errors import NotFoundError, StateConflictError
from backend.models import CalcProfile, utcnow
from backend.schemas import Actor, CalcProfileCreate, CalcProfileUpdate
from backend.services.orders import ensure_staff
from pricing.src.models import Coefficients


def find_active(session: Session, code: str) -> Optional[CalcProfile]:
    statement = select(CalcProfile).where(CalcProfile.code == code.upper(), CalcProfile.active == True)  # noqa: E712
    return session.exec(statement).first()


def to_coefficients(profile: CalcProfile) -> Coefficients:
    return Coefficients(
        code=profile.code,
        parts=profile.parts_coeff,
        labor=profile.labor_coeff,
        night=profile.night_coeff,
        urgent=profile.urgent_coeff,
        suv=profile.suv_coeff,
        labor_rate=profile.labor_rate,
        profile_id=profile.id,
    )


def list_profiles(session: Session, include_inactive: bool = False) -> list[CalcProfile]:
    statement = select(CalcProfile).order_by(CalcProfile.code)
    if not include_inactive:
        statement = statement.where(CalcProfile.active == True)  # noqa: E712
    return list(session.exec(statement).all())


def create_profile(session: Session, data: CalcProfileCreate, actor: Actor) -> CalcProfile:
    ensure_staff(actor)
    code = data.code.strip().upper()
    existing = session.exec(select(CalcProfile).where(CalcProfile.code == code)).first()
    if existing is not None:
        raise StateConflictError("PROFILE_EXISTS", f"Calc profile {code} already exists")
    profile = CalcProfile(**data.model_dump(exclude={"code"}), code=code)
    session.add(profile)
    session.commit()
    session.refresh(profile)
    logger.info(f"Calc profile {code} created by #{actor.id}")
    return profile


def update_profile(session: Session, profile_id: int, data: CalcProfileUpdate, actor: Actor) -> CalcProfile:
    ensure_staff(actor)
    profile = session.get(CalcProfile, profile_id)
    if profile is None:
        raise NotFoundError("PROFILE_NOT_FOUND", f"Calc profile {profile_id} not found")
    for key, value in data.model_dump(exclude_unset=True).items():
        setattr(profile, key, value)
    profile.updated_at = utcnow()
    session.add(profile)
    session.commit()
    session.refresh(profile)
    return profile


def deactivate_profile(session: Session, profile_id: int, actor: Actor) -> CalcProfile:
    return update_profile(session, profile_id, CalcProfileUpdate(active=False), actor)
