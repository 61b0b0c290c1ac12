from datetime import datetime

from beanie import PydanticObjectId

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import ConflictError, NotFoundError
from app.core.logging import get_logger
from app.models.user import OfferedSkill, User
from app.services import credits as credits_service

log = get_logger(__name__)


async def create_user(
    email: str,
    name: str = "",
    skills_offered: list[OfferedSkill | dict] | None = None,
    starting_credits: int | None = None,
) -> User:
    """Register a user; the starting balance is granted through the ledger as a bonus entry."""
    email = email.strip().lower()
    if await User.find_one(User.email == email):
        raise ConflictError("Email already registered", code="EMAIL_TAKEN")
    user = User(
        email=email,
        name=name,
        skills_offered=[OfferedSkill.model_validate(s) if isinstance(s, dict) else s for s in skills_offered or []],
    )
    await user.insert()
    log.info("user_created", user_id=str(user.id), email=user.email)
    await log_event(str(user.id), "user_created", "user", str(user.id), {"email": user.email})

    bonus = get_settings().signup_bonus_credits if starting_credits is None else starting_credits
    if bonus > 0:
        _, user.credits = await credits_service.apply_delta(
            user.id, bonus, "bonus", "Welcome bonus", idempotency_key=f"signup_bonus_{user.id}"
        )
    return user


async def get_user(user_id: PydanticObjectId) -> User:
    user = await User.get(user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


async def add_offered_skill(user_id: PydanticObjectId, skill: OfferedSkill) -> User:
    user = await get_user(user_id)
    if user.offers_skill(skill.skill):
        return user
    await User.find_one({"_id": user.id}).update(
        {"$push": {"skills_offered": skill.model_dump()}, "$set": {"updated_at": datetime.utcnow()}}
    )
    return await get_user(user_id)


def session_payload_for_user(user: User) -> dict:
    return {"user_id": str(user.id), "session_version": user.session_version}
