"""Membership applications and operator decisions."""
from __future__ import annotations
import logging
import random
from typing import Optional

from .errors import NotFoundError, ValidationError
from .helpers import current_year
from .model import membership as ms
from .model.db import Profile
from .model.store import Store

logger = logging.getLogger(__name__)


class MembershipWorkflow:
    def __init__(self, store: Store,
                 rng: Optional[random.Random] = None) -> None:
        self.store = store
        self.rng = rng

    async def _profile(self, user_id: str) -> Profile:
        profile = await self.store.get_profile(user_id)
        if profile is None:
            raise NotFoundError("Profile", user_id)
        return profile

    async def attendance(self, profile: Profile) -> int:
        # display parity: the cached counter may lag the bookings or vice versa
        attended = await self.store.count_attended(profile.id)
        return max(int(profile.games_attended), attended)

    async def status(self, user_id: str) -> dict:
        profile = await self._profile(user_id)
        count = await self.attendance(profile)
        return {
            "user_id": profile.id,
            "state": ms.display_state(profile.member_status,
                                      profile.member_applied),
            "games_attended": count,
            "games_needed": ms.games_needed(count),
            "eligible": ms.is_eligible(profile.member_status,
                                       profile.member_applied, count),
            "member_ref": profile.member_ref,
        }

    async def apply(self, user_id: str) -> Profile:
        profile = await self._profile(user_id)
        count = await self.attendance(profile)
        if not ms.is_eligible(profile.member_status,
                              profile.member_applied, count):
            if profile.member_applied:
                raise ValidationError("Application already submitted")
            if profile.member_status == ms.STATUS_ACTIVE:
                raise ValidationError("Already a member")
            raise ValidationError(
                f"Attend {ms.games_needed(count)} more game(s) to apply"
            )
        profile = await self.store.update_profile(user_id, member_applied=True)
        logger.info(f"membership: {user_id} applied")
        return profile

    async def approve(self, user_id: str,
                      year: Optional[int] = None) -> Profile:
        profile = await self._profile(user_id)
        if not profile.member_applied:
            raise ValidationError("No pending application")
        year = current_year() if year is None else year
        ref = ms.new_member_ref(year, await self.store.member_refs(), self.rng)
        profile = await self.store.update_profile(
            user_id,
            member_status=ms.STATUS_ACTIVE,
            member_applied=False,
            member_ref=ref,
        )
        logger.info(f"membership: {user_id} approved as {ref}")
        return profile

    async def reject(self, user_id: str) -> Profile:
        profile = await self._profile(user_id)
        if not profile.member_applied:
            raise ValidationError("No pending application")
        profile = await self.store.update_profile(
            user_id, member_status=ms.STATUS_REJECTED, member_applied=False,
        )
        logger.info(f"membership: {user_id} rejected")
        return profile

    async def expire(self, user_id: str) -> Profile:
        profile = await self._profile(user_id)
        if profile.member_status != ms.STATUS_ACTIVE:
            raise ValidationError("Not an active member")
        profile = await self.store.update_profile(
            user_id, member_status=ms.STATUS_EXPIRED,
        )
        logger.info(f"membership: {user_id} expired")
        return profile
