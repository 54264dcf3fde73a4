"""
Rule Profiles — Saved compound rules a user can reload for bulk actions.

Profiles are stored as a versioned document: {"version": 1, "rule": {...}}.
Loading validates the rule and ignores fields it does not know; a document
with any other version is rejected.
"""

import logging
import uuid
from typing import Optional
from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from adspend.models import BulkActionProfile
from adspend.services.rule_engine import CompoundRule

logger = logging.getLogger(__name__)

PROFILE_VERSION = 1


class ProfileFormatError(Exception):
    """A stored profile document cannot be read as a compound rule."""
    pass


class ProfileExistsError(Exception):
    pass


class RuleProfile(BaseModel):
    id: uuid.UUID
    name: str
    description: Optional[str] = None
    rule: CompoundRule


def dump_rule(rule: CompoundRule) -> dict:
    return {"version": PROFILE_VERSION, "rule": rule.model_dump(mode="json")}


def load_rule(document) -> CompoundRule:
    if not isinstance(document, dict):
        raise ProfileFormatError("Profile document must be an object")
    version = document.get("version")
    if version != PROFILE_VERSION:
        raise ProfileFormatError(f"Unsupported profile version: {version!r}")
    try:
        return CompoundRule.model_validate(document.get("rule") or {})
    except ValidationError as e:
        raise ProfileFormatError(f"Invalid rule in profile: {e}") from e


def _to_profile(row: BulkActionProfile) -> RuleProfile:
    return RuleProfile(
        id=row.id, name=row.name, description=row.description, rule=load_rule(row.document)
    )


class ProfileService:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def save(
        self,
        user_id: uuid.UUID,
        name: str,
        rule: CompoundRule,
        description: Optional[str] = None,
        profile_id: Optional[uuid.UUID] = None,
    ) -> RuleProfile:
        """Create a profile, or overwrite ``profile_id`` when given."""
        try:
            async with self._session_factory() as session, session.begin():
                if profile_id:
                    row = await self._get_owned(session, user_id, profile_id)
                    if row is None:
                        raise LookupError(f"Profile {profile_id} not found")
                    row.name = name
                    row.description = description
                    row.document = dump_rule(rule)
                else:
                    row = BulkActionProfile(
                        user_id=user_id, name=name, description=description, document=dump_rule(rule)
                    )
                    session.add(row)
                await session.flush()
                profile = RuleProfile(id=row.id, name=row.name, description=row.description, rule=rule)
        except IntegrityError as e:
            raise ProfileExistsError(f"A profile named {name!r} already exists") from e
        logger.info(f"Saved bulk action profile {profile.id} ({name})")
        return profile

    async def list(self, user_id: uuid.UUID) -> list[RuleProfile]:
        """Readable profiles, newest first. Unreadable documents are logged and left out."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(BulkActionProfile)
                .where(BulkActionProfile.user_id == user_id)
                .order_by(BulkActionProfile.updated_at.desc())
            )
            rows = result.scalars().all()

        profiles = []
        for row in rows:
            try:
                profiles.append(_to_profile(row))
            except ProfileFormatError as e:
                logger.warning(f"Skipping profile {row.id}: {e}")
        return profiles

    async def load(self, user_id: uuid.UUID, profile_id: uuid.UUID) -> Optional[RuleProfile]:
        async with self._session_factory() as session:
            row = await self._get_owned(session, user_id, profile_id)
        return _to_profile(row) if row else None

    async def delete(self, user_id: uuid.UUID, profile_id: uuid.UUID) -> bool:
        async with self._session_factory() as session, session.begin():
            row = await self._get_owned(session, user_id, profile_id)
            if row is None:
                return False
            await session.delete(row)
        logger.info(f"Deleted bulk action profile {profile_id}")
        return True

    @staticmethod
    async def _get_owned(session, user_id: uuid.UUID, profile_id: uuid.UUID) -> Optional[BulkActionProfile]:
        result = await session.execute(
            select(BulkActionProfile).where(
                BulkActionProfile.id == profile_id, BulkActionProfile.user_id == user_id
            )
        )
        return result.scalar_one_or_none()
