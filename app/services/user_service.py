"""User directory lookups."""

from uuid import UUID

import structlog
from sqlalchemy import and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import PersistenceException
from app.models.users import users

logger = structlog.get_logger()


class UserService:
    """Read-only access to user accounts owned by the account service."""

    @staticmethod
    async def get_user_by_id(db: AsyncSession, user_id: UUID) -> dict | None:
        """Get user by internal ID."""
        query = select(users).where(users.c.id == user_id)
        result = await db.execute(query)
        user = result.mappings().first()
        return dict(user) if user else None

    @staticmethod
    async def get_doctor(db: AsyncSession, doctor_id: UUID) -> dict | None:
        """
        Get an active doctor account, or None.

        Raises:
            PersistenceException: If the database fails
        """
        query = select(users).where(
            and_(
                users.c.id == doctor_id,
                users.c.role == "doctor",
                users.c.is_active.is_(True),
            )
        )
        try:
            result = await db.execute(query)
            doctor = result.mappings().first()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("database_operation_failed", action="get_doctor", error=str(e))
            raise PersistenceException("Database operation failed: get_doctor") from e
        return dict(doctor) if doctor else None
