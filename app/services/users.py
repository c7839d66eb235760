from __future__ import annotations

from typing import Any, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import User
from app.errors import ValidationError
from app.utils.logging import get_logger
from app.utils.time import utcnow


logger = get_logger('users')

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50


def clean_name(value: Any, label: str = 'name') -> str:
    text = value.strip() if isinstance(value, str) else ''
    if len(text) < NAME_MIN_LENGTH or len(text) > NAME_MAX_LENGTH:
        raise ValidationError('invalid_name', f'{label} must be between 2 and 50 characters')
    return text


class UserService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def update_profile(
        self,
        user: User,
        first_name: Any = None,
        last_name: Any = None,
    ) -> User:
        """Change only the names that were provided; both are validated first."""
        first = clean_name(first_name, 'first name') if first_name is not None else None
        last = clean_name(last_name, 'last name') if last_name is not None else None
        if first is not None:
            user.first_name = first
        if last is not None:
            user.last_name = last
        user.updated_at = utcnow()
        await self.session.flush()
        logger.info('profile_updated', user_id=user.id)
        return user

    async def list(self, limit: int = 500) -> List[User]:
        result = await self.session.execute(select(User).order_by(User.created_at.desc()).limit(limit))
        return list(result.scalars().all())
