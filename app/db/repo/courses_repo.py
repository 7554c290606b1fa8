from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.courses import Course


class CoursesRepo:
    @staticmethod
    async def get_by_id(session: AsyncSession, course_id: str) -> Course | None:
        return await session.get(Course, course_id)

    @staticmethod
    async def get_active_by_id(session: AsyncSession, course_id: str) -> Course | None:
        stmt = select(Course).where(Course.id == course_id, Course.is_active.is_(True))
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def create(session: AsyncSession, *, course: Course) -> Course:
        session.add(course)
        await session.flush()
        return course
