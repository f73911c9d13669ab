"""Persistence facade used by every tutoring component.

The core only needs three verbs from storage (read, write, append), so
``TutorStore`` exposes those as generic primitives plus a thin named
method per entity. Rows come back as plain dicts so callers never hold
ORM instances across sessions.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Type

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from .base import get_tutor_session_maker
from .models import (
    AdaptationLog,
    AgentDefinition,
    Base,
    Evidence,
    Interaction,
    LearnerProfile,
    Lesson,
    LessonProgress,
    MasteryRuleSet,
    PendingCorrection,
    RoutingState,
    TutorSession,
    ValidationFailure,
    utc_now_iso,
)

logger = logging.getLogger(__name__)


def row_to_dict(row: Base) -> Dict[str, Any]:
    """Convert an ORM row into a detached dict of its column values."""
    return {column.name: getattr(row, column.name) for column in row.__table__.columns}


class TutorStore:
    """Generic read / write / append access to the tutor database."""

    def __init__(self, session_maker: Optional[async_sessionmaker] = None):
        self._session_maker = session_maker

    @property
    def session_maker(self) -> async_sessionmaker:
        if self._session_maker is None:
            self._session_maker = get_tutor_session_maker()
        return self._session_maker

    # =========================================================================
    # Generic primitives
    # =========================================================================

    async def read_one(self, model: Type[Base], **filters: Any) -> Optional[Dict[str, Any]]:
        async with self.session_maker() as session:
            result = await session.execute(select(model).filter_by(**filters).limit(1))
            row = result.scalars().first()
            return row_to_dict(row) if row is not None else None

    async def read_many(
        self,
        model: Type[Base],
        order_by: Iterable[Any] = (),
        limit: Optional[int] = None,
        **filters: Any,
    ) -> List[Dict[str, Any]]:
        stmt = select(model).filter_by(**filters)
        order = list(order_by)
        if order:
            stmt = stmt.order_by(*order)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.session_maker() as session:
            result = await session.execute(stmt)
            return [row_to_dict(row) for row in result.scalars().all()]

    async def append(self, model: Type[Base], values: Dict[str, Any]) -> Dict[str, Any]:
        async with self.session_maker() as session:
            row = model(**values)
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return row_to_dict(row)

    async def write(
        self,
        model: Type[Base],
        key: Dict[str, Any],
        values: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Insert or update the single row identified by ``key``."""
        async with self.session_maker() as session:
            result = await session.execute(select(model).filter_by(**key).limit(1))
            row = result.scalars().first()
            if row is None:
                row = model(**key, **values)
                session.add(row)
            else:
                for field_name, value in values.items():
                    setattr(row, field_name, value)
                if hasattr(row, "updated_at"):
                    row.updated_at = utc_now_iso()
            await session.commit()
            await session.refresh(row)
            return row_to_dict(row)

    async def remove(self, model: Type[Base], **filters: Any) -> int:
        async with self.session_maker() as session:
            result = await session.execute(delete(model).filter_by(**filters))
            await session.commit()
            return result.rowcount or 0

    # =========================================================================
    # Agent definitions
    # =========================================================================

    async def list_agent_definitions(self, active_only: bool = True) -> List[Dict[str, Any]]:
        filters = {"is_active": True} if active_only else {}
        return await self.read_many(AgentDefinition, order_by=[AgentDefinition.name], **filters)

    async def save_agent_definition(self, name: str, values: Dict[str, Any]) -> Dict[str, Any]:
        return await self.write(AgentDefinition, {"name": name}, values)

    # =========================================================================
    # Lessons and sessions
    # =========================================================================

    async def get_lesson(self, lesson_id: str) -> Optional[Dict[str, Any]]:
        return await self.read_one(Lesson, id=lesson_id)

    async def save_lesson(self, lesson_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        return await self.write(Lesson, {"id": lesson_id}, values)

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        return await self.read_one(TutorSession, id=session_id)

    async def start_session(self, session_id: str, learner_id: str, lesson_id: str) -> Dict[str, Any]:
        existing = await self.get_session(session_id)
        if existing is not None:
            return existing
        return await self.append(
            TutorSession,
            {"id": session_id, "learner_id": learner_id, "lesson_id": lesson_id},
        )

    # =========================================================================
    # Evidence (append-only)
    # =========================================================================

    async def append_evidence(self, values: Dict[str, Any]) -> Dict[str, Any]:
        return await self.append(Evidence, values)

    async def list_evidence(self, learner_id: str, lesson_id: str) -> List[Dict[str, Any]]:
        return await self.read_many(
            Evidence,
            order_by=[Evidence.recorded_at, Evidence.id],
            learner_id=learner_id,
            lesson_id=lesson_id,
        )

    async def recent_session_evidence(self, session_id: str, limit: int) -> List[Dict[str, Any]]:
        """Most recent ``limit`` evidence records of a session, newest first."""
        return await self.read_many(
            Evidence,
            order_by=[Evidence.recorded_at.desc(), Evidence.id.desc()],
            limit=limit,
            session_id=session_id,
        )

    # =========================================================================
    # Mastery rules and progress
    # =========================================================================

    async def get_rule_set(self, subject: str, grade: int) -> Optional[Dict[str, Any]]:
        return await self.read_one(MasteryRuleSet, subject=subject, grade=grade)

    async def save_rule_set(self, subject: str, grade: int, values: Dict[str, Any]) -> Dict[str, Any]:
        return await self.write(MasteryRuleSet, {"subject": subject, "grade": grade}, values)

    async def list_rule_sets(self) -> List[Dict[str, Any]]:
        return await self.read_many(MasteryRuleSet, order_by=[MasteryRuleSet.subject, MasteryRuleSet.grade])

    async def delete_rule_set(self, subject: str, grade: int) -> bool:
        return await self.remove(MasteryRuleSet, subject=subject, grade=grade) > 0

    async def get_lesson_progress(self, learner_id: str, lesson_id: str) -> Optional[Dict[str, Any]]:
        return await self.read_one(LessonProgress, learner_id=learner_id, lesson_id=lesson_id)

    async def save_lesson_progress(
        self,
        learner_id: str,
        lesson_id: str,
        mastery_level: float,
        completed: bool = False,
    ) -> Dict[str, Any]:
        return await self.write(
            LessonProgress,
            {"learner_id": learner_id, "lesson_id": lesson_id},
            {"mastery_level": mastery_level, "completed": completed},
        )

    # =========================================================================
    # Learner profiles
    # =========================================================================

    async def get_profile(self, learner_id: str) -> Optional[Dict[str, Any]]:
        return await self.read_one(LearnerProfile, learner_id=learner_id)

    async def save_profile(self, learner_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        return await self.write(LearnerProfile, {"learner_id": learner_id}, values)

    # =========================================================================
    # Routing state
    # =========================================================================

    async def get_routing_state(self, session_id: str) -> Optional[Dict[str, Any]]:
        return await self.read_one(RoutingState, session_id=session_id)

    async def save_routing_state(
        self,
        session_id: str,
        active_agent: str,
        reason: str,
        handoff_count: int,
    ) -> Dict[str, Any]:
        return await self.write(
            RoutingState,
            {"session_id": session_id},
            {"active_agent": active_agent, "reason": reason, "handoff_count": handoff_count},
        )

    # =========================================================================
    # Interactions and audit logs
    # =========================================================================

    async def add_interaction(self, values: Dict[str, Any]) -> Dict[str, Any]:
        return await self.append(Interaction, values)

    async def recent_interactions(self, session_id: str, limit: int) -> List[Dict[str, Any]]:
        """Last ``limit`` interactions of a session in chronological order."""
        rows = await self.read_many(
            Interaction,
            order_by=[Interaction.created_at.desc(), Interaction.id.desc()],
            limit=limit,
            session_id=session_id,
        )
        return list(reversed(rows))

    async def add_validation_failure(self, values: Dict[str, Any]) -> Dict[str, Any]:
        return await self.append(ValidationFailure, values)

    async def count_validation_failures(self) -> Dict[str, int]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(ValidationFailure.final_action, func.count(ValidationFailure.id))
                .group_by(ValidationFailure.final_action)
            )
            return {action: count for action, count in result.all()}

    async def add_adaptation_log(self, values: Dict[str, Any]) -> Dict[str, Any]:
        return await self.append(AdaptationLog, values)

    async def list_adaptation_logs(self, learner_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        return await self.read_many(
            AdaptationLog,
            order_by=[AdaptationLog.created_at.desc(), AdaptationLog.id.desc()],
            limit=limit,
            learner_id=learner_id,
        )

    # =========================================================================
    # Pending corrections
    # =========================================================================

    async def add_pending_correction(self, values: Dict[str, Any]) -> Dict[str, Any]:
        return await self.append(PendingCorrection, {**values, "status": "pending"})

    async def get_pending_correction(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Oldest undelivered correction of a session."""
        rows = await self.read_many(
            PendingCorrection,
            order_by=[PendingCorrection.created_at, PendingCorrection.id],
            limit=1,
            session_id=session_id,
            status="pending",
        )
        return rows[0] if rows else None

    async def mark_correction_delivered(self, correction_id: int) -> Dict[str, Any]:
        return await self.write(
            PendingCorrection,
            {"id": correction_id},
            {"status": "delivered", "delivered_at": utc_now_iso()},
        )
