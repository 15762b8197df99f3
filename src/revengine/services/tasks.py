from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

from revengine.domain.stages import OpportunityType, TaskPriority, TaskStatus, TaskType
from revengine.observability import get_logger
from revengine.services.utils import to_iso, utc_now
from revengine.store.sqlite import SqliteStore

logger = get_logger(__name__)

DUE_OFFSETS = {
    TaskPriority.HIGH.value: timedelta(days=3),
    TaskPriority.MEDIUM.value: timedelta(days=7),
    TaskPriority.LOW.value: timedelta(days=14),
}

DEFAULT_TASK_TYPES = {
    OpportunityType.TICKET.value: TaskType.RENEWAL.value,
    OpportunityType.MAJOR_GIFT.value: TaskType.CULTIVATION.value,
    OpportunityType.CORPORATE.value: TaskType.FOLLOW_UP.value,
}


class TaskGenerationError(RuntimeError):
    pass


@dataclass(frozen=True)
class TaskRequest:
    opportunity_id: str
    constituent_id: str
    opportunity_type: str
    amount: float
    assigned_role: str
    priority: str
    task_type: str | None = None
    overridden: bool = False


def derive_task_type(request: TaskRequest) -> str:
    if request.task_type:
        return request.task_type
    if request.overridden:
        return TaskType.REVIEW_REQUIRED.value
    return DEFAULT_TASK_TYPES.get(request.opportunity_type, TaskType.FOLLOW_UP.value)


def due_at_for(priority: str, now: datetime) -> datetime:
    return now + DUE_OFFSETS.get(priority, DUE_OFFSETS[TaskPriority.MEDIUM.value])


def create_task(store: SqliteStore, request: TaskRequest, now: datetime | None = None) -> str:
    """Insert one unclaimed task for the routed role.

    Runs in its own transaction so a failure never undoes the owner assignment
    that preceded it; callers get ``TaskGenerationError`` instead.
    """
    now = now or utc_now()
    task_type = derive_task_type(request)
    task_id = str(uuid4())
    stamp = to_iso(now)
    description = (
        f"{task_type.replace('_', ' ').capitalize()}: "
        f"{request.opportunity_type.replace('_', ' ')} opportunity for {request.amount:,.2f}"
    )
    try:
        store.execute(
            "INSERT INTO tasks (task_id, task_type, priority, status, description, assigned_role, "
            "assigned_user_id, constituent_id, opportunity_id, due_at, completed_at, notes, "
            "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                task_id,
                task_type,
                request.priority,
                TaskStatus.PENDING.value,
                description,
                request.assigned_role,
                None,
                request.constituent_id,
                request.opportunity_id,
                to_iso(due_at_for(request.priority, now)),
                None,
                None,
                stamp,
                stamp,
            ),
        )
    except sqlite3.Error as exc:
        logger.error(
            "task_creation_failed", opportunity_id=request.opportunity_id, error=str(exc)
        )
        raise TaskGenerationError(f"Failed to create task: {exc}") from exc
    logger.info(
        "task_created",
        task_id=task_id,
        task_type=task_type,
        priority=request.priority,
        assigned_role=request.assigned_role,
    )
    return task_id
