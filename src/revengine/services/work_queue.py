"""Task work queues, claiming and status transitions.

Claims and transitions are single conditional UPDATE statements; the affected
row count decides whether the caller won. A follow-up read only classifies a
failure, it never decides one.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from revengine.domain import rules
from revengine.domain.models import Task
from revengine.domain.stages import TERMINAL_TASK_STATUSES, TaskStatus, TaskType
from revengine.observability import get_logger
from revengine.services.events import EventLogger
from revengine.services.utils import to_iso, utc_now
from revengine.store.sqlite import SqliteStore

logger = get_logger(__name__)

MODES = ("user", "role", "combined")
ALL_STATUSES = "all"
MAX_PAGE_SIZE = 200
OTHER_GROUP = "other"
GROUPS = [t.value for t in TaskType] + [OTHER_GROUP]

ALLOWED_TRANSITIONS = {
    TaskStatus.PENDING.value: {
        TaskStatus.IN_PROGRESS.value,
        TaskStatus.COMPLETED.value,
        TaskStatus.CANCELLED.value,
    },
    TaskStatus.IN_PROGRESS.value: {
        TaskStatus.COMPLETED.value,
        TaskStatus.CANCELLED.value,
        TaskStatus.PENDING.value,
    },
}

ORDER_BY = (
    "ORDER BY CASE priority WHEN 'high' THEN 3 WHEN 'medium' THEN 2 WHEN 'low' THEN 1 ELSE 0 END DESC, "
    "due_at IS NULL, due_at ASC, created_at ASC, task_id ASC"
)


class TaskNotFoundError(LookupError):
    pass


class TaskConflictError(RuntimeError):
    pass


class TaskForbiddenError(PermissionError):
    pass


class TaskStateError(ValueError):
    pass


@dataclass
class WorkQueuePage:
    tasks: list[Task]
    total: int
    page: int
    page_size: int
    grouped_by_type: dict[str, list[Task]] = field(default_factory=dict)
    claimed: int | None = None
    unclaimed: int | None = None

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.total else 0

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "tasks": [task.to_dict() for task in self.tasks],
            "grouped_by_type": {
                group: [task.task_id for task in tasks]
                for group, tasks in self.grouped_by_type.items()
            },
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }
        if self.claimed is not None:
            payload["claimed"] = self.claimed
            payload["unclaimed"] = self.unclaimed
        return payload


def get_work_queue(
    store: SqliteStore,
    mode: str,
    user_id: str | None = None,
    roles: Sequence[str] | None = None,
    status: str = TaskStatus.PENDING.value,
    page: int = 1,
    page_size: int = 50,
) -> WorkQueuePage:
    rules.validate_enum(mode, list(MODES), "mode")
    rules.validate_enum(status, [s.value for s in TaskStatus] + [ALL_STATUSES], "status")
    if page < 1:
        raise rules.ValidationError("page must be at least 1.")
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        raise rules.ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}.")
    roles = [role for role in roles or [] if role]

    where, params = _identity_filter(mode, user_id, roles)
    if status != ALL_STATUSES:
        where = f"({where}) AND status = ?"
        params.append(status)

    with store.session() as session:
        total = session.fetch_one(f"SELECT COUNT(*) AS n FROM tasks WHERE {where}", params)["n"]
        rows = session.fetch_all(
            f"SELECT * FROM tasks WHERE {where} {ORDER_BY} LIMIT ? OFFSET ?",
            [*params, page_size, (page - 1) * page_size],
        )
        claimed = unclaimed = None
        if mode == "combined":
            counts = session.fetch_one(
                "SELECT SUM(CASE WHEN assigned_user_id IS NOT NULL THEN 1 ELSE 0 END) AS claimed, "
                "SUM(CASE WHEN assigned_user_id IS NULL THEN 1 ELSE 0 END) AS unclaimed "
                f"FROM tasks WHERE {where}",
                params,
            )
            claimed = int(counts["claimed"] or 0)
            unclaimed = int(counts["unclaimed"] or 0)

    tasks = [Task.from_row(row) for row in rows]
    return WorkQueuePage(
        tasks=tasks,
        total=int(total),
        page=page,
        page_size=page_size,
        grouped_by_type=group_by_type(tasks),
        claimed=claimed,
        unclaimed=unclaimed,
    )


def group_by_type(tasks: Sequence[Task]) -> dict[str, list[Task]]:
    grouped: dict[str, list[Task]] = {group: [] for group in GROUPS}
    for task in tasks:
        grouped.get(task.task_type, grouped[OTHER_GROUP]).append(task)
    return grouped


def get_task(store: SqliteStore, task_id: str) -> Task:
    row = store.fetch_one("SELECT * FROM tasks WHERE task_id = ?", (task_id,))
    if row is None:
        raise TaskNotFoundError(f"Task not found: {task_id}")
    return Task.from_row(row)


def claim_task(
    store: SqliteStore,
    task_id: str,
    user_id: str,
    now: datetime | None = None,
    events: EventLogger | None = None,
) -> Task:
    rules.require(task_id, "task_id")
    rules.require(user_id, "user_id")
    terminal = sorted(TERMINAL_TASK_STATUSES)
    changed = store.execute(
        "UPDATE tasks SET assigned_user_id = ?, updated_at = ? "
        f"WHERE task_id = ? AND assigned_user_id IS NULL AND status NOT IN ({_marks(terminal)})",
        (user_id, to_iso(now or utc_now()), task_id, *terminal),
    )
    if not changed:
        current = get_task(store, task_id)
        if current.assigned_user_id == user_id:
            raise TaskConflictError(f"Task {task_id} is already claimed by you.")
        if current.assigned_user_id:
            raise TaskConflictError(f"Task {task_id} is already claimed by another user.")
        raise TaskConflictError(f"Task {task_id} is {current.status} and cannot be claimed.")

    logger.info("task_claimed", task_id=task_id, user_id=user_id)
    if events is not None:
        events.log(event_type="task_claimed", entity_type="task", entity_id=task_id, actor=user_id)
    return get_task(store, task_id)


def update_task_status(
    store: SqliteStore,
    task_id: str,
    user_id: str,
    new_status: str,
    notes: str | None = None,
    now: datetime | None = None,
    events: EventLogger | None = None,
) -> Task:
    rules.require(task_id, "task_id")
    rules.require(user_id, "user_id")
    rules.validate_enum(new_status, [s.value for s in TaskStatus], "status")
    sources = sorted(s for s, targets in ALLOWED_TRANSITIONS.items() if new_status in targets)
    stamp = to_iso(now or utc_now())
    completed_at = stamp if new_status == TaskStatus.COMPLETED.value else None

    changed = 0
    if sources:
        changed = store.execute(
            "UPDATE tasks SET status = ?, completed_at = ?, notes = COALESCE(?, notes), "
            "updated_at = ? "
            f"WHERE task_id = ? AND assigned_user_id = ? AND status IN ({_marks(sources)})",
            (new_status, completed_at, notes, stamp, task_id, user_id, *sources),
        )
    if not changed:
        current = get_task(store, task_id)
        if current.assigned_user_id != user_id:
            raise TaskForbiddenError(f"Task {task_id} is not assigned to {user_id}.")
        raise TaskStateError(
            f"Cannot move task {task_id} from {current.status} to {new_status}."
        )

    logger.info("task_status_changed", task_id=task_id, user_id=user_id, status=new_status)
    if events is not None:
        events.log(
            event_type="task_status_changed",
            entity_type="task",
            entity_id=task_id,
            actor=user_id,
            details={"status": new_status, "notes": notes},
        )
    return get_task(store, task_id)


def _identity_filter(
    mode: str, user_id: str | None, roles: list[str]
) -> tuple[str, list[Any]]:
    if mode == "user":
        rules.require(user_id, "user_id")
        return "assigned_user_id = ?", [user_id]
    if mode == "role":
        if not roles:
            raise rules.ValidationError("role mode requires at least one role.")
        return f"assigned_user_id IS NULL AND assigned_role IN ({_marks(roles)})", list(roles)
    rules.require(user_id, "user_id")
    if not roles:
        return "assigned_user_id = ?", [user_id]
    return (
        f"assigned_user_id = ? OR (assigned_user_id IS NULL AND assigned_role IN ({_marks(roles)}))",
        [user_id, *roles],
    )


def _marks(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)
