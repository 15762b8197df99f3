from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Any


def parse_timestamp(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _roles(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(role.strip() for role in value.split(",") if role.strip())


@dataclass(frozen=True)
class Constituent:
    constituent_id: str
    first_name: str
    last_name: str
    email: str | None
    is_donor: bool
    is_ticket_holder: bool
    is_corporate: bool
    lifetime_giving: Any
    lifetime_ticket_spend: Any
    sport_affinity: str | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Constituent:
        return cls(
            constituent_id=row["constituent_id"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            email=row["email"],
            is_donor=bool(row["is_donor"]),
            is_ticket_holder=bool(row["is_ticket_holder"]),
            is_corporate=bool(row["is_corporate"]),
            lifetime_giving=row["lifetime_giving"],
            lifetime_ticket_spend=row["lifetime_ticket_spend"],
            sport_affinity=row["sport_affinity"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )


@dataclass(frozen=True)
class Interaction:
    interaction_id: str
    constituent_id: str
    interaction_type: str
    occurred_at: datetime
    opportunity_id: str | None
    notes: str | None
    created_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Interaction:
        return cls(
            interaction_id=row["interaction_id"],
            constituent_id=row["constituent_id"],
            interaction_type=row["interaction_type"],
            occurred_at=parse_timestamp(row["occurred_at"]),
            opportunity_id=row["opportunity_id"],
            notes=row["notes"],
            created_at=parse_timestamp(row["created_at"]),
        )


@dataclass(frozen=True)
class Score:
    constituent_id: str
    as_of_date: date
    renewal_risk: str
    ask_readiness: str
    ticket_propensity: int
    corporate_propensity: int
    capacity_estimate: float
    last_touch_at: datetime | None
    days_since_touch: int | None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Score:
        days = row["days_since_touch"]
        return cls(
            constituent_id=row["constituent_id"],
            as_of_date=date.fromisoformat(row["as_of_date"]),
            renewal_risk=row["renewal_risk"],
            ask_readiness=row["ask_readiness"],
            ticket_propensity=int(row["ticket_propensity"]),
            corporate_propensity=int(row["corporate_propensity"]),
            capacity_estimate=float(row["capacity_estimate"]),
            last_touch_at=parse_timestamp(row["last_touch_at"]),
            days_since_touch=int(days) if days is not None else None,
        )


@dataclass(frozen=True)
class Opportunity:
    opportunity_id: str
    constituent_id: str
    opportunity_type: str
    status: str
    amount: float
    owner_role: str | None
    secondary_owner_roles: tuple[str, ...]
    owner_user_id: str | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Opportunity:
        return cls(
            opportunity_id=row["opportunity_id"],
            constituent_id=row["constituent_id"],
            opportunity_type=row["opportunity_type"],
            status=row["status"],
            amount=float(row["amount"] or 0),
            owner_role=row["owner_role"],
            secondary_owner_roles=_roles(row["secondary_owner_roles"]),
            owner_user_id=row["owner_user_id"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )


@dataclass(frozen=True)
class Task:
    task_id: str
    task_type: str
    priority: str
    status: str
    description: str
    assigned_role: str | None
    assigned_user_id: str | None
    constituent_id: str | None
    opportunity_id: str | None
    due_at: datetime | None
    completed_at: datetime | None
    notes: str | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Task:
        return cls(
            task_id=row["task_id"],
            task_type=row["task_type"],
            priority=row["priority"],
            status=row["status"],
            description=row["description"],
            assigned_role=row["assigned_role"],
            assigned_user_id=row["assigned_user_id"],
            constituent_id=row["constituent_id"],
            opportunity_id=row["opportunity_id"],
            due_at=parse_timestamp(row["due_at"]),
            completed_at=parse_timestamp(row["completed_at"]),
            notes=row["notes"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_type": self.task_type,
            "priority": self.priority,
            "status": self.status,
            "description": self.description,
            "assigned_role": self.assigned_role,
            "assigned_user_id": self.assigned_user_id,
            "constituent_id": self.constituent_id,
            "opportunity_id": self.opportunity_id,
            "due_at": self.due_at.isoformat() if self.due_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class ExistingRecord:
    """An opportunity or pending proposal seen by the collision scan."""

    record_id: str
    source: str
    opportunity_type: str
    status: str
    amount: float
    updated_at: datetime
