from __future__ import annotations

from enum import Enum


class OpportunityType(str, Enum):
    TICKET = "ticket"
    MAJOR_GIFT = "major_gift"
    CORPORATE = "corporate"


class OpportunityStatus(str, Enum):
    ACTIVE = "active"
    WON = "won"
    LOST = "lost"
    PAUSED = "paused"


class ProposalStatus(str, Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    SENT = "sent"


class InteractionType(str, Enum):
    EMAIL = "email"
    CALL = "call"
    MEETING = "meeting"
    EVENT = "event"
    PROPOSAL_SENT = "proposal_sent"


class RenewalRisk(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AskReadiness(str, Enum):
    READY = "ready"
    NOT_READY = "not_ready"


class CollisionAction(str, Enum):
    BLOCK = "block"
    WARN = "warn"


class CollisionSource(str, Enum):
    OPPORTUNITY = "opportunity"
    PROPOSAL = "proposal"


class TaskType(str, Enum):
    CULTIVATION = "cultivation"
    RENEWAL = "renewal"
    FOLLOW_UP = "follow_up"
    PROPOSAL_REQUIRED = "proposal_required"
    REVIEW_REQUIRED = "review_required"


class TaskPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED.value, TaskStatus.CANCELLED.value})
