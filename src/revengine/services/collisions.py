"""Collision detection between a candidate opportunity and a constituent's
other solicitation activity.

Every matching (existing record, rule) pair inside the rule's window is
reported, not just the first, so callers can surface all warnings at once.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from revengine.domain import rules
from revengine.domain.models import ExistingRecord, parse_timestamp
from revengine.domain.ruleset import RuleSet
from revengine.domain.stages import CollisionAction, CollisionSource, OpportunityType
from revengine.observability import get_logger
from revengine.services.utils import utc_now
from revengine.store.sqlite import SqliteSession, SqliteStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class Collision:
    rule_id: str
    rule_name: str
    action: str
    window_days: int
    days_remaining: int
    message: str
    existing_id: str
    existing_source: str
    existing_type: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CollisionReport:
    collisions: tuple[Collision, ...]
    blocked: bool
    overridden: bool = False

    @property
    def blocks(self) -> list[Collision]:
        return [c for c in self.collisions if c.action == CollisionAction.BLOCK.value]

    @property
    def warnings(self) -> list[Collision]:
        return [c for c in self.collisions if c.action == CollisionAction.WARN.value]


def detect_collisions(
    store: SqliteStore | SqliteSession,
    rule_set: RuleSet,
    constituent_id: str,
    incoming_type: str,
    amount: float,
    override: bool = False,
    now: datetime | None = None,
    exclude_opportunity_id: str | None = None,
) -> CollisionReport:
    rules.require(constituent_id, "constituent_id")
    rules.validate_enum(incoming_type, [t.value for t in OpportunityType], "opportunity_type")
    rules.validate_amount(amount)
    now = now or utc_now()

    ordered = rule_set.ordered_collision()
    records = fetch_existing_records(store, rule_set, constituent_id, exclude_opportunity_id)

    found: list[Collision] = []
    for record in records:
        days_since_update = max(0, (now - record.updated_at).days)
        for rule in ordered:
            matched = rule.when.matches(
                source=record.source,
                existing_type=record.opportunity_type,
                existing_status=record.status,
                existing_amount=record.amount,
                incoming_type=incoming_type,
            )
            if not matched or days_since_update > rule.then.window_days:
                continue
            days_remaining = rule.then.window_days - days_since_update
            found.append(
                Collision(
                    rule_id=rule.rule_id,
                    rule_name=rule.name,
                    action=rule.then.action,
                    window_days=rule.then.window_days,
                    days_remaining=days_remaining,
                    message=rule.then.message
                    or _default_message(rule.name, rule.then.action, days_remaining),
                    existing_id=record.record_id,
                    existing_source=record.source,
                    existing_type=record.opportunity_type,
                )
            )

    has_block = any(c.action == CollisionAction.BLOCK.value for c in found)
    report = CollisionReport(
        collisions=tuple(found),
        blocked=has_block and not override,
        overridden=has_block and override,
    )
    if found:
        logger.info(
            "collisions_detected",
            constituent_id=constituent_id,
            incoming_type=incoming_type,
            amount=amount,
            rules=[c.rule_id for c in found],
            blocked=report.blocked,
            overridden=report.overridden,
        )
    return report


def fetch_existing_records(
    store: SqliteStore | SqliteSession,
    rule_set: RuleSet,
    constituent_id: str,
    exclude_opportunity_id: str | None = None,
) -> list[ExistingRecord]:
    """Load only the opportunities and proposals some collision rule can match."""
    opp_statuses = sorted(
        {r.when.status for r in rule_set.collision if r.when.source == CollisionSource.OPPORTUNITY.value}
    )
    proposal_statuses = sorted(
        {r.when.status for r in rule_set.collision if r.when.source == CollisionSource.PROPOSAL.value}
    )
    records: list[ExistingRecord] = []

    if opp_statuses:
        params: list[Any] = [constituent_id, *opp_statuses]
        exclude = ""
        if exclude_opportunity_id:
            exclude = "AND opportunity_id != ? "
            params.append(exclude_opportunity_id)
        rows = store.fetch_all(
            "SELECT opportunity_id, opportunity_type, status, amount, updated_at FROM opportunities "
            f"WHERE constituent_id = ? AND status IN ({_marks(opp_statuses)}) {exclude}"
            "ORDER BY updated_at DESC",
            params,
        )
        records.extend(
            ExistingRecord(
                record_id=row["opportunity_id"],
                source=CollisionSource.OPPORTUNITY.value,
                opportunity_type=row["opportunity_type"],
                status=row["status"],
                amount=float(row["amount"] or 0),
                updated_at=parse_timestamp(row["updated_at"]),
            )
            for row in rows
        )

    if proposal_statuses:
        params = [constituent_id, *proposal_statuses]
        exclude = ""
        if exclude_opportunity_id:
            exclude = "AND proposals.opportunity_id != ? "
            params.append(exclude_opportunity_id)
        rows = store.fetch_all(
            "SELECT proposals.proposal_id, proposals.status, proposals.amount, proposals.updated_at, "
            "opportunities.opportunity_type FROM proposals "
            "JOIN opportunities ON proposals.opportunity_id = opportunities.opportunity_id "
            f"WHERE proposals.constituent_id = ? AND proposals.status IN ({_marks(proposal_statuses)}) "
            f"{exclude}ORDER BY proposals.updated_at DESC",
            params,
        )
        records.extend(
            ExistingRecord(
                record_id=row["proposal_id"],
                source=CollisionSource.PROPOSAL.value,
                opportunity_type=row["opportunity_type"],
                status=row["status"],
                amount=float(row["amount"] or 0),
                updated_at=parse_timestamp(row["updated_at"]),
            )
            for row in rows
        )
    return records


def _marks(values: list[str]) -> str:
    return ", ".join("?" for _ in values)


def _default_message(name: str, action: str, days_remaining: int) -> str:
    label = "Blocked" if action == CollisionAction.BLOCK.value else "Warning"
    return f"{name}: {label} - {days_remaining} days remaining"
