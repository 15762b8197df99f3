"""Opportunity routing.

Collisions are checked first; a blocked decision writes nothing. Otherwise the
first routing rule (by descending priority) that matches decides the owner
roles, the owner assignment is persisted, and a follow-up task is generated in
its own transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from revengine.domain import rules
from revengine.domain.models import Opportunity
from revengine.domain.ruleset import RoutingContext, RoutingRule, RuleSet
from revengine.domain.stages import OpportunityStatus, OpportunityType
from revengine.observability import get_logger
from revengine.services.collisions import Collision, CollisionReport, detect_collisions
from revengine.services.constituents import get_constituent, get_opportunity, insert_opportunity
from revengine.services.events import EventLogger
from revengine.services.scoring import get_latest_score
from revengine.services.tasks import TaskGenerationError, TaskRequest, create_task
from revengine.services.utils import join_roles, to_iso, utc_now
from revengine.store.sqlite import SqliteStore

logger = get_logger(__name__)


class NoMatchingRuleError(RuntimeError):
    pass


@dataclass
class RoutingResult:
    opportunity_id: str | None
    blocked: bool
    collisions: list[Collision] = field(default_factory=list)
    matched_rule: str | None = None
    primary_owner_role: str | None = None
    secondary_owner_roles: list[str] = field(default_factory=list)
    task_priority: str | None = None
    task_created: bool = False
    task_id: str | None = None
    task_error: str | None = None
    overridden: bool = False
    changed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "opportunity_id": self.opportunity_id,
            "blocked": self.blocked,
            "collisions": [c.to_dict() for c in self.collisions],
            "matched_rule": self.matched_rule,
            "primary_owner_role": self.primary_owner_role,
            "secondary_owner_roles": list(self.secondary_owner_roles),
            "task_priority": self.task_priority,
            "task_created": self.task_created,
            "task_id": self.task_id,
            "task_error": self.task_error,
            "overridden": self.overridden,
            "changed": self.changed,
        }


def route_opportunity(
    store: SqliteStore,
    rule_set: RuleSet,
    opportunity_id: str | None = None,
    constituent_id: str | None = None,
    opportunity_type: str | None = None,
    amount: float | None = None,
    override: bool = False,
    now: datetime | None = None,
    events: EventLogger | None = None,
) -> RoutingResult:
    now = now or utc_now()
    existing: Opportunity | None = None
    if opportunity_id:
        existing = get_opportunity(store, opportunity_id)
        constituent_id = existing.constituent_id
        opportunity_type = existing.opportunity_type
        amount = existing.amount
        status = existing.status
    else:
        rules.require(constituent_id, "constituent_id")
        rules.validate_enum(
            opportunity_type, [t.value for t in OpportunityType], "opportunity_type"
        )
        amount = rules.validate_amount(amount)
        status = OpportunityStatus.ACTIVE.value
    constituent = get_constituent(store, constituent_id)

    report = detect_collisions(
        store,
        rule_set,
        constituent_id,
        opportunity_type,
        amount,
        override=override,
        now=now,
        exclude_opportunity_id=opportunity_id,
    )
    if report.blocked:
        logger.info(
            "routing_blocked",
            constituent_id=constituent_id,
            opportunity_id=opportunity_id,
            rules=[c.rule_id for c in report.blocks],
        )
        result = RoutingResult(
            opportunity_id=opportunity_id, blocked=True, collisions=list(report.collisions)
        )
        _log_decision(events, result, constituent_id, opportunity_type, amount)
        return result

    score = get_latest_score(store, constituent_id)
    ctx = RoutingContext(
        opportunity_type=opportunity_type,
        amount=amount,
        status=status,
        constituent_is_corporate=constituent.is_corporate,
        constituent_is_donor=constituent.is_donor,
        constituent_is_ticket_holder=constituent.is_ticket_holder,
        capacity_estimate=float(score["capacity_estimate"]) if score else None,
    )
    rule = rule_set.match_routing(ctx)
    if rule is None:
        raise NoMatchingRuleError(
            f"No routing rule matches {opportunity_type} for {amount:,.2f}; "
            "add a catch-all rule for this type."
        )

    if report.overridden:
        _log_override(events, report, constituent_id, opportunity_id, opportunity_type)

    primary = rule.then.primary_owner_role
    secondary = rule.then.secondary_owner_roles
    with store.session() as session:
        if existing is None:
            opportunity_id = insert_opportunity(
                session,
                constituent_id=constituent_id,
                opportunity_type=opportunity_type,
                amount=amount,
                status=status,
                owner_role=primary,
                secondary_owner_roles=secondary,
                now=now,
            )
            changed = True
        elif existing.owner_role == primary and existing.secondary_owner_roles == secondary:
            changed = False
        else:
            session.execute(
                "UPDATE opportunities SET owner_role = ?, secondary_owner_roles = ?, updated_at = ? "
                "WHERE opportunity_id = ?",
                (primary, join_roles(secondary), to_iso(now), opportunity_id),
            )
            changed = True

    result = RoutingResult(
        opportunity_id=opportunity_id,
        blocked=False,
        collisions=list(report.collisions),
        matched_rule=rule.rule_id,
        primary_owner_role=primary,
        secondary_owner_roles=list(secondary),
        task_priority=rule.then.task_priority,
        overridden=report.overridden,
        changed=changed,
    )
    if changed and rule.then.create_task:
        _generate_task(store, result, rule, constituent_id, opportunity_type, amount, now)

    logger.info(
        "opportunity_routed",
        opportunity_id=opportunity_id,
        rule=rule.rule_id,
        owner_role=primary,
        changed=changed,
        task_id=result.task_id,
    )
    _log_decision(events, result, constituent_id, opportunity_type, amount)
    return result


def _generate_task(
    store: SqliteStore,
    result: RoutingResult,
    rule: RoutingRule,
    constituent_id: str,
    opportunity_type: str,
    amount: float,
    now: datetime,
) -> None:
    request = TaskRequest(
        opportunity_id=result.opportunity_id,
        constituent_id=constituent_id,
        opportunity_type=opportunity_type,
        amount=amount,
        assigned_role=rule.then.primary_owner_role,
        priority=rule.then.task_priority,
        task_type=rule.then.task_type,
        overridden=result.overridden,
    )
    try:
        result.task_id = create_task(store, request, now=now)
    except TaskGenerationError as exc:
        # The owner assignment stays committed.
        result.task_error = str(exc)
        return
    result.task_created = True


def _log_override(
    events: EventLogger | None,
    report: CollisionReport,
    constituent_id: str,
    opportunity_id: str | None,
    opportunity_type: str,
) -> None:
    logger.warning(
        "collision_override",
        constituent_id=constituent_id,
        opportunity_id=opportunity_id,
        rules=[c.rule_id for c in report.blocks],
    )
    if events is None:
        return
    events.log(
        event_type="collision_override",
        entity_type="constituent",
        entity_id=constituent_id,
        details={
            "opportunity_id": opportunity_id,
            "opportunity_type": opportunity_type,
            "overridden_rules": [c.rule_id for c in report.blocks],
            "existing_ids": [c.existing_id for c in report.blocks],
        },
    )


def _log_decision(
    events: EventLogger | None,
    result: RoutingResult,
    constituent_id: str,
    opportunity_type: str,
    amount: float,
) -> None:
    if events is None:
        return
    details = result.to_dict()
    details.update(
        {"constituent_id": constituent_id, "opportunity_type": opportunity_type, "amount": amount}
    )
    events.log(
        event_type="route_opportunity",
        entity_type="opportunity",
        entity_id=result.opportunity_id,
        details=details,
    )
