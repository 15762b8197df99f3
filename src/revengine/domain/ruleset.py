"""Routing and collision rule tables.

Rules are data: each one is a ``when`` predicate and a ``then`` effect loaded
from YAML at the start of an evaluation. Nothing here touches the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from revengine.domain.stages import (
    CollisionAction,
    CollisionSource,
    OpportunityStatus,
    OpportunityType,
    ProposalStatus,
    TaskPriority,
    TaskType,
)

ANY = "any"

ROUTING_WHEN_KEYS = {
    "opportunity_type",
    "amount_min",
    "amount_max",
    "status",
    "constituent_is_corporate",
    "constituent_is_donor",
    "constituent_is_ticket_holder",
    "capacity_min",
}
COLLISION_WHEN_KEYS = {
    "source",
    "existing_type",
    "existing_status",
    "incoming_type",
    "amount_min",
    "amount_max",
}


class RuleSetError(RuntimeError):
    pass


@dataclass(frozen=True)
class RoutingContext:
    opportunity_type: str
    amount: float
    status: str
    constituent_is_corporate: bool = False
    constituent_is_donor: bool = False
    constituent_is_ticket_holder: bool = False
    capacity_estimate: float | None = None


@dataclass(frozen=True)
class RoutingCondition:
    opportunity_type: str | None = None
    amount_min: float | None = None
    amount_max: float | None = None
    status: str | None = None
    constituent_is_corporate: bool | None = None
    constituent_is_donor: bool | None = None
    constituent_is_ticket_holder: bool | None = None
    capacity_min: float | None = None

    @property
    def is_catch_all(self) -> bool:
        # Only the type is constrained, so every opportunity of that type matches.
        return (
            self.amount_min is None
            and self.amount_max is None
            and self.status is None
            and self.constituent_is_corporate is None
            and self.constituent_is_donor is None
            and self.constituent_is_ticket_holder is None
            and self.capacity_min is None
        )

    def matches(self, ctx: RoutingContext) -> bool:
        if self.opportunity_type is not None and self.opportunity_type != ctx.opportunity_type:
            return False
        # Amount bounds are inclusive.
        if self.amount_min is not None and ctx.amount < self.amount_min:
            return False
        if self.amount_max is not None and ctx.amount > self.amount_max:
            return False
        if self.status is not None and self.status != ctx.status:
            return False
        for flag in (
            "constituent_is_corporate",
            "constituent_is_donor",
            "constituent_is_ticket_holder",
        ):
            expected = getattr(self, flag)
            if expected is not None and expected != getattr(ctx, flag):
                return False
        if self.capacity_min is not None:
            if ctx.capacity_estimate is None or ctx.capacity_estimate < self.capacity_min:
                return False
        return True


@dataclass(frozen=True)
class RoutingEffect:
    primary_owner_role: str
    secondary_owner_roles: tuple[str, ...] = ()
    create_task: bool = True
    task_type: str | None = None
    task_priority: str = TaskPriority.MEDIUM.value


@dataclass(frozen=True)
class RoutingRule:
    rule_id: str
    name: str
    priority: int
    when: RoutingCondition
    then: RoutingEffect
    notes: str | None = None


@dataclass(frozen=True)
class CollisionCondition:
    source: str = CollisionSource.OPPORTUNITY.value
    existing_type: str = ANY
    existing_status: str | None = None
    incoming_type: str = ANY
    amount_min: float | None = None
    amount_max: float | None = None

    @property
    def status(self) -> str:
        if self.existing_status is not None:
            return self.existing_status
        if self.source == CollisionSource.PROPOSAL.value:
            return ProposalStatus.PENDING_APPROVAL.value
        return OpportunityStatus.ACTIVE.value

    def matches(
        self,
        *,
        source: str,
        existing_type: str,
        existing_status: str,
        existing_amount: float,
        incoming_type: str,
    ) -> bool:
        if source != self.source:
            return False
        if existing_status != self.status:
            return False
        if self.existing_type != ANY and self.existing_type != existing_type:
            return False
        if self.incoming_type != ANY and self.incoming_type != incoming_type:
            return False
        if self.amount_min is not None and existing_amount < self.amount_min:
            return False
        if self.amount_max is not None and existing_amount > self.amount_max:
            return False
        return True


@dataclass(frozen=True)
class CollisionEffect:
    action: str
    window_days: int
    message: str | None = None


@dataclass(frozen=True)
class CollisionRule:
    rule_id: str
    name: str
    priority: int
    when: CollisionCondition
    then: CollisionEffect


@dataclass(frozen=True)
class RuleSet:
    routing: tuple[RoutingRule, ...] = field(default_factory=tuple)
    collision: tuple[CollisionRule, ...] = field(default_factory=tuple)

    def ordered_routing(self) -> list[RoutingRule]:
        # sorted() is stable, so equal priorities keep declaration order.
        return sorted(self.routing, key=lambda rule: -rule.priority)

    def ordered_collision(self) -> list[CollisionRule]:
        return sorted(self.collision, key=lambda rule: -rule.priority)

    def match_routing(self, ctx: RoutingContext) -> RoutingRule | None:
        for rule in self.ordered_routing():
            if rule.when.matches(ctx):
                return rule
        return None

    def missing_catch_all(self) -> list[str]:
        covered = set()
        for rule in self.routing:
            if not rule.when.is_catch_all:
                continue
            if rule.when.opportunity_type is None:
                return []
            covered.add(rule.when.opportunity_type)
        return [t.value for t in OpportunityType if t.value not in covered]


def load_rule_set(routing_path: Path, collision_path: Path) -> RuleSet:
    routing_data = _read_yaml(routing_path)
    collision_data = _read_yaml(collision_path)
    return RuleSet(
        routing=tuple(_parse_routing_rules(routing_data, routing_path)),
        collision=tuple(_parse_collision_rules(collision_data, collision_path)),
    )


def parse_rule_set(routing_data: dict[str, Any], collision_data: dict[str, Any]) -> RuleSet:
    return RuleSet(
        routing=tuple(_parse_routing_rules(routing_data, None)),
        collision=tuple(_parse_collision_rules(collision_data, None)),
    )


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise RuleSetError(f"Rules file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise RuleSetError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise RuleSetError(f"{path} must contain a mapping with a 'rules' list.")
    return data


def _rule_items(data: dict[str, Any], origin: Path | None) -> list[dict[str, Any]]:
    rules = data.get("rules") or []
    if not isinstance(rules, list):
        raise RuleSetError(f"{origin or 'rules'}: 'rules' must be a list.")
    for index, item in enumerate(rules):
        if not isinstance(item, dict):
            raise RuleSetError(f"{origin or 'rules'}: rule #{index + 1} must be a mapping.")
    return rules


def _parse_routing_rules(data: dict[str, Any], origin: Path | None) -> list[RoutingRule]:
    parsed = []
    for index, item in enumerate(_rule_items(data, origin)):
        rule_id = str(item.get("id") or item.get("name") or f"routing_{index + 1}")
        when = item.get("when") or {}
        then = item.get("then") or {}
        _check_keys(when, ROUTING_WHEN_KEYS, rule_id)
        if not isinstance(then, dict):
            raise RuleSetError(f"Rule {rule_id}: 'then' must be a mapping.")
        _check_enum(when.get("opportunity_type"), [t.value for t in OpportunityType], rule_id)
        _check_enum(when.get("status"), [s.value for s in OpportunityStatus], rule_id)

        primary = then.get("primary_owner_role")
        if not primary:
            raise RuleSetError(f"Routing rule {rule_id}: then.primary_owner_role is required.")
        priority_value = then.get("task_priority", TaskPriority.MEDIUM.value)
        _check_enum(priority_value, [p.value for p in TaskPriority], rule_id)
        _check_enum(then.get("task_type"), [t.value for t in TaskType], rule_id)
        secondary = then.get("secondary_owner_roles") or []
        if not isinstance(secondary, list):
            raise RuleSetError(f"Routing rule {rule_id}: secondary_owner_roles must be a list.")

        parsed.append(
            RoutingRule(
                rule_id=rule_id,
                name=str(item.get("name") or rule_id),
                priority=_priority(item, rule_id),
                when=RoutingCondition(
                    opportunity_type=when.get("opportunity_type"),
                    amount_min=_number(when.get("amount_min"), rule_id),
                    amount_max=_number(when.get("amount_max"), rule_id),
                    status=when.get("status"),
                    constituent_is_corporate=when.get("constituent_is_corporate"),
                    constituent_is_donor=when.get("constituent_is_donor"),
                    constituent_is_ticket_holder=when.get("constituent_is_ticket_holder"),
                    capacity_min=_number(when.get("capacity_min"), rule_id),
                ),
                then=RoutingEffect(
                    primary_owner_role=str(primary),
                    secondary_owner_roles=tuple(str(role) for role in secondary),
                    create_task=bool(then.get("create_task", True)),
                    task_type=then.get("task_type"),
                    task_priority=priority_value,
                ),
                notes=item.get("notes"),
            )
        )
    return parsed


def _parse_collision_rules(data: dict[str, Any], origin: Path | None) -> list[CollisionRule]:
    parsed = []
    types = [t.value for t in OpportunityType] + [ANY]
    for index, item in enumerate(_rule_items(data, origin)):
        rule_id = str(item.get("id") or item.get("name") or f"collision_{index + 1}")
        when = item.get("when") or {}
        then = item.get("then") or {}
        _check_keys(when, COLLISION_WHEN_KEYS, rule_id)
        if not isinstance(then, dict):
            raise RuleSetError(f"Rule {rule_id}: 'then' must be a mapping.")

        source = when.get("source", CollisionSource.OPPORTUNITY.value)
        _check_enum(source, [s.value for s in CollisionSource], rule_id)
        _check_enum(when.get("existing_type", ANY), types, rule_id)
        _check_enum(when.get("incoming_type", ANY), types, rule_id)
        if source == CollisionSource.PROPOSAL.value:
            _check_enum(when.get("existing_status"), [s.value for s in ProposalStatus], rule_id)
        else:
            _check_enum(when.get("existing_status"), [s.value for s in OpportunityStatus], rule_id)

        action = then.get("action")
        _check_enum(action, [a.value for a in CollisionAction], rule_id)
        if action is None:
            raise RuleSetError(f"Collision rule {rule_id}: then.action is required.")
        window_days = then.get("window_days")
        if not isinstance(window_days, int) or isinstance(window_days, bool) or window_days < 0:
            raise RuleSetError(
                f"Collision rule {rule_id}: then.window_days must be a non-negative integer."
            )

        parsed.append(
            CollisionRule(
                rule_id=rule_id,
                name=str(item.get("name") or rule_id),
                priority=_priority(item, rule_id),
                when=CollisionCondition(
                    source=source,
                    existing_type=when.get("existing_type", ANY),
                    existing_status=when.get("existing_status"),
                    incoming_type=when.get("incoming_type", ANY),
                    amount_min=_number(when.get("amount_min"), rule_id),
                    amount_max=_number(when.get("amount_max"), rule_id),
                ),
                then=CollisionEffect(
                    action=action,
                    window_days=window_days,
                    message=then.get("message") or item.get("notes"),
                ),
            )
        )
    return parsed


def _priority(item: dict[str, Any], rule_id: str) -> int:
    value = item.get("priority", 0)
    if not isinstance(value, int) or isinstance(value, bool):
        raise RuleSetError(f"Rule {rule_id}: priority must be an integer.")
    return value


def _number(value: Any, rule_id: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise RuleSetError(f"Rule {rule_id}: amount bounds must be numbers.")
    return float(value)


def _check_keys(when: Any, allowed: set[str], rule_id: str) -> None:
    if not isinstance(when, dict):
        raise RuleSetError(f"Rule {rule_id}: 'when' must be a mapping.")
    unknown = sorted(set(when) - allowed)
    if unknown:
        raise RuleSetError(f"Rule {rule_id}: unknown condition(s): {', '.join(unknown)}")


def _check_enum(value: Any, allowed: list[str], rule_id: str) -> None:
    if value is None:
        return
    if value not in allowed:
        raise RuleSetError(f"Rule {rule_id}: {value!r} must be one of: {', '.join(sorted(allowed))}")
