import json
from datetime import UTC, date, datetime, timedelta
from pathlib import Path

import pytest

from revengine.domain.rules import ValidationError
from revengine.domain.ruleset import load_rule_set, parse_rule_set
from revengine.services import constituents, routing, scoring
from revengine.services.events import EventLogger
from revengine.services.routing import NoMatchingRuleError, route_opportunity
from revengine.services.tasks import TaskGenerationError
from revengine.services.work_queue import get_task
from revengine.store.sqlite import SqliteStore

NOW = datetime(2026, 3, 1, 12, tzinfo=UTC)
RULES_DIR = Path(__file__).resolve().parents[1] / "resources" / "rules"


def _store(tmp_path: Path) -> SqliteStore:
    db_path = tmp_path / "test.sqlite"
    store = SqliteStore(db_path)
    schema_path = (
        Path(__file__).resolve().parents[1] / "resources" / "schema" / "canonical.yaml"
    )
    store.apply_schema(schema_path)
    return store


def _rules():
    return load_rule_set(RULES_DIR / "routing_rules.yaml", RULES_DIR / "collision_rules.yaml")


def _count(store: SqliteStore, table: str) -> int:
    return store.fetch_one(f"SELECT COUNT(*) AS n FROM {table}")["n"]


def test_transformational_gift_end_to_end(tmp_path: Path) -> None:
    store = _store(tmp_path)
    constituent_id = constituents.add_constituent(store, "Dana", "Reyes", is_donor=True)

    result = route_opportunity(
        store,
        _rules(),
        constituent_id=constituent_id,
        opportunity_type="major_gift",
        amount=1_500_000,
        now=NOW,
    )

    assert result.blocked is False
    assert result.matched_rule == "major_gift_transformational"
    assert result.primary_owner_role == "major_gifts"
    assert "executive" in result.secondary_owner_roles
    assert result.task_priority == "high"
    assert result.task_created is True

    opportunity = constituents.get_opportunity(store, result.opportunity_id)
    assert opportunity.status == "active"
    assert opportunity.owner_role == "major_gifts"
    assert opportunity.secondary_owner_roles == ("executive",)

    task = get_task(store, result.task_id)
    assert task.priority == "high"
    assert task.task_type == "cultivation"
    assert task.assigned_role == "major_gifts"
    assert task.assigned_user_id is None
    assert task.opportunity_id == result.opportunity_id
    assert task.due_at == NOW + timedelta(days=3)


def test_routing_is_deterministic(tmp_path: Path) -> None:
    store = _store(tmp_path)
    constituent_id = constituents.add_constituent(store, "Dana", "Reyes")
    opp_id = constituents.add_opportunity(store, constituent_id, "corporate", 50_000)
    rule_set = _rules()

    roles = {
        route_opportunity(store, rule_set, opportunity_id=opp_id, now=NOW).primary_owner_role
        for _ in range(3)
    }

    assert roles == {"corporate"}


def test_reroute_same_role_is_a_noop(tmp_path: Path) -> None:
    store = _store(tmp_path)
    constituent_id = constituents.add_constituent(store, "Dana", "Reyes")
    first = route_opportunity(
        store, _rules(), constituent_id=constituent_id, opportunity_type="ticket", amount=800, now=NOW
    )

    again = route_opportunity(
        store, _rules(), opportunity_id=first.opportunity_id, now=NOW + timedelta(days=1)
    )

    assert first.changed is True
    assert again.changed is False
    assert again.task_created is False
    assert again.primary_owner_role == "ticketing"
    assert _count(store, "tasks") == 1
    opportunity = constituents.get_opportunity(store, first.opportunity_id)
    assert opportunity.updated_at == NOW


def test_reroute_with_new_owner_roles_creates_task(tmp_path: Path) -> None:
    store = _store(tmp_path)
    constituent_id = constituents.add_constituent(store, "Dana", "Reyes")
    first = route_opportunity(
        store,
        _rules(),
        constituent_id=constituent_id,
        opportunity_type="major_gift",
        amount=50_000,
        now=NOW,
    )
    store.execute(
        "UPDATE opportunities SET amount = ? WHERE opportunity_id = ?",
        (2_000_000, first.opportunity_id),
    )

    again = route_opportunity(store, _rules(), opportunity_id=first.opportunity_id, now=NOW)

    assert first.matched_rule == "major_gift_default"
    assert again.matched_rule == "major_gift_transformational"
    assert again.changed is True
    assert again.task_created is True
    assert _count(store, "tasks") == 2


def test_blocked_routing_writes_nothing(tmp_path: Path) -> None:
    store = _store(tmp_path)
    constituent_id = constituents.add_constituent(store, "Dana", "Reyes")
    constituents.add_opportunity(
        store, constituent_id, "major_gift", 250_000, now=NOW - timedelta(days=5)
    )

    result = route_opportunity(
        store, _rules(), constituent_id=constituent_id, opportunity_type="ticket", amount=1_000, now=NOW
    )

    assert result.blocked is True
    assert result.opportunity_id is None
    assert result.primary_owner_role is None
    assert result.task_created is False
    assert [c.rule_id for c in result.collisions] == ["major_gift_blocks_ticket"]
    assert _count(store, "opportunities") == 1
    assert _count(store, "tasks") == 0


def test_block_lifts_after_window(tmp_path: Path) -> None:
    store = _store(tmp_path)
    constituent_id = constituents.add_constituent(store, "Dana", "Reyes")
    constituents.add_opportunity(
        store, constituent_id, "major_gift", 250_000, now=NOW - timedelta(days=5)
    )

    later = NOW + timedelta(days=15)
    result = route_opportunity(
        store, _rules(), constituent_id=constituent_id, opportunity_type="ticket", amount=1_000, now=later
    )

    assert result.blocked is False
    assert result.primary_owner_role == "ticketing"
    task = get_task(store, result.task_id)
    assert task.task_type == "renewal"
    assert task.due_at == later + timedelta(days=14)


def test_warning_does_not_block(tmp_path: Path) -> None:
    store = _store(tmp_path)
    constituent_id = constituents.add_constituent(store, "Dana", "Reyes", is_corporate=True)
    constituents.add_opportunity(
        store, constituent_id, "corporate", 90_000, now=NOW - timedelta(days=1)
    )

    result = route_opportunity(
        store, _rules(), constituent_id=constituent_id, opportunity_type="ticket", amount=1_000, now=NOW
    )

    assert result.blocked is False
    assert [c.action for c in result.collisions] == ["warn"]
    assert result.task_created is True


def test_override_routes_and_is_audited(tmp_path: Path) -> None:
    store = _store(tmp_path)
    events_path = tmp_path / "events.ndjson"
    events = EventLogger(path=events_path, workspace="test")
    constituent_id = constituents.add_constituent(store, "Dana", "Reyes")
    constituents.add_opportunity(
        store, constituent_id, "major_gift", 250_000, now=NOW - timedelta(days=5)
    )

    result = route_opportunity(
        store,
        _rules(),
        constituent_id=constituent_id,
        opportunity_type="ticket",
        amount=30_000,
        override=True,
        now=NOW,
        events=events,
    )

    assert result.blocked is False
    assert result.overridden is True
    assert result.matched_rule == "ticket_premium_seating"
    assert [c.rule_id for c in result.collisions] == ["major_gift_blocks_ticket"]
    # Premium seating names no task type, so the override asks for review.
    assert get_task(store, result.task_id).task_type == "review_required"

    logged = [json.loads(line) for line in events_path.read_text().splitlines()]
    assert [e["event_type"] for e in logged] == ["collision_override", "route_opportunity"]
    assert logged[0]["details"]["overridden_rules"] == ["major_gift_blocks_ticket"]
    assert logged[1]["entity_id"] == result.opportunity_id


def test_own_pending_proposal_does_not_block_reroute(tmp_path: Path) -> None:
    store = _store(tmp_path)
    constituent_id = constituents.add_constituent(store, "Dana", "Reyes")
    opp_id = constituents.add_opportunity(store, constituent_id, "major_gift", 250_000, now=NOW)
    constituents.add_proposal(store, opp_id, 250_000, status="pending_approval", now=NOW)

    result = route_opportunity(store, _rules(), opportunity_id=opp_id, now=NOW)

    assert result.blocked is False
    assert result.primary_owner_role == "major_gifts"


def test_capacity_rule_uses_latest_score(tmp_path: Path) -> None:
    store = _store(tmp_path)
    rule_set = parse_rule_set(
        {
            "rules": [
                {
                    "id": "high_capacity",
                    "priority": 50,
                    "when": {"opportunity_type": "ticket", "capacity_min": 1_000_000},
                    "then": {"primary_owner_role": "major_gifts", "create_task": False},
                },
                {
                    "id": "ticket_default",
                    "priority": 10,
                    "when": {"opportunity_type": "ticket"},
                    "then": {"primary_owner_role": "ticketing", "create_task": False},
                },
            ]
        },
        {"rules": []},
    )
    constituent_id = constituents.add_constituent(store, "Dana", "Reyes", lifetime_giving=200_000)

    before = route_opportunity(
        store, rule_set, constituent_id=constituent_id, opportunity_type="ticket", amount=500, now=NOW
    )
    scoring.run_scoring(store, [constituent_id], as_of=date(2026, 3, 1))
    after = route_opportunity(
        store, rule_set, constituent_id=constituent_id, opportunity_type="ticket", amount=500, now=NOW
    )

    assert before.matched_rule == "ticket_default"
    assert after.matched_rule == "high_capacity"
    assert after.task_created is False
    assert _count(store, "tasks") == 0


def test_no_matching_rule_raises(tmp_path: Path) -> None:
    store = _store(tmp_path)
    rule_set = parse_rule_set(
        {
            "rules": [
                {
                    "id": "ticket_default",
                    "when": {"opportunity_type": "ticket"},
                    "then": {"primary_owner_role": "ticketing"},
                }
            ]
        },
        {"rules": []},
    )
    constituent_id = constituents.add_constituent(store, "Dana", "Reyes")

    with pytest.raises(NoMatchingRuleError):
        route_opportunity(
            store, rule_set, constituent_id=constituent_id, opportunity_type="corporate", amount=10, now=NOW
        )
    assert _count(store, "opportunities") == 0


def test_task_failure_keeps_owner_assignment(tmp_path: Path, monkeypatch) -> None:
    store = _store(tmp_path)
    constituent_id = constituents.add_constituent(store, "Dana", "Reyes")

    def _fail(*args, **kwargs):
        raise TaskGenerationError("Failed to create task: disk full")

    monkeypatch.setattr(routing, "create_task", _fail)
    result = route_opportunity(
        store, _rules(), constituent_id=constituent_id, opportunity_type="corporate", amount=10_000, now=NOW
    )

    assert result.task_created is False
    assert result.task_id is None
    assert "disk full" in result.task_error
    assert constituents.get_opportunity(store, result.opportunity_id).owner_role == "corporate"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"opportunity_type": "raffle", "amount": 10},
        {"opportunity_type": "ticket", "amount": -1},
        {"opportunity_type": "ticket", "amount": None},
        {"opportunity_type": "major_gift", "amount": float("nan")},
        {"opportunity_type": "major_gift", "amount": float("inf")},
    ],
)
def test_invalid_new_opportunity_rejected(tmp_path: Path, kwargs) -> None:
    store = _store(tmp_path)
    constituent_id = constituents.add_constituent(store, "Dana", "Reyes")

    with pytest.raises(ValidationError):
        route_opportunity(store, _rules(), constituent_id=constituent_id, now=NOW, **kwargs)
    assert _count(store, "opportunities") == 0


def test_unknown_constituent_or_opportunity(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with pytest.raises(ValidationError):
        route_opportunity(
            store, _rules(), constituent_id="missing", opportunity_type="ticket", amount=10, now=NOW
        )
    with pytest.raises(ValidationError):
        route_opportunity(store, _rules(), opportunity_id="missing", now=NOW)
