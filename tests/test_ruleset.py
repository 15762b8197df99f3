from pathlib import Path

import pytest

from revengine.domain.ruleset import RoutingContext, RuleSetError, load_rule_set, parse_rule_set

RULES_DIR = Path(__file__).resolve().parents[1] / "resources" / "rules"


def _rules():
    return load_rule_set(RULES_DIR / "routing_rules.yaml", RULES_DIR / "collision_rules.yaml")


def _ctx(opportunity_type: str, amount: float, **kwargs) -> RoutingContext:
    return RoutingContext(opportunity_type=opportunity_type, amount=amount, status="active", **kwargs)


def test_shipped_rules_cover_every_type() -> None:
    rule_set = _rules()
    assert rule_set.missing_catch_all() == []
    assert [r.rule_id for r in rule_set.ordered_collision()][0] == "major_gift_blocks_ticket"


@pytest.mark.parametrize(
    ("opportunity_type", "amount", "expected"),
    [
        ("major_gift", 1_500_000, "major_gift_transformational"),
        ("major_gift", 1_000_000, "major_gift_transformational"),
        ("major_gift", 999_999.99, "major_gift_leadership"),
        ("major_gift", 5_000, "major_gift_default"),
        ("corporate", 50_000, "corporate_partnership"),
        ("corporate", 49_999, "corporate_default"),
        ("ticket", 25_000, "ticket_premium_seating"),
        ("ticket", 400, "ticket_default"),
    ],
)
def test_first_match_by_descending_priority(opportunity_type, amount, expected) -> None:
    rule = _rules().match_routing(_ctx(opportunity_type, amount))
    assert rule is not None
    assert rule.rule_id == expected


def test_equal_priority_keeps_declaration_order() -> None:
    rule_set = parse_rule_set(
        {
            "rules": [
                {"id": "first", "priority": 5, "when": {}, "then": {"primary_owner_role": "a"}},
                {"id": "second", "priority": 5, "when": {}, "then": {"primary_owner_role": "b"}},
            ]
        },
        {"rules": []},
    )
    assert rule_set.match_routing(_ctx("ticket", 1)).rule_id == "first"


def test_constituent_flags_and_capacity_predicates() -> None:
    rule_set = parse_rule_set(
        {
            "rules": [
                {
                    "id": "corporate_donor",
                    "priority": 20,
                    "when": {"constituent_is_corporate": True, "constituent_is_donor": True},
                    "then": {"primary_owner_role": "corporate"},
                },
                {
                    "id": "high_capacity",
                    "priority": 10,
                    "when": {"capacity_min": 1_000_000},
                    "then": {"primary_owner_role": "major_gifts"},
                },
                {"id": "fallback", "priority": 0, "when": {}, "then": {"primary_owner_role": "ticketing"}},
            ]
        },
        {"rules": []},
    )
    assert rule_set.match_routing(
        _ctx("ticket", 10, constituent_is_corporate=True, constituent_is_donor=True)
    ).rule_id == "corporate_donor"
    assert rule_set.match_routing(_ctx("ticket", 10, capacity_estimate=2_000_000)).rule_id == "high_capacity"
    # Never scored: capacity predicates cannot hold.
    assert rule_set.match_routing(_ctx("ticket", 10)).rule_id == "fallback"


def test_missing_catch_all_reports_types() -> None:
    rule_set = parse_rule_set(
        {
            "rules": [
                {
                    "id": "ticket_default",
                    "when": {"opportunity_type": "ticket"},
                    "then": {"primary_owner_role": "ticketing"},
                },
                {
                    "id": "big_gifts",
                    "when": {"opportunity_type": "major_gift", "amount_min": 100},
                    "then": {"primary_owner_role": "major_gifts"},
                },
            ]
        },
        {"rules": []},
    )
    assert rule_set.missing_catch_all() == ["major_gift", "corporate"]


def test_collision_status_defaults_by_source() -> None:
    rule_set = parse_rule_set(
        {"rules": []},
        {
            "rules": [
                {"id": "opp", "when": {}, "then": {"action": "warn", "window_days": 3}},
                {
                    "id": "prop",
                    "when": {"source": "proposal"},
                    "then": {"action": "block", "window_days": 3},
                },
            ]
        },
    )
    statuses = {rule.rule_id: rule.when.status for rule in rule_set.collision}
    assert statuses == {"opp": "active", "prop": "pending_approval"}


@pytest.mark.parametrize(
    ("routing", "collision"),
    [
        ({"rules": [{"id": "x", "when": {"colour": "red"}, "then": {"primary_owner_role": "a"}}]}, {}),
        ({"rules": [{"id": "x", "when": {}, "then": {}}]}, {}),
        ({"rules": [{"id": "x", "when": {"opportunity_type": "raffle"}, "then": {"primary_owner_role": "a"}}]}, {}),
        ({"rules": [{"id": "x", "priority": "high", "then": {"primary_owner_role": "a"}}]}, {}),
        ({}, {"rules": [{"id": "y", "then": {"action": "shout", "window_days": 3}}]}),
        ({}, {"rules": [{"id": "y", "then": {"action": "warn", "window_days": -1}}]}),
        ({"rules": "not a list"}, {}),
    ],
)
def test_invalid_rules_rejected(routing, collision) -> None:
    with pytest.raises(RuleSetError):
        parse_rule_set(routing, collision)


def test_missing_rules_file(tmp_path: Path) -> None:
    with pytest.raises(RuleSetError):
        load_rule_set(tmp_path / "nope.yaml", RULES_DIR / "collision_rules.yaml")
