import itertools
from datetime import UTC, date, datetime, timedelta
from pathlib import Path

import pytest

from revengine.domain.rules import ValidationError
from revengine.services import constituents, interactions, scoring
from revengine.services.events import EventLogger
from revengine.store.sqlite import SqliteStore

AS_OF = date(2026, 6, 1)
SCORE_FIELDS = (
    "renewal_risk",
    "ask_readiness",
    "ticket_propensity",
    "corporate_propensity",
    "capacity_estimate",
    "last_touch_at",
    "days_since_touch",
)


def _store(tmp_path: Path) -> SqliteStore:
    db_path = tmp_path / "test.sqlite"
    store = SqliteStore(db_path)
    schema_path = (
        Path(__file__).resolve().parents[1] / "resources" / "schema" / "canonical.yaml"
    )
    store.apply_schema(schema_path)
    return store


def _touched(store: SqliteStore, days_ago: int, **kwargs) -> str:
    constituent_id = constituents.add_constituent(store, "Pat", "Lee", **kwargs)
    occurred = datetime(AS_OF.year, AS_OF.month, AS_OF.day, 15, tzinfo=UTC) - timedelta(days=days_ago)
    interactions.log_interaction(store, constituent_id, "call", occurred_at=occurred)
    return constituent_id


@pytest.mark.parametrize(
    ("days", "expected"),
    [(None, "high"), (0, "low"), (90, "low"), (91, "medium"), (180, "medium"), (181, "high")],
)
def test_renewal_risk_boundaries(days, expected) -> None:
    assert scoring.calculate_renewal_risk(days) == expected


@pytest.mark.parametrize(
    ("spend", "expected"),
    [(0, 0), (499, 0), (500, 1), (2500, 5), (49_999, 99), (50_000, 100), (250_000, 100), (-800, 0)],
)
def test_ticket_propensity(spend, expected) -> None:
    assert scoring.calculate_ticket_propensity(spend) == expected


def test_ask_readiness_needs_active_opportunity_and_recent_touch() -> None:
    assert scoring.calculate_ask_readiness(True, 29) == "ready"
    assert scoring.calculate_ask_readiness(True, 30) == "not_ready"
    assert scoring.calculate_ask_readiness(False, 0) == "not_ready"
    assert scoring.calculate_ask_readiness(True, None) == "not_ready"


def test_run_scoring_persists_scores(tmp_path: Path) -> None:
    store = _store(tmp_path)
    recent = _touched(
        store, 10, is_corporate=True, lifetime_giving=20_000, lifetime_ticket_spend=2_500
    )
    constituents.add_opportunity(store, recent, "major_gift", 100_000)
    stale = _touched(store, 120)
    untouched = constituents.add_constituent(store, "Sam", "Ortiz")

    result = scoring.run_scoring(store, as_of=AS_OF)

    assert result.total == 3
    assert result.scored == 3
    assert result.errors == []
    assert result.batches == 1
    assert result.interrupted is False

    row = scoring.get_latest_score(store, recent)
    assert row["as_of_date"] == "2026-06-01"
    assert row["days_since_touch"] == 10
    assert row["renewal_risk"] == "low"
    assert row["ask_readiness"] == "ready"
    assert row["ticket_propensity"] == 5
    assert row["corporate_propensity"] == 100
    assert row["capacity_estimate"] == 200_000

    assert scoring.get_latest_score(store, stale)["renewal_risk"] == "medium"
    row = scoring.get_latest_score(store, untouched)
    assert row["renewal_risk"] == "high"
    assert row["days_since_touch"] is None
    assert row["last_touch_at"] is None


def test_rescoring_same_day_is_idempotent(tmp_path: Path) -> None:
    store = _store(tmp_path)
    constituent_id = _touched(store, 45, lifetime_ticket_spend=7_000)

    scoring.run_scoring(store, as_of=AS_OF)
    first = dict(scoring.get_latest_score(store, constituent_id))
    scoring.run_scoring(store, as_of=AS_OF)
    second = dict(scoring.get_latest_score(store, constituent_id))

    count = store.fetch_one(
        "SELECT COUNT(*) AS n FROM scores WHERE constituent_id = ?", (constituent_id,)
    )
    assert count["n"] == 1
    assert {k: first[k] for k in SCORE_FIELDS} == {k: second[k] for k in SCORE_FIELDS}
    assert first["created_at"] == second["created_at"]


def test_future_interaction_counts_as_touched_today(tmp_path: Path) -> None:
    store = _store(tmp_path)
    constituent_id = _touched(store, -3)

    scoring.run_scoring(store, [constituent_id], as_of=AS_OF)

    assert scoring.get_latest_score(store, constituent_id)["days_since_touch"] == 0


def test_per_item_errors_do_not_abort_run(tmp_path: Path) -> None:
    store = _store(tmp_path)
    good = constituents.add_constituent(store, "Ana", "Ruiz", lifetime_giving=100)
    bad = constituents.add_constituent(store, "Bo", "Kim")
    store.execute(
        "UPDATE constituents SET lifetime_giving = 'lots' WHERE constituent_id = ?", (bad,)
    )

    result = scoring.run_scoring(store, [good, bad, "missing-id"], batch_size=2, as_of=AS_OF)

    assert result.total == 3
    assert result.scored == 1
    assert result.batches == 2
    assert {e.constituent_id for e in result.errors} == {bad, "missing-id"}
    assert scoring.get_latest_score(store, good) is not None
    assert scoring.get_latest_score(store, bad) is None


def test_negative_aggregate_is_a_per_item_error(tmp_path: Path) -> None:
    store = _store(tmp_path)
    good = constituents.add_constituent(store, "Ana", "Ruiz", lifetime_giving=100)
    bad = constituents.add_constituent(store, "Bo", "Kim")
    store.execute(
        "UPDATE constituents SET lifetime_giving = -250 WHERE constituent_id = ?", (bad,)
    )

    result = scoring.run_scoring(store, [good, bad], as_of=AS_OF)

    assert result.scored == 1
    assert [e.constituent_id for e in result.errors] == [bad]
    assert "lifetime_giving" in result.errors[0].message
    assert scoring.get_latest_score(store, bad) is None


@pytest.mark.parametrize(
    "kwargs",
    [
        {"lifetime_giving": -250.0},
        {"lifetime_ticket_spend": -1},
        {"lifetime_giving": float("nan")},
    ],
)
def test_add_constituent_rejects_bad_aggregates(tmp_path: Path, kwargs) -> None:
    store = _store(tmp_path)

    with pytest.raises(ValidationError):
        constituents.add_constituent(store, "Bo", "Kim", **kwargs)
    assert store.fetch_one("SELECT COUNT(*) AS n FROM constituents")["n"] == 0


def test_null_aggregates_score_as_zero(tmp_path: Path) -> None:
    store = _store(tmp_path)
    constituent_id = constituents.add_constituent(store, "Ana", "Ruiz")
    store.execute(
        "UPDATE constituents SET lifetime_giving = NULL, lifetime_ticket_spend = NULL "
        "WHERE constituent_id = ?",
        (constituent_id,),
    )

    result = scoring.run_scoring(store, [constituent_id], as_of=AS_OF)

    assert result.scored == 1
    row = scoring.get_latest_score(store, constituent_id)
    assert row["capacity_estimate"] == 0
    assert row["ticket_propensity"] == 0


def test_deadline_stops_between_batches(tmp_path: Path) -> None:
    store = _store(tmp_path)
    ids = [constituents.add_constituent(store, "Fan", str(i)) for i in range(3)]
    # Start, first batch check, then every later reading is past the deadline.
    clock = itertools.chain([0.0, 0.0], itertools.repeat(100.0)).__next__

    result = scoring.run_scoring(
        store, ids, batch_size=1, as_of=AS_OF, deadline_seconds=10, clock=clock
    )

    assert result.interrupted is True
    assert result.batches == 1
    assert result.scored == 1
    count = store.fetch_one("SELECT COUNT(*) AS n FROM scores")
    assert count["n"] == 1


def test_scoring_run_event(tmp_path: Path) -> None:
    store = _store(tmp_path)
    constituents.add_constituent(store, "Ana", "Ruiz")
    events = EventLogger(path=tmp_path / "events.ndjson", workspace="test")

    scoring.run_scoring(store, as_of=AS_OF, events=events)

    lines = (tmp_path / "events.ndjson").read_text().splitlines()
    assert len(lines) == 1
    assert '"event_type": "scoring_run"' in lines[0]


def test_invalid_batch_size(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with pytest.raises(ValidationError):
        scoring.run_scoring(store, batch_size=0)


def test_empty_store_scores_nothing(tmp_path: Path) -> None:
    result = scoring.run_scoring(_store(tmp_path), as_of=AS_OF)
    assert result.total == 0
    assert result.scored == 0
