"""Constituent scoring.

Derives renewal risk, ask readiness, ticket and corporate propensity, and a
capacity estimate for each constituent, then upserts one row per constituent
per as-of date. Work is chunked into independently committed batches; a
constituent that cannot be scored is reported and skipped.
"""

from __future__ import annotations

import math
import sqlite3
import time
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any

from revengine.domain.models import Constituent
from revengine.domain.rules import ValidationError
from revengine.domain.stages import AskReadiness, OpportunityStatus, RenewalRisk
from revengine.observability import get_logger
from revengine.services.events import EventLogger
from revengine.services.interactions import latest_interaction
from revengine.services.utils import as_of_date, to_iso, utc_now
from revengine.store.sqlite import SqliteSession, SqliteStore

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 100
TICKET_SPEND_PER_POINT = 500
CAPACITY_MULTIPLIER = 10


class ScoringInputError(ValueError):
    pass


@dataclass(frozen=True)
class ScoringError:
    constituent_id: str
    message: str


@dataclass
class ScoringResult:
    total: int
    scored: int = 0
    errors: list[ScoringError] = field(default_factory=list)
    duration_ms: int = 0
    batches: int = 0
    interrupted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def calculate_renewal_risk(days_since_touch: int | None) -> str:
    if days_since_touch is None or days_since_touch > 180:
        return RenewalRisk.HIGH.value
    if days_since_touch > 90:
        return RenewalRisk.MEDIUM.value
    return RenewalRisk.LOW.value


def calculate_ask_readiness(has_active_opportunity: bool, days_since_touch: int | None) -> str:
    if has_active_opportunity and days_since_touch is not None and days_since_touch < 30:
        return AskReadiness.READY.value
    return AskReadiness.NOT_READY.value


def calculate_ticket_propensity(lifetime_ticket_spend: float) -> int:
    points = math.floor(lifetime_ticket_spend / TICKET_SPEND_PER_POINT)
    return min(100, max(0, points))


def calculate_corporate_propensity(is_corporate: bool) -> int:
    # Placeholder until engagement metrics feed a multi-factor model.
    return 100 if is_corporate else 0


def calculate_capacity_estimate(lifetime_giving: float) -> float:
    # Placeholder until a wealth-screening integration exists.
    return lifetime_giving * CAPACITY_MULTIPLIER


def score_constituent(
    session: SqliteSession, constituent: Constituent, as_of: date
) -> dict[str, Any]:
    ticket_spend = _aggregate(constituent.lifetime_ticket_spend, "lifetime_ticket_spend")
    giving = _aggregate(constituent.lifetime_giving, "lifetime_giving")

    last = latest_interaction(session, constituent.constituent_id)
    days_since_touch = None
    if last is not None:
        # Interactions dated after the as-of date count as touched today.
        days_since_touch = max(0, (as_of - last.occurred_at.date()).days)

    active = session.fetch_one(
        "SELECT 1 FROM opportunities WHERE constituent_id = ? AND status = ? LIMIT 1",
        (constituent.constituent_id, OpportunityStatus.ACTIVE.value),
    )

    now = to_iso(utc_now())
    return {
        "constituent_id": constituent.constituent_id,
        "as_of_date": as_of.isoformat(),
        "renewal_risk": calculate_renewal_risk(days_since_touch),
        "ask_readiness": calculate_ask_readiness(active is not None, days_since_touch),
        "ticket_propensity": calculate_ticket_propensity(ticket_spend),
        "corporate_propensity": calculate_corporate_propensity(constituent.is_corporate),
        "capacity_estimate": calculate_capacity_estimate(giving),
        "last_touch_at": to_iso(last.occurred_at) if last else None,
        "days_since_touch": days_since_touch,
        "created_at": now,
        "updated_at": now,
    }


def run_scoring(
    store: SqliteStore,
    constituent_ids: Iterable[str] | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    as_of: date | None = None,
    deadline_seconds: float | None = None,
    events: EventLogger | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> ScoringResult:
    if batch_size < 1:
        raise ValidationError("batch_size must be a positive integer.")
    started = clock()
    as_of = as_of_date(as_of)

    ids = _target_ids(store, constituent_ids)
    result = ScoringResult(total=len(ids))
    if not ids:
        logger.info("scoring_skipped", reason="no constituents")
        result.duration_ms = _elapsed_ms(clock, started)
        return result

    batches = [ids[i : i + batch_size] for i in range(0, len(ids), batch_size)]
    logger.info(
        "scoring_started", total=len(ids), batches=len(batches), as_of=as_of.isoformat()
    )

    for number, batch in enumerate(batches, start=1):
        if deadline_seconds is not None and clock() - started > deadline_seconds:
            # Earlier batches are already committed; stop between batches.
            result.interrupted = True
            logger.warning(
                "scoring_deadline_exceeded",
                completed_batches=number - 1,
                remaining=sum(len(b) for b in batches[number - 1 :]),
            )
            break
        rows = _score_batch(store, batch, as_of, result)
        if rows:
            try:
                store.upsert_scores(rows)
            except sqlite3.Error as exc:
                logger.error("scoring_batch_upsert_failed", batch=number, error=str(exc))
                result.errors.extend(
                    ScoringError(row["constituent_id"], f"Upsert failed: {exc}") for row in rows
                )
            else:
                result.scored += len(rows)
        result.batches += 1
        logger.debug("scoring_batch_complete", batch=number, of=len(batches), rows=len(rows))

    result.duration_ms = _elapsed_ms(clock, started)
    logger.info(
        "scoring_finished",
        total=result.total,
        scored=result.scored,
        errors=len(result.errors),
        duration_ms=result.duration_ms,
        interrupted=result.interrupted,
    )
    if events is not None:
        events.log(
            event_type="scoring_run",
            entity_type="scores",
            entity_id=None,
            details={
                "as_of_date": as_of.isoformat(),
                "total": result.total,
                "scored": result.scored,
                "duration_ms": result.duration_ms,
                "interrupted": result.interrupted,
                "errors": [f"{e.constituent_id}: {e.message}" for e in result.errors],
            },
        )
    return result


def get_latest_score(store: SqliteStore | SqliteSession, constituent_id: str) -> sqlite3.Row | None:
    return store.fetch_one(
        "SELECT * FROM scores WHERE constituent_id = ? ORDER BY as_of_date DESC LIMIT 1",
        (constituent_id,),
    )


def _score_batch(
    store: SqliteStore, batch: list[str], as_of: date, result: ScoringResult
) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    placeholders = ", ".join("?" for _ in batch)
    with store.session() as session:
        found = {
            row["constituent_id"]: row
            for row in session.fetch_all(
                f"SELECT * FROM constituents WHERE constituent_id IN ({placeholders})", batch
            )
        }
        for constituent_id in batch:
            row = found.get(constituent_id)
            if row is None:
                result.errors.append(ScoringError(constituent_id, "Constituent not found"))
                continue
            try:
                rows.append(score_constituent(session, Constituent.from_row(row), as_of))
            except (ValueError, TypeError, ArithmeticError, sqlite3.Error) as exc:
                logger.warning("scoring_failed", constituent_id=constituent_id, error=str(exc))
                result.errors.append(ScoringError(constituent_id, str(exc)))
    return rows


def _target_ids(store: SqliteStore, constituent_ids: Iterable[str] | None) -> list[str]:
    requested = [cid for cid in constituent_ids or [] if cid]
    if requested:
        # dict.fromkeys dedupes while keeping caller order.
        return list(dict.fromkeys(requested))
    rows = store.fetch_all("SELECT constituent_id FROM constituents ORDER BY constituent_id")
    return [row["constituent_id"] for row in rows]


def _aggregate(value: Any, field_name: str) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise ScoringInputError(f"{field_name} must be numeric, got a boolean.")
    try:
        amount = float(value)
    except (TypeError, ValueError) as exc:
        raise ScoringInputError(f"{field_name} must be numeric, got {value!r}.") from exc
    if not math.isfinite(amount):
        raise ScoringInputError(f"{field_name} is not a finite number.")
    if amount < 0:
        raise ScoringInputError(f"{field_name} must not be negative, got {amount}.")
    return amount


def _elapsed_ms(clock: Callable[[], float], started: float) -> int:
    return int((clock() - started) * 1000)
