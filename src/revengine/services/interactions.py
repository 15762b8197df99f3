from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from revengine.domain import rules
from revengine.domain.models import Interaction
from revengine.domain.stages import InteractionType
from revengine.services.utils import to_iso, utc_now
from revengine.store.sqlite import SqliteSession, SqliteStore


class InteractionError(RuntimeError):
    pass


def log_interaction(
    store: SqliteStore,
    constituent_id: str,
    interaction_type: str,
    occurred_at: datetime | None = None,
    opportunity_id: str | None = None,
    notes: str | None = None,
) -> str:
    rules.validate_enum(interaction_type, [t.value for t in InteractionType], "interaction_type")

    now = to_iso(utc_now())
    interaction_id = str(uuid4())

    with store.session() as session:
        target = session.fetch_one(
            "SELECT constituent_id FROM constituents WHERE constituent_id = ?",
            (constituent_id,),
        )
        if target is None:
            raise InteractionError(f"Constituent not found: {constituent_id}")
        if opportunity_id is not None:
            opp = session.fetch_one(
                "SELECT constituent_id FROM opportunities WHERE opportunity_id = ?",
                (opportunity_id,),
            )
            if opp is None or opp["constituent_id"] != constituent_id:
                raise InteractionError("Opportunity does not belong to this constituent.")

        session.execute(
            "INSERT INTO interactions (interaction_id, constituent_id, interaction_type, occurred_at, "
            "opportunity_id, notes, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                interaction_id,
                constituent_id,
                interaction_type,
                to_iso(occurred_at) if occurred_at else now,
                opportunity_id,
                notes,
                now,
            ),
        )
    return interaction_id


def latest_interaction(
    store: SqliteStore | SqliteSession, constituent_id: str
) -> Interaction | None:
    row = store.fetch_one(
        "SELECT * FROM interactions WHERE constituent_id = ? ORDER BY occurred_at DESC LIMIT 1",
        (constituent_id,),
    )
    return Interaction.from_row(row) if row else None
