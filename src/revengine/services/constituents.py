from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from revengine.domain import rules
from revengine.domain.models import Constituent, Opportunity
from revengine.domain.stages import OpportunityStatus, OpportunityType, ProposalStatus
from revengine.services.utils import join_roles, to_iso, utc_now
from revengine.store.sqlite import SqliteSession, SqliteStore


def add_constituent(
    store: SqliteStore,
    first_name: str,
    last_name: str,
    email: str | None = None,
    is_donor: bool = False,
    is_ticket_holder: bool = False,
    is_corporate: bool = False,
    lifetime_giving: float = 0,
    lifetime_ticket_spend: float = 0,
    sport_affinity: str | None = None,
) -> str:
    rules.require(first_name, "first_name")
    rules.require(last_name, "last_name")
    lifetime_giving = rules.validate_amount(lifetime_giving, "lifetime_giving")
    lifetime_ticket_spend = rules.validate_amount(lifetime_ticket_spend, "lifetime_ticket_spend")

    now = to_iso(utc_now())
    constituent_id = str(uuid4())
    store.execute(
        "INSERT INTO constituents (constituent_id, first_name, last_name, email, is_donor, "
        "is_ticket_holder, is_corporate, lifetime_giving, lifetime_ticket_spend, sport_affinity, "
        "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            constituent_id,
            first_name,
            last_name,
            email,
            int(is_donor),
            int(is_ticket_holder),
            int(is_corporate),
            lifetime_giving,
            lifetime_ticket_spend,
            sport_affinity,
            now,
            now,
        ),
    )
    return constituent_id


def get_constituent(store: SqliteStore | SqliteSession, constituent_id: str) -> Constituent:
    row = store.fetch_one(
        "SELECT * FROM constituents WHERE constituent_id = ?", (constituent_id,)
    )
    if row is None:
        raise rules.ValidationError(f"Constituent not found: {constituent_id}")
    return Constituent.from_row(row)


def add_opportunity(
    store: SqliteStore,
    constituent_id: str,
    opportunity_type: str,
    amount: float,
    status: str = OpportunityStatus.ACTIVE.value,
    owner_role: str | None = None,
    now: datetime | None = None,
) -> str:
    """Insert an opportunity without routing it (imports, fixtures)."""
    rules.validate_enum(opportunity_type, [t.value for t in OpportunityType], "opportunity_type")
    rules.validate_enum(status, [s.value for s in OpportunityStatus], "status")
    amount = rules.validate_amount(amount)

    with store.session() as session:
        get_constituent(session, constituent_id)
        return insert_opportunity(
            session,
            constituent_id=constituent_id,
            opportunity_type=opportunity_type,
            amount=amount,
            status=status,
            owner_role=owner_role,
            secondary_owner_roles=(),
            now=now or utc_now(),
        )


def insert_opportunity(
    session: SqliteSession,
    *,
    constituent_id: str,
    opportunity_type: str,
    amount: float,
    status: str,
    owner_role: str | None,
    secondary_owner_roles: tuple[str, ...],
    now: datetime,
) -> str:
    opportunity_id = str(uuid4())
    stamp = to_iso(now)
    session.execute(
        "INSERT INTO opportunities (opportunity_id, constituent_id, opportunity_type, status, amount, "
        "owner_role, secondary_owner_roles, owner_user_id, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            opportunity_id,
            constituent_id,
            opportunity_type,
            status,
            amount,
            owner_role,
            join_roles(secondary_owner_roles),
            None,
            stamp,
            stamp,
        ),
    )
    return opportunity_id


def get_opportunity(store: SqliteStore | SqliteSession, opportunity_id: str) -> Opportunity:
    row = store.fetch_one(
        "SELECT * FROM opportunities WHERE opportunity_id = ?", (opportunity_id,)
    )
    if row is None:
        raise rules.ValidationError(f"Opportunity not found: {opportunity_id}")
    return Opportunity.from_row(row)


def set_opportunity_status(
    store: SqliteStore, opportunity_id: str, status: str, now: datetime | None = None
) -> None:
    rules.validate_enum(status, [s.value for s in OpportunityStatus], "status")
    changed = store.execute(
        "UPDATE opportunities SET status = ?, updated_at = ? WHERE opportunity_id = ?",
        (status, to_iso(now or utc_now()), opportunity_id),
    )
    if not changed:
        raise rules.ValidationError(f"Opportunity not found: {opportunity_id}")


def add_proposal(
    store: SqliteStore,
    opportunity_id: str,
    amount: float,
    status: str = ProposalStatus.DRAFT.value,
    now: datetime | None = None,
) -> str:
    rules.validate_enum(status, [s.value for s in ProposalStatus], "status")
    amount = rules.validate_amount(amount)
    stamp = to_iso(now or utc_now())
    proposal_id = str(uuid4())
    with store.session() as session:
        opportunity = get_opportunity(session, opportunity_id)
        session.execute(
            "INSERT INTO proposals (proposal_id, opportunity_id, constituent_id, status, amount, "
            "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                proposal_id,
                opportunity.opportunity_id,
                opportunity.constituent_id,
                status,
                amount,
                stamp,
                stamp,
            ),
        )
    return proposal_id
