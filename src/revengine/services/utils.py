from __future__ import annotations

from datetime import UTC, date, datetime


def utc_now() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).replace(microsecond=0).isoformat()


def as_of_date(value: date | datetime | None) -> date:
    if value is None:
        return utc_now().date()
    if isinstance(value, datetime):
        return value.astimezone(UTC).date() if value.tzinfo else value.date()
    return value


def join_roles(roles: tuple[str, ...] | list[str]) -> str | None:
    cleaned = [role.strip() for role in roles if role and role.strip()]
    return ",".join(cleaned) if cleaned else None
