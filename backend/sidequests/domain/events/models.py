"""Domain models for scheduled events."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, FrozenSet, Mapping, Optional


def _as_datetime(value: Any) -> Optional[datetime]:
	if value is None or value == "":
		return None
	if isinstance(value, datetime):
		parsed = value
	else:
		parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
	return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(slots=True, frozen=True)
class Event:
	"""A scheduled gathering. ``date`` of None marks an undated gathering."""

	id: str
	host_user_id: str
	latitude: float
	longitude: float
	title: str = ""
	type: Optional[str] = None
	date: Optional[datetime] = None
	invitee_set: FrozenSet[str] = field(default_factory=frozenset)

	def is_upcoming(self, now: datetime) -> bool:
		return self.date is None or self.date >= now

	def with_invitees(self, invitees) -> "Event":
		return replace(self, invitee_set=frozenset(str(uid) for uid in invitees))

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "Event":
		return cls(
			id=str(record["id"]),
			host_user_id=str(record["user_id"]),
			latitude=float(record["latitude"]),
			longitude=float(record["longitude"]),
			title=str(record.get("title") or ""),
			type=record.get("type"),
			date=_as_datetime(record.get("date")),
		)


@dataclass(slots=True, frozen=True)
class RSVP:
	event_id: str
	user_id: str
	created_at: Optional[datetime] = None

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "RSVP":
		return cls(
			event_id=str(record["event_id"]),
			user_id=str(record["user_id"]),
			created_at=_as_datetime(record.get("created_at")),
		)
