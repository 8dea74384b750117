"""Domain models for spontaneous presences."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from sidequests.domain.presence.exceptions import InvalidVisibility


class PresenceVisibility(str, Enum):
	"""Who may discover a broadcast."""

	FRIENDS = "friends"
	PUBLIC = "public"

	@classmethod
	def parse(cls, value: object) -> "PresenceVisibility":
		if isinstance(value, cls):
			return value
		try:
			return cls(str(value))
		except ValueError:
			raise InvalidVisibility(f"invalid_visibility:{value}") from None


class ParticipantStatus(str, Enum):
	COMING = "coming"
	THERE = "there"


class ChangeType(str, Enum):
	INSERT = "INSERT"
	UPDATE = "UPDATE"
	DELETE = "DELETE"


def _as_datetime(value: Any) -> datetime:
	if isinstance(value, datetime):
		return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
	parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
	return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(slots=True, frozen=True)
class Presence:
	"""One broadcast row. Inactive rows are kept as an audit trail."""

	id: str
	user_id: str
	status_text: str
	latitude: float
	longitude: float
	accuracy: Optional[float]
	visibility: PresenceVisibility
	is_active: bool
	last_seen: datetime
	expires_at: datetime

	@property
	def version(self) -> datetime:
		return self.last_seen

	def is_expired(self, now: datetime) -> bool:
		return self.expires_at <= now

	def moved_to(self, latitude: float, longitude: float, accuracy: Optional[float], seen_at: datetime) -> "Presence":
		return replace(self, latitude=latitude, longitude=longitude, accuracy=accuracy, last_seen=seen_at)

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "Presence":
		accuracy = record.get("accuracy")
		return cls(
			id=str(record["id"]),
			user_id=str(record["user_id"]),
			status_text=str(record.get("status_text") or ""),
			latitude=float(record["latitude"]),
			longitude=float(record["longitude"]),
			accuracy=float(accuracy) if accuracy is not None else None,
			visibility=PresenceVisibility.parse(record.get("visibility") or PresenceVisibility.FRIENDS),
			is_active=bool(record["is_active"]),
			last_seen=_as_datetime(record["last_seen"]),
			expires_at=_as_datetime(record["expires_at"]),
		)

	def to_dict(self) -> dict[str, Any]:
		data = asdict(self)
		data["visibility"] = self.visibility.value
		data["last_seen"] = self.last_seen.isoformat()
		data["expires_at"] = self.expires_at.isoformat()
		return data


@dataclass(slots=True, frozen=True)
class Participant:
	presence_id: str
	user_id: str
	status: ParticipantStatus
	updated_at: Optional[datetime] = None

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "Participant":
		updated_at = record.get("updated_at")
		return cls(
			presence_id=str(record["presence_id"]),
			user_id=str(record["user_id"]),
			status=ParticipantStatus(record["status"]),
			updated_at=_as_datetime(updated_at) if updated_at is not None else None,
		)


@dataclass(slots=True, frozen=True)
class ChangeNotification:
	"""A row-level change on the presence table as delivered by the feed."""

	type: ChangeType
	new: Optional[Presence] = None
	old: Optional[Presence] = None

	@property
	def row(self) -> Presence:
		row = self.new if self.new is not None else self.old
		if row is None:
			raise ValueError("change notification carries no row")
		return row

	@property
	def presence_id(self) -> str:
		return self.row.id

	@property
	def user_id(self) -> str:
		return self.row.user_id

	def to_json(self) -> str:
		return json.dumps(
			{
				"type": self.type.value,
				"new": self.new.to_dict() if self.new else None,
				"old": self.old.to_dict() if self.old else None,
			},
			separators=(",", ":"),
		)

	@classmethod
	def from_json(cls, raw: str | bytes) -> "ChangeNotification":
		data = json.loads(raw)
		return cls(
			type=ChangeType(data["type"]),
			new=Presence.from_record(data["new"]) if data.get("new") else None,
			old=Presence.from_record(data["old"]) if data.get("old") else None,
		)


@dataclass(slots=True, frozen=True)
class StartPresenceRequest:
	user_id: str
	latitude: float
	longitude: float
	status_text: Optional[str] = None
	accuracy: Optional[float] = None
	visibility: Optional[PresenceVisibility] = None
