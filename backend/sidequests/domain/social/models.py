"""Domain models for friendships and user profiles."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional


class FriendshipStatus(str, Enum):
	"""Friendship states tracked in the database. Only accepted edges are connections."""

	PENDING = "pending"
	ACCEPTED = "accepted"
	REJECTED = "rejected"


@dataclass(slots=True, frozen=True)
class Friendship:
	"""Undirected edge between two users."""

	user_id_1: str
	user_id_2: str
	status: FriendshipStatus

	def other(self, user_id: str) -> str:
		return self.user_id_2 if self.user_id_1 == user_id else self.user_id_1

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "Friendship":
		return cls(
			user_id_1=str(record["user_id_1"]),
			user_id_2=str(record["user_id_2"]),
			status=FriendshipStatus(record["status"]),
		)


@dataclass(slots=True, frozen=True)
class Profile:
	"""Public slice of a user record shown next to their broadcast."""

	id: str
	name: Optional[str] = None
	profile_picture: Optional[str] = None

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "Profile":
		return cls(
			id=str(record["id"]),
			name=record.get("name"),
			profile_picture=record.get("profile_picture"),
		)
