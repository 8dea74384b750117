"""Pydantic schemas for spontaneous presence endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from sidequests.domain.presence.models import Participant, Presence
from sidequests.domain.social.models import Profile


class StartPresencePayload(BaseModel):
	"""Body of ``POST /spontaneous/start``.

	``visibility`` is validated by the lifecycle manager so an unknown value
	surfaces as ``invalid_visibility`` rather than a generic schema error.
	"""

	latitude: float = Field(..., ge=-90.0, le=90.0)
	longitude: float = Field(..., ge=-180.0, le=180.0)
	accuracy: Optional[float] = Field(default=None, ge=0)
	status_text: Optional[str] = Field(default=None, max_length=280)
	visibility: Optional[str] = None


class LocationPayload(BaseModel):
	latitude: float = Field(..., ge=-90.0, le=90.0)
	longitude: float = Field(..., ge=-180.0, le=180.0)
	accuracy: Optional[float] = Field(default=None, ge=0)


class ParticipatePayload(BaseModel):
	presence_id: str = Field(..., min_length=1)
	status: Optional[Literal["coming", "there"]] = None


class ProfileOut(BaseModel):
	id: str
	name: Optional[str] = None
	profile_picture: Optional[str] = None

	@classmethod
	def from_domain(cls, profile: Profile) -> "ProfileOut":
		return cls(id=profile.id, name=profile.name, profile_picture=profile.profile_picture)


class PresenceOut(BaseModel):
	id: str
	user_id: str
	status_text: str
	latitude: float
	longitude: float
	accuracy: Optional[float] = None
	visibility: str
	is_active: bool
	last_seen: datetime
	expires_at: datetime
	user: Optional[ProfileOut] = None

	@classmethod
	def from_domain(cls, presence: Presence, profile: Optional[Profile] = None) -> "PresenceOut":
		return cls(
			id=presence.id,
			user_id=presence.user_id,
			status_text=presence.status_text,
			latitude=presence.latitude,
			longitude=presence.longitude,
			accuracy=presence.accuracy,
			visibility=presence.visibility.value,
			is_active=presence.is_active,
			last_seen=presence.last_seen,
			expires_at=presence.expires_at,
			user=ProfileOut.from_domain(profile) if profile is not None else None,
		)


class StopResponse(BaseModel):
	stopped: bool
	presence: Optional[PresenceOut] = None


class ParticipationResponse(BaseModel):
	presence_id: str
	status: Optional[Literal["coming", "there"]] = None


class ParticipantOut(BaseModel):
	user_id: str
	status: Literal["coming", "there"]

	@classmethod
	def from_domain(cls, participant: Participant) -> "ParticipantOut":
		return cls(user_id=participant.user_id, status=participant.status.value)
