"""Pydantic schemas for event endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from sidequests.domain.events.models import RSVP, Event


class EventCreatePayload(BaseModel):
	title: str = Field(..., min_length=1, max_length=200)
	latitude: float = Field(..., ge=-90.0, le=90.0)
	longitude: float = Field(..., ge=-180.0, le=180.0)
	date: Optional[datetime] = None
	type: Optional[str] = Field(default=None, max_length=50)
	invitees: List[str] = Field(default_factory=list)


class EventOut(BaseModel):
	id: str
	host_user_id: str
	title: str
	type: Optional[str] = None
	date: Optional[datetime] = None
	latitude: float
	longitude: float
	invite_only: bool = False

	@classmethod
	def from_domain(cls, event: Event) -> "EventOut":
		return cls(
			id=event.id,
			host_user_id=event.host_user_id,
			title=event.title,
			type=event.type,
			date=event.date,
			latitude=event.latitude,
			longitude=event.longitude,
			invite_only=bool(event.invitee_set),
		)


class RSVPOut(BaseModel):
	event_id: str
	user_id: str
	created_at: Optional[datetime] = None

	@classmethod
	def from_domain(cls, rsvp: RSVP) -> "RSVPOut":
		return cls(event_id=rsvp.event_id, user_id=rsvp.user_id, created_at=rsvp.created_at)
