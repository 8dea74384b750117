"""REST API surface for scheduled events and RSVPs."""

from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, status

from sidequests.container import Services, get_services
from sidequests.domain.events.schemas import EventCreatePayload, EventOut, RSVPOut
from sidequests.domain.presence.exceptions import UpstreamUnavailable
from sidequests.infra.auth import AuthenticatedUser, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events")


@router.get("", response_model=List[EventOut])
async def list_events(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> List[EventOut]:
	try:
		events = await services.events.list_visible(auth_user.id)
	except UpstreamUnavailable:
		logger.warning("event list degraded to empty for viewer=%s", auth_user.id)
		return []
	return [EventOut.from_domain(event) for event in events]


@router.post("", response_model=EventOut, status_code=status.HTTP_201_CREATED)
async def create_event(
	payload: EventCreatePayload,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> EventOut:
	event = await services.events.create(
		auth_user.id,
		title=payload.title,
		latitude=payload.latitude,
		longitude=payload.longitude,
		date=payload.date,
		type=payload.type,
		invitees=[i for i in payload.invitees if i and i != auth_user.id],
	)
	return EventOut.from_domain(event)


@router.get("/{event_id}", response_model=EventOut)
async def get_event(
	event_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> EventOut:
	return EventOut.from_domain(await services.events.get_visible(auth_user.id, event_id))


@router.get("/{event_id}/invitees", response_model=List[str])
async def get_event_invitees(
	event_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> List[str]:
	return await services.events.invitees(auth_user.id, event_id)


@router.post("/{event_id}/rsvp", response_model=RSVPOut)
async def rsvp(
	event_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> RSVPOut:
	return RSVPOut.from_domain(await services.events.rsvp(auth_user.id, event_id))


@router.delete("/{event_id}/rsvp", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_rsvp(
	event_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> None:
	await services.events.cancel_rsvp(auth_user.id, event_id)


@router.get("/{event_id}/rsvps", response_model=List[RSVPOut])
async def list_rsvps(
	event_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> List[RSVPOut]:
	return [RSVPOut.from_domain(r) for r in await services.events.rsvps(auth_user.id, event_id)]
