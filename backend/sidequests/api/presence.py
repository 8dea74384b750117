"""REST API surface for spontaneous presences."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from sidequests.container import Services, get_services
from sidequests.domain.presence.exceptions import NotFound, UpstreamUnavailable
from sidequests.domain.presence.models import Presence, StartPresenceRequest
from sidequests.domain.presence.schemas import (
	LocationPayload,
	ParticipantOut,
	ParticipatePayload,
	ParticipationResponse,
	PresenceOut,
	StartPresencePayload,
	StopResponse,
)
from sidequests.infra.auth import AuthenticatedUser, get_current_user
from sidequests.infra.rate_limit import RateLimitExceeded, allow
from sidequests.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/spontaneous")


def clamp_radius(radius: Optional[float]) -> float:
	if radius is None:
		return float(settings.nearby_default_radius_miles)
	low = float(settings.nearby_min_radius_miles)
	high = float(settings.nearby_max_radius_miles)
	return min(max(float(radius), low), high)


async def _with_profiles(services: Services, presences: List[Presence]) -> List[PresenceOut]:
	"""Attach broadcaster profiles; a failed lookup leaves them out."""
	try:
		profiles = await services.profiles.get_profiles(p.user_id for p in presences)
	except UpstreamUnavailable:
		logger.warning("profile lookup degraded for %d presences", len(presences))
		profiles = {}
	return [PresenceOut.from_domain(p, profiles.get(p.user_id)) for p in presences]


async def _enforce(kind: str, user_id: str, limit: int) -> None:
	if settings.is_dev():
		limit *= 10
	if not await allow(kind, user_id, limit=limit):
		raise RateLimitExceeded()


@router.post("/start", response_model=PresenceOut)
async def start_presence(
	payload: StartPresencePayload,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> PresenceOut:
	request = StartPresenceRequest(
		user_id=auth_user.id,
		latitude=payload.latitude,
		longitude=payload.longitude,
		status_text=payload.status_text,
		accuracy=payload.accuracy,
		visibility=payload.visibility,  # type: ignore[arg-type]
	)
	presence = await services.lifecycle.start(request)
	session = await services.sessions.open(auth_user.id)
	session.report_location(payload.latitude, payload.longitude, payload.accuracy, pushed=True)
	await session.sync(presence)
	return PresenceOut.from_domain(presence)


@router.post("/update-location", response_model=PresenceOut)
async def update_location(
	payload: LocationPayload,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> PresenceOut:
	await _enforce("presence_location", auth_user.id, settings.location_update_rate_limit)
	presence = await services.lifecycle.update_location(
		auth_user.id,
		payload.latitude,
		payload.longitude,
		payload.accuracy,
	)
	session = services.sessions.get(auth_user.id)
	if session is not None:
		# A fresh report also revives a refresh loop that went idle.
		session.report_location(payload.latitude, payload.longitude, payload.accuracy, pushed=True)
		await session.sync(presence)
	return PresenceOut.from_domain(presence)


@router.post("/stop", response_model=StopResponse)
async def stop_presence(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> StopResponse:
	# Cancel the refresh timer before deactivating.
	await services.sessions.end(auth_user.id)
	stopped = await services.lifecycle.stop(auth_user.id)
	return StopResponse(stopped=True, presence=PresenceOut.from_domain(stopped) if stopped else None)


@router.get("/me", response_model=Optional[PresenceOut])
async def my_presence(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> Optional[PresenceOut]:
	try:
		presence = await services.lifecycle.get_my_presence(auth_user.id)
	except NotFound:
		return None
	return (await _with_profiles(services, [presence]))[0]


@router.get("/nearby", response_model=List[PresenceOut])
async def nearby_presences(
	lat: float = Query(..., ge=-90.0, le=90.0),
	lng: float = Query(..., ge=-180.0, le=180.0),
	radius: Optional[float] = Query(default=None, gt=0),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> List[PresenceOut]:
	await _enforce("presence_nearby", auth_user.id, settings.nearby_rate_limit)
	try:
		presences = await services.nearby.get_nearby_presences(auth_user.id, lat, lng, clamp_radius(radius))
	except UpstreamUnavailable:
		logger.warning("nearby lookup degraded to empty for viewer=%s", auth_user.id)
		return []
	return await _with_profiles(services, presences)


@router.post("/participate", response_model=ParticipationResponse)
async def participate(
	payload: ParticipatePayload,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> ParticipationResponse:
	status = await services.participants.set_participation(payload.presence_id, auth_user.id, payload.status)
	return ParticipationResponse(presence_id=payload.presence_id, status=status.value if status else None)


@router.get("/{presence_id}/participants", response_model=List[ParticipantOut])
async def list_participants(
	presence_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	services: Services = Depends(get_services),
) -> List[ParticipantOut]:
	participants = await services.participants.list_participants(presence_id, auth_user.id)
	return [ParticipantOut.from_domain(p) for p in participants]
