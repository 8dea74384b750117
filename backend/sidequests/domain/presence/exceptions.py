"""Domain-level exceptions for presences and visibility."""

from __future__ import annotations


class PresenceError(Exception):
	"""Base class for presence engine errors."""

	reason: str = "unknown"

	def __init__(self, reason: str | None = None) -> None:
		super().__init__(reason or self.reason)
		if reason:
			self.reason = reason


class NotFound(PresenceError):
	reason = "not_found"


class UpstreamUnavailable(PresenceError):
	reason = "upstream_unavailable"


class InvalidVisibility(PresenceError):
	reason = "invalid_visibility"


class StaleWrite(PresenceError):
	"""An incoming row is older than state already applied. Never user-facing."""

	reason = "stale_write"


class ParticipationForbidden(PresenceError):
	reason = "forbidden"
