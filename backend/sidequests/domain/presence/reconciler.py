"""Merge a nearby snapshot, the presence change feed and the viewer's own
broadcast into one de-duplicated live view.

Sources arrive in any order. Every mutation is keyed by presence id and
guarded by the row version (``last_seen``), so re-applying a notification is a
no-op and an older row never replaces a newer one. Deactivation and deletion
are terminal for an id. Friends-only rows from the feed are admitted only
after a social-graph check (or a full snapshot refresh); when that check
cannot complete the row stays out until the next refresh.

The feed carries every presence change in the system, so the view only keeps
bookkeeping for ids it shows, ids tombstoned since its last snapshot, and ids
touched while a snapshot query is in flight.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Literal, Optional

from sidequests.domain.geo import haversine_miles
from sidequests.domain.presence.exceptions import StaleWrite, UpstreamUnavailable
from sidequests.domain.presence.models import ChangeNotification, ChangeType, Presence, PresenceVisibility
from sidequests.domain.visibility import VisibilityResolver
from sidequests.obs import metrics as obs_metrics
from sidequests.settings import settings

logger = logging.getLogger(__name__)

SnapshotFetcher = Callable[[], Awaitable[List[Presence]]]
ChangeCallback = Callable[[str, object], Awaitable[None]]
SelfCallback = Callable[[Optional[Presence]], Awaitable[None]]
Revalidate = Literal["check", "refresh"]


class LiveViewReconciler:
	def __init__(
		self,
		viewer_id: str,
		resolver: VisibilityResolver,
		*,
		latitude: float,
		longitude: float,
		radius_miles: float,
		fetch_snapshot: Optional[SnapshotFetcher] = None,
		revalidate: Revalidate = "check",
		on_change: Optional[ChangeCallback] = None,
		on_self_change: Optional[SelfCallback] = None,
		tombstone_limit: Optional[int] = None,
	) -> None:
		if revalidate == "refresh" and fetch_snapshot is None:
			raise ValueError("refresh revalidation needs a snapshot fetcher")
		self.viewer_id = viewer_id
		self.latitude = latitude
		self.longitude = longitude
		self.radius_miles = radius_miles
		self._resolver = resolver
		self._fetch_snapshot = fetch_snapshot
		self._revalidate = revalidate
		self._on_change = on_change
		self._on_self_change = on_self_change
		self._tombstone_limit = max(1, int(tombstone_limit or settings.reconciler_tombstone_limit))

		self._visible: Dict[str, Presence] = {}
		self._versions: Dict[str, datetime] = {}
		self._touched: Dict[str, int] = {}
		# id -> sequence at which it died, oldest first.
		self._dead: Dict[str, int] = {}
		self._seq = 0
		self._refresh_lock = asyncio.Lock()

		self.my_presence: Optional[Presence] = None
		self.is_broadcasting = False

	@property
	def presences(self) -> List[Presence]:
		return list(self._visible.values())

	@property
	def tracked_ids(self) -> int:
		"""Number of ids the view holds any bookkeeping for."""
		return len(set(self._visible) | set(self._versions) | set(self._touched) | set(self._dead))

	def __contains__(self, presence_id: str) -> bool:
		return presence_id in self._visible

	# -- feed -----------------------------------------------------------------

	async def apply(self, notification: ChangeNotification) -> bool:
		"""Apply one change notification. Returns True when the view changed."""
		try:
			row = notification.row
		except ValueError:
			obs_metrics.reconciler_outcome("malformed")
			return False
		try:
			if row.user_id == self.viewer_id:
				changed = await self._apply_self(notification, row)
			elif notification.type is ChangeType.DELETE or not row.is_active:
				changed = await self._kill(row)
			else:
				changed = await self._apply_live(row)
		except StaleWrite:
			logger.debug("discarding stale presence row presence=%s", row.id)
			obs_metrics.reconciler_outcome("stale")
			return False
		obs_metrics.reconciler_outcome("applied" if changed else "noop")
		return changed

	async def set_my_presence(self, presence: Optional[Presence]) -> bool:
		"""Seed the own-broadcast slot from a direct lookup."""
		if presence is None or presence.user_id != self.viewer_id:
			return False
		return await self.apply(ChangeNotification(type=ChangeType.UPDATE, new=presence))

	async def _apply_self(self, notification: ChangeNotification, row: Presence) -> bool:
		if notification.type is ChangeType.DELETE or not row.is_active:
			self._bury(row.id)
			if self.my_presence is None or self.my_presence.id != row.id:
				return False
			self.my_presence = None
			self.is_broadcasting = False
		else:
			self._check_fresh(row)
			current = self.my_presence
			if current is not None and current.id != row.id and current.version > row.version:
				raise StaleWrite()
			if current == row:
				return False
			self.my_presence = row
			self.is_broadcasting = True
		self._versions[row.id] = max(row.version, self._versions.get(row.id, row.version))
		if self._on_self_change is not None:
			await self._on_self_change(self.my_presence)
		return True

	async def _apply_live(self, row: Presence) -> bool:
		self._check_fresh(row)
		if not self._in_range(row):
			# Nothing out of range can be shown, so visibility is never asked.
			admitted = False
		elif row.visibility is PresenceVisibility.PUBLIC:
			admitted = True
		elif self._revalidate == "refresh":
			await self.refresh()
			return row.id in self._visible
		else:
			admitted = await self._resolver.can_see_presence(self.viewer_id, row)
			# Another notification may have landed while the graph was queried.
			self._check_fresh(row)

		if admitted:
			self._track(row)
			return await self._upsert(row)
		changed = await self._remove(row.id)
		if self._snapshot_in_flight:
			self._track(row)
		else:
			self._forget(row.id)
		return changed

	async def _kill(self, row: Presence) -> bool:
		self._bury(row.id)
		self._versions[row.id] = max(row.version, self._versions.get(row.id, row.version))
		return await self._remove(row.id)

	def _check_fresh(self, row: Presence) -> None:
		if row.id in self._dead:
			raise StaleWrite()
		known = self._versions.get(row.id)
		if known is not None and row.version < known:
			raise StaleWrite()

	def _track(self, row: Presence) -> None:
		self._versions[row.id] = max(row.version, self._versions.get(row.id, row.version))
		self._touched[row.id] = self._next_seq()

	def _forget(self, presence_id: str) -> None:
		if presence_id in self._dead:
			return
		self._versions.pop(presence_id, None)
		self._touched.pop(presence_id, None)

	def _bury(self, presence_id: str) -> None:
		self._dead.pop(presence_id, None)
		self._dead[presence_id] = self._next_seq()
		while len(self._dead) > self._tombstone_limit:
			oldest = next(iter(self._dead))
			del self._dead[oldest]
			if oldest not in self._visible:
				self._versions.pop(oldest, None)
				self._touched.pop(oldest, None)

	@property
	def _snapshot_in_flight(self) -> bool:
		return self._refresh_lock.locked()

	# -- snapshot -------------------------------------------------------------

	async def refresh(self) -> bool:
		"""Re-run the nearby query and merge it. Keeps the current view on failure."""
		if self._fetch_snapshot is None:
			return False
		async with self._refresh_lock:
			started = self._seq
			try:
				rows = await self._fetch_snapshot()
			except UpstreamUnavailable:
				logger.warning("nearby snapshot unavailable for viewer=%s, keeping current view", self.viewer_id)
				obs_metrics.reconciler_outcome("snapshot_failed")
				return False
			await self.apply_snapshot(rows, started_seq=started)
			return True

	async def apply_snapshot(self, rows: Iterable[Presence], *, started_seq: Optional[int] = None) -> None:
		"""Replace the view with a nearby query result.

		A snapshot row newer than what the view knows always wins. Otherwise
		entries the feed touched after ``started_seq`` are newer than the query
		and are kept as they are; everything else follows the snapshot.
		"""
		fresh: Dict[str, Presence] = {}
		for row in rows:
			if row.user_id == self.viewer_id or row.id in self._dead or not row.is_active:
				continue
			known = self._versions.get(row.id)
			if known is not None and row.version > known:
				fresh[row.id] = row
				continue
			if self._touched_after(row.id, started_seq):
				continue
			if known is not None and row.version < known:
				# The feed already applied something newer for this id.
				current = self._visible.get(row.id)
				if current is not None:
					fresh[row.id] = current
				continue
			fresh[row.id] = row

		merged: Dict[str, Presence] = dict(fresh)
		for presence_id, presence in self._visible.items():
			if presence_id in fresh:
				continue
			if self._touched_after(presence_id, started_seq):
				merged[presence_id] = presence

		removed = [pid for pid in self._visible if pid not in merged]
		upserted = [p for pid, p in merged.items() if self._visible.get(pid) != p]
		self._visible = merged
		for presence in fresh.values():
			self._versions[presence.id] = max(presence.version, self._versions.get(presence.id, presence.version))
		self._next_seq()
		self._prune(started_seq)
		if self._on_change is not None:
			for presence_id in removed:
				await self._on_change("remove", presence_id)
			for presence in upserted:
				await self._on_change("upsert", presence)

	def _prune(self, started_seq: Optional[int]) -> None:
		"""Drop bookkeeping for ids that are neither shown nor tombstoned.

		Tombstones set before the snapshot query began are covered by it (the
		query already saw those rows inactive) and are released too.
		"""
		if started_seq is not None:
			for presence_id in [pid for pid, seq in self._dead.items() if seq <= started_seq]:
				del self._dead[presence_id]
		keep = set(self._visible) | set(self._dead)
		if self.my_presence is not None:
			keep.add(self.my_presence.id)
		for presence_id in [pid for pid in self._versions if pid not in keep]:
			del self._versions[presence_id]
		for presence_id in [pid for pid in self._touched if pid not in keep]:
			del self._touched[presence_id]

	def _touched_after(self, presence_id: str, started_seq: Optional[int]) -> bool:
		if started_seq is None:
			return False
		return self._touched.get(presence_id, -1) > started_seq

	# -- viewport -------------------------------------------------------------

	async def set_viewport(self, latitude: float, longitude: float, radius_miles: float) -> None:
		"""Move the viewer. Entries now out of range drop until the next refresh."""
		self.latitude = latitude
		self.longitude = longitude
		self.radius_miles = radius_miles
		for presence_id, presence in list(self._visible.items()):
			if not self._in_range(presence):
				await self._remove(presence_id)
				self._forget(presence_id)

	def _in_range(self, presence: Presence) -> bool:
		distance = haversine_miles(self.latitude, self.longitude, presence.latitude, presence.longitude)
		return distance <= self.radius_miles

	# -- helpers --------------------------------------------------------------

	def _next_seq(self) -> int:
		self._seq += 1
		return self._seq

	async def _upsert(self, presence: Presence) -> bool:
		if self._visible.get(presence.id) == presence:
			return False
		self._visible[presence.id] = presence
		if self._on_change is not None:
			await self._on_change("upsert", presence)
		return True

	async def _remove(self, presence_id: str) -> bool:
		if self._visible.pop(presence_id, None) is None:
			return False
		if self._on_change is not None:
			await self._on_change("remove", presence_id)
		return True
