import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from sidequests.domain.presence.exceptions import UpstreamUnavailable
from sidequests.domain.presence.models import ChangeNotification, ChangeType, PresenceVisibility
from sidequests.domain.presence.reconciler import LiveViewReconciler
from sidequests.domain.visibility import VisibilityResolver

NOW = datetime(2026, 5, 1, 18, 0, tzinfo=timezone.utc)
ORIGIN = (40.7128, -74.0060)


def _north(miles: float):
	return ORIGIN[0] + miles / 69.0934, ORIGIN[1]


def _insert(row):
	return ChangeNotification(type=ChangeType.INSERT, new=row)


def _update(row):
	return ChangeNotification(type=ChangeType.UPDATE, new=row)


def _delete(row):
	return ChangeNotification(type=ChangeType.DELETE, old=row)


class Recorder:
	def __init__(self):
		self.changes = []
		self.self_changes = []

	async def on_change(self, kind, payload):
		self.changes.append((kind, payload if kind == "remove" else payload.id))

	async def on_self_change(self, presence):
		self.self_changes.append(presence)


def _reconciler(graph, viewer="bob", *, radius=5.0, recorder=None, **kwargs):
	recorder = recorder or Recorder()
	return LiveViewReconciler(
		viewer,
		VisibilityResolver(graph),
		latitude=ORIGIN[0],
		longitude=ORIGIN[1],
		radius_miles=radius,
		on_change=recorder.on_change,
		on_self_change=recorder.on_self_change,
		**kwargs,
	)


@pytest.mark.asyncio
async def test_same_notification_twice_is_idempotent(graph, make_presence):
	recorder = Recorder()
	view = _reconciler(graph, recorder=recorder)
	carol = make_presence("carol", at=_north(1.0), visibility=PresenceVisibility.PUBLIC)
	assert await view.apply(_insert(carol))
	first = list(view.presences)
	assert not await view.apply(_insert(carol))
	assert view.presences == first == [carol]
	assert recorder.changes == [("upsert", carol.id)]


@pytest.mark.asyncio
async def test_delete_twice_is_idempotent(graph, make_presence):
	view = _reconciler(graph)
	carol = make_presence("carol", visibility=PresenceVisibility.PUBLIC)
	await view.apply(_insert(carol))
	assert await view.apply(_delete(carol))
	assert not await view.apply(_delete(carol))
	assert view.presences == []


@pytest.mark.asyncio
async def test_friends_only_row_admitted_after_graph_check(graph, make_presence):
	graph.connect("alice", "bob")
	view = _reconciler(graph)
	alice = make_presence("alice", at=_north(2.0))
	assert await view.apply(_insert(alice))
	assert "p-alice" in view
	assert graph.calls == 1


@pytest.mark.asyncio
async def test_friends_only_row_from_stranger_not_admitted(graph, make_presence):
	view = _reconciler(graph)
	assert not await view.apply(_insert(make_presence("mallory", at=_north(1.0))))
	assert view.presences == []


@pytest.mark.asyncio
async def test_friends_only_row_dropped_when_graph_unavailable(graph, make_presence):
	graph.connect("alice", "bob")
	graph.fail = True
	view = _reconciler(graph)
	alice = make_presence("alice", at=_north(1.0))
	assert not await view.apply(_insert(alice))
	assert view.presences == []

	# The next snapshot refresh brings it back once it can be proven visible.
	graph.fail = False
	await view.apply_snapshot([alice])
	assert view.presences == [alice]


@pytest.mark.asyncio
async def test_friend_moving_out_of_radius_is_removed(graph, make_presence):
	graph.connect("alice", "bob")
	recorder = Recorder()
	view = _reconciler(graph, recorder=recorder)
	alice = make_presence("alice", at=_north(2.0))
	await view.apply_snapshot([alice])
	assert view.presences == [alice]

	lat, lng = _north(6.0)
	moved = alice.moved_to(lat, lng, None, NOW + timedelta(seconds=30))
	assert await view.apply(_update(moved))
	assert view.presences == []
	assert recorder.changes[-1] == ("remove", alice.id)


@pytest.mark.asyncio
async def test_public_row_admitted_without_graph(graph, make_presence):
	graph.fail = True
	view = _reconciler(graph, viewer="dave")
	carol = make_presence("carol", at=_north(3.0), visibility=PresenceVisibility.PUBLIC)
	assert await view.apply(_insert(carol))
	assert graph.calls == 0


@pytest.mark.asyncio
async def test_deactivation_removes_regardless_of_visibility(graph, make_presence):
	graph.connect("alice", "bob")
	view = _reconciler(graph)
	alice = make_presence("alice", at=_north(1.0))
	await view.apply_snapshot([alice])
	stopped = replace(alice, is_active=False)
	assert await view.apply(_update(stopped))
	assert view.presences == []


@pytest.mark.asyncio
async def test_stale_update_is_discarded(graph, make_presence):
	view = _reconciler(graph)
	newer = make_presence("carol", at=_north(1.0), visibility=PresenceVisibility.PUBLIC)
	older = replace(newer, latitude=_north(0.5)[0], last_seen=NOW - timedelta(seconds=30))
	await view.apply(_update(newer))
	assert not await view.apply(_update(older))
	assert view.presences == [newer]


@pytest.mark.asyncio
async def test_deleted_id_is_never_resurrected(graph, make_presence):
	view = _reconciler(graph)
	carol = make_presence("carol", visibility=PresenceVisibility.PUBLIC)
	await view.apply(_delete(carol))
	# Delete delivered before the insert it supersedes.
	later = replace(carol, last_seen=NOW + timedelta(seconds=5))
	assert not await view.apply(_insert(later))
	await view.apply_snapshot([carol])
	assert view.presences == []


@pytest.mark.asyncio
async def test_own_rows_drive_my_presence_slot(graph, make_presence):
	recorder = Recorder()
	view = _reconciler(graph, recorder=recorder)
	mine = make_presence("bob", visibility=PresenceVisibility.PUBLIC)
	assert await view.apply(_insert(mine))
	assert view.my_presence == mine
	assert view.is_broadcasting
	assert view.presences == []
	assert recorder.changes == []

	await view.apply(_update(replace(mine, is_active=False)))
	assert view.my_presence is None
	assert not view.is_broadcasting
	assert recorder.self_changes == [mine, None]


@pytest.mark.asyncio
async def test_snapshot_never_lists_the_viewer(graph, make_presence):
	view = _reconciler(graph)
	mine = make_presence("bob", visibility=PresenceVisibility.PUBLIC)
	await view.apply_snapshot([mine])
	assert view.presences == []


@pytest.mark.asyncio
async def test_snapshot_arriving_after_newer_feed_row_keeps_feed_row(graph, make_presence):
	view = _reconciler(graph)
	snapshot_row = make_presence("carol", at=_north(1.0), visibility=PresenceVisibility.PUBLIC)
	feed_row = replace(snapshot_row, latitude=_north(1.5)[0], last_seen=NOW + timedelta(seconds=20))
	await view.apply(_update(feed_row))
	await view.apply_snapshot([snapshot_row])
	assert view.presences == [feed_row]


@pytest.mark.asyncio
async def test_delete_during_snapshot_fetch_wins(graph, make_presence):
	carol = make_presence("carol", at=_north(1.0), visibility=PresenceVisibility.PUBLIC)
	erin = make_presence("erin", at=_north(2.0), visibility=PresenceVisibility.PUBLIC)
	holder = {}

	async def fetch():
		# A delete for carol lands while the nearby query is in flight.
		await holder["view"].apply(_delete(carol))
		return [carol, erin]

	view = _reconciler(graph, fetch_snapshot=fetch)
	holder["view"] = view
	assert await view.refresh()
	assert [p.id for p in view.presences] == [erin.id]


@pytest.mark.asyncio
async def test_feed_insert_during_snapshot_fetch_survives(graph, make_presence):
	frank = make_presence("frank", at=_north(1.0), visibility=PresenceVisibility.PUBLIC)
	holder = {}

	async def fetch():
		await holder["view"].apply(_insert(frank))
		return []

	view = _reconciler(graph, fetch_snapshot=fetch)
	holder["view"] = view
	await view.refresh()
	assert view.presences == [frank]


@pytest.mark.asyncio
async def test_snapshot_drops_rows_it_no_longer_returns(graph, make_presence):
	carol = make_presence("carol", visibility=PresenceVisibility.PUBLIC)
	rows = [[carol], []]

	async def fetch():
		return rows.pop(0)

	recorder = Recorder()
	view = _reconciler(graph, fetch_snapshot=fetch, recorder=recorder)
	await view.refresh()
	await view.refresh()
	assert view.presences == []
	assert recorder.changes == [("upsert", carol.id), ("remove", carol.id)]


@pytest.mark.asyncio
async def test_failed_refresh_keeps_current_view(graph, make_presence):
	carol = make_presence("carol", visibility=PresenceVisibility.PUBLIC)

	async def fetch():
		raise UpstreamUnavailable("list_active_candidates")

	view = _reconciler(graph, fetch_snapshot=fetch)
	await view.apply(_insert(carol))
	assert not await view.refresh()
	assert view.presences == [carol]


@pytest.mark.asyncio
async def test_refresh_revalidation_reruns_snapshot(graph, make_presence):
	graph.connect("alice", "bob")
	alice = make_presence("alice", at=_north(1.0))
	calls = []

	async def fetch():
		calls.append(1)
		return [alice]

	view = _reconciler(graph, fetch_snapshot=fetch, revalidate="refresh")
	assert await view.apply(_insert(alice))
	assert calls == [1]
	assert view.presences == [alice]
	# Graph is consulted only through the snapshot fetch, never directly.
	assert graph.calls == 0


def test_refresh_revalidation_requires_fetcher(graph):
	with pytest.raises(ValueError):
		_reconciler(graph, revalidate="refresh")


@pytest.mark.asyncio
async def test_viewport_change_drops_out_of_range_rows(graph, make_presence):
	view = _reconciler(graph)
	carol = make_presence("carol", at=_north(4.0), visibility=PresenceVisibility.PUBLIC)
	await view.apply(_insert(carol))
	await view.set_viewport(*_north(-3.0), 5.0)
	assert view.presences == []


@pytest.mark.asyncio
async def test_slow_graph_check_does_not_override_newer_delete(graph, make_presence):
	graph.connect("alice", "bob")
	gate = asyncio.Event()
	original = graph.get_connections

	async def slow(user_id):
		await gate.wait()
		return await original(user_id)

	graph.get_connections = slow
	view = _reconciler(graph)
	alice = make_presence("alice", at=_north(1.0))
	pending = asyncio.create_task(view.apply(_insert(alice)))
	await asyncio.sleep(0)
	await view.apply(_delete(alice))
	gate.set()
	assert not await pending
	assert view.presences == []


@pytest.mark.asyncio
async def test_out_of_range_friends_rows_skip_the_graph(graph, make_presence):
	graph.connect("alice", "bob")
	view = _reconciler(graph)
	far = _north(690.0)
	for i in range(50):
		row = make_presence(f"friend-{i}", at=far, last_seen=NOW + timedelta(seconds=i))
		assert not await view.apply(_update(row))
	assert graph.calls == 0
	assert view.presences == []


@pytest.mark.asyncio
async def test_out_of_range_rows_skip_snapshot_revalidation(graph, make_presence):
	calls = []

	async def fetch():
		calls.append(1)
		return []

	view = _reconciler(graph, fetch_snapshot=fetch, revalidate="refresh")
	await view.apply(_insert(make_presence("alice", at=_north(690.0))))
	assert calls == []


@pytest.mark.asyncio
async def test_rows_never_shown_leave_no_bookkeeping(graph, make_presence):
	view = _reconciler(graph)
	far = _north(690.0)
	for i in range(1000):
		await view.apply(_insert(make_presence(f"u{i}", at=far, visibility=PresenceVisibility.PUBLIC)))
	assert view.presences == []
	assert view.tracked_ids == 0

	carol = make_presence("carol", at=_north(1.0), visibility=PresenceVisibility.PUBLIC)
	await view.apply(_insert(carol))
	lat, lng = far
	await view.apply(_update(carol.moved_to(lat, lng, None, NOW + timedelta(seconds=5))))
	assert view.tracked_ids == 0


@pytest.mark.asyncio
async def test_tombstones_are_capped(graph, make_presence):
	view = _reconciler(graph, tombstone_limit=10)
	for i in range(50):
		await view.apply(_delete(make_presence(f"u{i}", visibility=PresenceVisibility.PUBLIC)))
	assert view.tracked_ids == 10


@pytest.mark.asyncio
async def test_refresh_releases_tombstones_it_covers(graph, make_presence):
	async def fetch():
		return []

	view = _reconciler(graph, fetch_snapshot=fetch)
	await view.apply(_delete(make_presence("carol", visibility=PresenceVisibility.PUBLIC)))
	assert view.tracked_ids == 1
	await view.refresh()
	assert view.tracked_ids == 0


@pytest.mark.asyncio
async def test_newer_snapshot_row_beats_older_feed_row_applied_mid_fetch(graph, make_presence):
	older = make_presence("carol", at=_north(1.0), visibility=PresenceVisibility.PUBLIC)
	newer = replace(older, latitude=_north(2.0)[0], last_seen=NOW + timedelta(seconds=30))
	holder = {}

	async def fetch():
		# A delayed notification for an earlier write lands while the query runs.
		await holder["view"].apply(_update(older))
		return [newer]

	view = _reconciler(graph, fetch_snapshot=fetch)
	holder["view"] = view
	await view.refresh()
	assert view.presences == [newer]

	# The older row is stale from here on.
	assert not await view.apply(_update(older))
