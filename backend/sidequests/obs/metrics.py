"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNTER = Counter(
	"sidequests_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"sidequests_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"sidequests_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"sidequests_socketio_events_total",
	"Socket.IO events received per namespace",
	["namespace", "event"],
)

PRESENCE_TRANSITIONS = Counter(
	"sidequests_presence_transitions_total",
	"Presence lifecycle transitions",
	["transition"],
)

PRESENCE_EXPIRED = Counter(
	"sidequests_presence_expired_total",
	"Presences flipped inactive by the expiry sweeper",
)

PRESENCE_CHANGES_PUBLISHED = Counter(
	"sidequests_presence_changes_published_total",
	"Presence change notifications published on the feed",
	["type", "visibility"],
)

RECONCILER_NOTIFICATIONS = Counter(
	"sidequests_reconciler_notifications_total",
	"Change notifications processed by live views",
	["outcome"],
)

VISIBILITY_FAIL_CLOSED = Counter(
	"sidequests_visibility_fail_closed_total",
	"Visibility decisions that defaulted to deny after a collaborator failure",
	["scope"],
)

LIVE_VIEWS = Gauge(
	"sidequests_live_views_active",
	"Live nearby views currently subscribed to the change feed",
)

BROADCAST_SESSIONS = Gauge(
	"sidequests_broadcast_sessions_active",
	"Broadcast sessions with a running location refresh timer",
)


def presence_transition(transition: str) -> None:
	PRESENCE_TRANSITIONS.labels(transition=transition).inc()


def presence_change_published(change_type: str, visibility: str) -> None:
	PRESENCE_CHANGES_PUBLISHED.labels(type=change_type, visibility=visibility).inc()


def reconciler_outcome(outcome: str) -> None:
	RECONCILER_NOTIFICATIONS.labels(outcome=outcome).inc()


def visibility_fail_closed(scope: str) -> None:
	VISIBILITY_FAIL_CLOSED.labels(scope=scope).inc()


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def observe_http(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)
