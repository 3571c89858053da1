"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


REQUEST_COUNTER = Counter(
	"docdesk_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"docdesk_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"docdesk_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"docdesk_socketio_events_total",
	"Socket.IO events handled or emitted per namespace",
	["namespace", "event"],
)

SOCKET_AUTH_REJECTS = Counter(
	"docdesk_socketio_auth_rejects_total",
	"Socket.IO handshakes refused",
	["namespace", "reason"],
)

CHAT_GROUPS_CREATED = Counter(
	"docdesk_chat_groups_created_total",
	"Chat groups created",
	["kind"],
)

CHAT_MESSAGES_SENT = Counter(
	"docdesk_chat_messages_total",
	"Chat messages persisted",
	["kind"],
)

CHAT_REACTIONS = Counter(
	"docdesk_chat_reactions_total",
	"Chat reaction toggles",
	["action"],
)

CHAT_MEMBERSHIP_CHANGES = Counter(
	"docdesk_chat_membership_changes_total",
	"Chat membership additions and removals",
	["action"],
)

CHAT_DETACHED_FAILURES = Counter(
	"docdesk_chat_detached_failures_total",
	"Best-effort side effects that failed and were discarded",
	["operation"],
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def socket_auth_reject(namespace: str, reason: str) -> None:
	SOCKET_AUTH_REJECTS.labels(namespace=namespace, reason=reason).inc()


def inc_chat_group_created(kind: str) -> None:
	CHAT_GROUPS_CREATED.labels(kind=kind).inc()


def inc_chat_message(kind: str) -> None:
	CHAT_MESSAGES_SENT.labels(kind=kind).inc()


def inc_chat_reaction(action: str) -> None:
	CHAT_REACTIONS.labels(action=action).inc()


def inc_chat_membership(action: str, count: int = 1) -> None:
	if count > 0:
		CHAT_MEMBERSHIP_CHANGES.labels(action=action).inc(count)


def inc_detached_failure(operation: str) -> None:
	CHAT_DETACHED_FAILURES.labels(operation=operation).inc()
