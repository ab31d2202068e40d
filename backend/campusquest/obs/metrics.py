"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNTER = Counter(
	"campusquest_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"campusquest_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"campusquest_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"campusquest_socketio_events_total",
	"Socket.IO events handled per namespace",
	["namespace", "event"],
)

PRESENCE_ONLINE = Gauge(
	"campusquest_presence_online",
	"Live connections in the presence table",
)

PRESENCE_REJECTS = Counter(
	"campusquest_presence_rejects_total",
	"Presence mutations rejected",
	["reason"],
)

RATE_LIMITED_EVENTS = Counter(
	"campusquest_rate_limited_total",
	"Events dropped due to rate limiting",
	["kind"],
)

ZONE_SNAPSHOT_LOADS = Counter(
	"campusquest_zone_snapshot_loads_total",
	"Quest zone snapshots loaded into a geofence index",
	["result"],
)

ZONE_INDEXES = Gauge(
	"campusquest_zone_indexes",
	"Per-user geofence indexes currently cached",
)

QUEST_COMPLETIONS = Counter(
	"campusquest_quest_completions_total",
	"Quest completion attempts by outcome",
	["outcome"],
)

QUEST_COMPLETION_LATENCY = Histogram(
	"campusquest_quest_completion_seconds",
	"Latency of visit+reward persistence requests",
	buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

QUEST_POINTS_AWARDED = Counter(
	"campusquest_quest_points_awarded_total",
	"Points credited through quest completions",
)

CHAT_DELIVERIES = Counter(
	"campusquest_chat_deliveries_total",
	"Chat message deliveries by routing mode",
	["mode"],
)

REDIS_UP = Gauge(
	"campusquest_redis_up",
	"Redis connectivity as seen by readiness checks",
)

POSTGRES_UP = Gauge(
	"campusquest_postgres_up",
	"Postgres connectivity as seen by readiness checks",
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


def set_presence_online(count: int) -> None:
	PRESENCE_ONLINE.set(float(count))


def inc_presence_reject(reason: str) -> None:
	PRESENCE_REJECTS.labels(reason=reason).inc()


def inc_rate_limited(kind: str) -> None:
	RATE_LIMITED_EVENTS.labels(kind=kind).inc()


def inc_zone_snapshot(result: str) -> None:
	ZONE_SNAPSHOT_LOADS.labels(result=result).inc()


def set_zone_indexes(count: int) -> None:
	ZONE_INDEXES.set(float(count))


def inc_quest_completion(outcome: str) -> None:
	QUEST_COMPLETIONS.labels(outcome=outcome).inc()


def observe_quest_completion(elapsed_seconds: float) -> None:
	QUEST_COMPLETION_LATENCY.observe(elapsed_seconds)


def inc_points_awarded(points: int) -> None:
	if points > 0:
		QUEST_POINTS_AWARDED.inc(points)


def inc_chat_delivery(mode: str, count: int = 1) -> None:
	if count > 0:
		CHAT_DELIVERIES.labels(mode=mode).inc(count)


def mark_redis(ok: bool) -> None:
	REDIS_UP.set(1.0 if ok else 0.0)


def mark_postgres(ok: bool) -> None:
	POSTGRES_UP.set(1.0 if ok else 0.0)
