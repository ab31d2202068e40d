import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import socketio

from campusquest.domain.presence.sockets import MapNamespace
from campusquest.domain.quests.models import CompletionState, QuestZone, ZoneSource
from campusquest.domain.quests.outbox import QUEST_COMPLETION_STREAM
from campusquest.infra import jwt as jwt_helper
from campusquest.settings import settings

FENCE = {"lat": 40.4432, "lon": -79.9428}


def _namespace(quest_service) -> MapNamespace:
	server = socketio.AsyncServer(async_mode="asgi")
	namespace = MapNamespace(quest_service)
	server.register_namespace(namespace)
	namespace.emit = AsyncMock()
	return namespace


def _emits(namespace: MapNamespace, event: str) -> list:
	return [
		(call.args[1], call.kwargs.get("room"))
		for call in namespace.emit.await_args_list
		if call.args[0] == event
	]


def _warnings(namespace: MapNamespace, sid: str) -> list:
	return [payload["code"] for payload, room in _emits(namespace, "sys.warn") if room == sid]


async def _connect(namespace: MapNamespace, *sids: str) -> None:
	for sid in sids:
		await namespace.trigger_event("connect", sid, {})


@pytest.mark.asyncio
async def test_connect_sends_snapshot_and_announces(quest_service):
	namespace = _namespace(quest_service)

	await _connect(namespace, "sid-a", "sid-b")

	snapshots = _emits(namespace, "presence.snapshot")
	assert snapshots[-1][1] == "sid-b"
	assert [item["connection_id"] for item in snapshots[-1][0]["connections"]] == ["sid-a", "sid-b"]
	joined = _emits(namespace, "presence.joined")
	assert joined == [({"connection_id": "sid-b", "latitude": None, "longitude": None, "user_id": None, "display_name": None, "avatar_ref": None}, "sid-a")]


@pytest.mark.asyncio
async def test_duplicate_connect_is_refused(quest_service):
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a")

	with pytest.raises(ConnectionRefusedError):
		await namespace.trigger_event("connect", "sid-a", {})


@pytest.mark.asyncio
async def test_position_is_broadcast_to_peers_only(quest_service):
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a", "sid-b")

	await namespace.trigger_event("position", "sid-a", {"latitude": 40.0, "longitude": -79.0})

	updates = _emits(namespace, "presence.updated")
	assert [room for _, room in updates] == ["sid-b"]
	assert updates[0][0]["latitude"] == 40.0
	assert namespace.table.get("sid-a").position == (40.0, -79.0)


@pytest.mark.asyncio
async def test_invalid_position_is_rejected(quest_service):
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a")

	await namespace.trigger_event("position", "sid-a", {"lat": "north", "lon": 0})
	await namespace.trigger_event("position", "sid-a", {"lat": 91.0, "lon": 0})

	assert _warnings(namespace, "sid-a") == ["invalid_payload", "invalid_payload"]
	assert namespace.table.get("sid-a").position is None


@pytest.mark.asyncio
async def test_position_from_unknown_connection_warns(quest_service):
	namespace = _namespace(quest_service)

	await namespace.trigger_event("position", "ghost", FENCE)

	assert _warnings(namespace, "ghost") == ["unknown_connection"]


@pytest.mark.asyncio
async def test_position_rate_limit_warns(quest_service, monkeypatch):
	monkeypatch.setattr(settings, "position_rate_limit", 1)
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a")

	await namespace.trigger_event("position", "sid-a", {"lat": 40.0, "lon": -79.0})
	await namespace.trigger_event("position", "sid-a", {"lat": 41.0, "lon": -79.0})

	assert _warnings(namespace, "sid-a") == ["rate_limited"]
	assert namespace.table.get("sid-a").position == (40.0, -79.0)


@pytest.mark.asyncio
async def test_identify_outside_dev_requires_token(quest_service):
	settings.environment = "production"
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a")

	await namespace.trigger_event("identify", "sid-a", {"userId": "user-1", "displayName": "Mallory"})

	assert _warnings(namespace, "sid-a") == ["unauthorized"]
	assert namespace.table.get("sid-a").bound_user_id is None


@pytest.mark.asyncio
async def test_identify_with_access_token(quest_service):
	settings.environment = "production"
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a", "sid-b")
	token = jwt_helper.encode_access({"sub": "user-7", "name": "Ada"})

	await namespace.trigger_event("identify", "sid-a", {"token": token, "avatarUrl": "https://cdn/ada.png"})

	entry = namespace.table.get("sid-a")
	assert (entry.bound_user_id, entry.display_name, entry.avatar_ref) == ("user-7", "Ada", "https://cdn/ada.png")
	assert sorted(room for _, room in _emits(namespace, "presence.updated")) == ["sid-a", "sid-b"]


@pytest.mark.asyncio
async def test_identify_sends_zone_list(quest_service, fake_repo):
	fake_repo.visits.add(("user-1", "static:2"))
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a")

	await namespace.trigger_event("identify", "sid-a", {"userId": "user-1", "displayName": "Ada"})

	[(payload, room)] = _emits(namespace, "quest.zones")
	assert room == "sid-a"
	assert [(zone["id"], zone["visited"]) for zone in payload["zones"]] == [("static:1", False), ("static:2", True)]
	assert payload["visited"] == ["static:2"]


@pytest.mark.asyncio
async def test_entering_zone_rewards_once_and_notifies(quest_service, fake_repo, fake_redis):
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a", "sid-b")
	await namespace.trigger_event("identify", "sid-a", {"userId": "user-1"})

	await namespace.trigger_event("position", "sid-a", FENCE)
	await namespace.trigger_event("position", "sid-a", FENCE)

	assert fake_repo.record_calls == [("user-1", "static:1", 50)]
	assert _emits(namespace, "wallet.balance") == [({"user_id": "user-1", "balance": 50}, "sid-a")]
	assert _emits(namespace, "quest.visited") == [({"zone_id": "static:1", "name": "The Fence", "reward": 50}, "sid-a")]
	assert await fake_redis.xlen(QUEST_COMPLETION_STREAM) == 1


@pytest.mark.asyncio
async def test_concurrent_positions_reward_once(quest_service, fake_repo):
	fake_repo.delay = 0.01
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a")
	await namespace.trigger_event("identify", "sid-a", {"userId": "user-1"})

	await asyncio.gather(*[namespace.trigger_event("position", "sid-a", FENCE) for _ in range(5)])

	assert len(fake_repo.record_calls) == 1
	assert fake_repo.balance_of("user-1") == 50


@pytest.mark.asyncio
async def test_every_session_of_user_gets_wallet_update(quest_service):
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a", "sid-b", "sid-c")
	await namespace.trigger_event("identify", "sid-a", {"userId": "user-1"})
	await namespace.trigger_event("identify", "sid-b", {"userId": "user-1"})

	await namespace.trigger_event("position", "sid-a", FENCE)

	assert sorted(room for _, room in _emits(namespace, "wallet.balance")) == ["sid-a", "sid-b"]


@pytest.mark.asyncio
async def test_failed_completion_is_reported_and_retried(quest_service, fake_repo):
	fake_repo.fail_records = 1
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a")
	await namespace.trigger_event("identify", "sid-a", {"userId": "user-1"})

	await namespace.trigger_event("position", "sid-a", FENCE)

	assert _emits(namespace, "quest.failed") == [
		({"zone_id": "static:1", "reason": "persistence_failure", "retryable": True}, "sid-a")
	]
	assert _emits(namespace, "wallet.balance") == []

	await namespace.trigger_event("position", "sid-a", FENCE)

	assert _emits(namespace, "wallet.balance") == [({"user_id": "user-1", "balance": 50}, "sid-a")]


@pytest.mark.asyncio
async def test_window_notice_is_sent_once_per_zone(quest_service, fake_repo):
	fake_repo.zones = [
		QuestZone(
			id="calendar:evt-1",
			name="Evening lecture",
			latitude=40.4423,
			longitude=-79.9465,
			radius_km=0.05,
			reward_points=50,
			source=ZoneSource.CALENDAR,
			scheduled_time=datetime.now(timezone.utc) + timedelta(hours=5),
		)
	]
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a")
	await namespace.trigger_event("identify", "sid-a", {"userId": "user-1"})

	for _ in range(2):
		await namespace.trigger_event("position", "sid-a", {"lat": 40.4423, "lon": -79.9465})

	notices = _emits(namespace, "quest.window")
	assert len(notices) == 1
	assert notices[0][0]["zone_id"] == "calendar:evt-1"
	assert notices[0][0]["reason"] == "too_early"
	assert notices[0][1] == "sid-a"
	# The bridge itself is open all day and still completes.
	assert [call[1] for call in fake_repo.record_calls] == ["static:2"]


@pytest.mark.asyncio
async def test_broadcast_chat_reaches_every_connection_once(quest_service):
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a", "sid-b", "sid-c")
	await namespace.trigger_event("identify", "sid-a", {"userId": "user-1", "displayName": "Ada"})

	await namespace.trigger_event("chat_message", "sid-a", {"text": "hello campus", "to": "everyone"})

	messages = _emits(namespace, "chat.message")
	assert sorted(room for _, room in messages) == ["sid-a", "sid-b", "sid-c"]
	assert messages[0][0]["sender_name"] == "Ada"
	assert messages[0][0]["sender_user_id"] == "user-1"


@pytest.mark.asyncio
async def test_direct_chat_to_offline_user_only_echoes(quest_service):
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a", "sid-b")

	await namespace.trigger_event("chat_message", "sid-a", {"text": "psst", "to": "user-404", "toUserId": "user-404"})

	assert [room for _, room in _emits(namespace, "chat.message")] == ["sid-a"]


@pytest.mark.asyncio
async def test_chat_validation(quest_service, monkeypatch):
	monkeypatch.setattr(settings, "chat_max_length", 5)
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a")

	await namespace.trigger_event("chat_message", "sid-a", {"text": "   ", "to": "everyone"})
	await namespace.trigger_event("chat_message", "sid-a", {"text": "far too long", "to": "everyone"})
	await namespace.trigger_event("chat_message", "sid-a", {"text": "hi"})

	assert _warnings(namespace, "sid-a") == ["invalid_payload", "message_too_long", "invalid_payload"]
	assert _emits(namespace, "chat.message") == []


@pytest.mark.asyncio
async def test_disconnect_notifies_peers_and_releases_user(quest_service):
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a", "sid-b")
	await namespace.trigger_event("identify", "sid-a", {"userId": "user-1"})
	assert quest_service.catalog.get("user-1") is not None

	await namespace.trigger_event("disconnect", "sid-a")

	assert _emits(namespace, "presence.left") == [({"connection_id": "sid-a"}, "sid-b")]
	assert [entry.connection_id for entry in namespace.table.snapshot()] == ["sid-b"]
	assert quest_service.catalog.get("user-1") is None

	await namespace.trigger_event("disconnect", "sid-a")
	assert len(_emits(namespace, "presence.left")) == 1


@pytest.mark.asyncio
async def test_user_state_survives_while_another_session_is_live(quest_service):
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a", "sid-b")
	await namespace.trigger_event("identify", "sid-a", {"userId": "user-1"})
	await namespace.trigger_event("identify", "sid-b", {"userId": "user-1"})

	await namespace.trigger_event("disconnect", "sid-a")

	assert quest_service.catalog.get("user-1") is not None


@pytest.mark.asyncio
async def test_disconnect_is_ordered_after_prior_position(quest_service):
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a", "sid-b")
	namespace.emit.reset_mock()

	await asyncio.gather(
		namespace.trigger_event("position", "sid-a", {"lat": 40.0, "lon": -79.0}),
		namespace.trigger_event("disconnect", "sid-a"),
	)

	events = [call.args[0] for call in namespace.emit.await_args_list if call.kwargs.get("room") == "sid-b"]
	assert events == ["presence.updated", "presence.left"]


async def _until(predicate) -> None:
	for _ in range(200):
		if predicate():
			return
		await asyncio.sleep(0.005)
	raise AssertionError("condition not reached")


@pytest.mark.asyncio
async def test_direct_chat_to_connection_id(quest_service):
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a", "sid-b", "sid-c")
	await namespace.trigger_event("identify", "sid-b", {"userId": "user-2"})

	await namespace.trigger_event("chat_message", "sid-a", {"text": "hi", "to": "sid-b"})

	messages = _emits(namespace, "chat.message")
	assert [room for _, room in messages] == ["sid-b", "sid-a"]
	assert messages[0][0]["channel"] == "sid-b"


@pytest.mark.asyncio
async def test_disconnect_during_completion_leaves_no_state(quest_service, fake_repo, fake_redis):
	fake_repo.delay = 0.05
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a")
	await namespace.trigger_event("identify", "sid-a", {"userId": "user-1"})

	position = asyncio.create_task(namespace.trigger_event("position", "sid-a", FENCE))
	await _until(lambda: fake_repo.record_calls)
	await namespace.trigger_event("disconnect", "sid-a")
	await position

	assert fake_repo.balance_of("user-1") == 50
	assert await fake_redis.xlen(QUEST_COMPLETION_STREAM) == 1
	assert namespace._window_notices == {}
	assert quest_service.catalog.users() == []
	assert quest_service.coordinator.is_seeded("user-1") is False
	assert quest_service.coordinator.state("user-1", "static:1") is CompletionState.NOT_VISITED
	assert _emits(namespace, "quest.failed") == []


@pytest.mark.asyncio
async def test_disconnect_during_identify_releases_user(quest_service, fake_repo):
	fake_repo.zones_delay = 0.05
	namespace = _namespace(quest_service)
	await _connect(namespace, "sid-a")

	identify = asyncio.create_task(namespace.trigger_event("identify", "sid-a", {"userId": "user-1"}))
	await _until(lambda: namespace.table.get("sid-a").bound_user_id == "user-1")
	await namespace.trigger_event("disconnect", "sid-a")
	await identify

	assert quest_service.catalog.users() == []
	assert quest_service.coordinator.is_seeded("user-1") is False
	assert _emits(namespace, "quest.zones") == []
