import asyncio
from typing import Dict, Iterable, List, Set, Tuple

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

from campusquest.domain.quests.models import QuestZone, VisitResult
from campusquest.domain.quests.service import QuestService, get_service, set_service
from campusquest.infra import postgres
from campusquest.settings import settings


class FakeQuestRepository:
	"""In-memory stand-in for the Postgres collaborator with the same contract."""

	def __init__(self, zones: Iterable[QuestZone] = (), *, balance: int = 0, delay: float = 0.0) -> None:
		self.zones: List[QuestZone] = list(zones)
		self.visits: Set[Tuple[str, str]] = set()
		self.balances: Dict[str, int] = {}
		self.default_balance = balance
		self.delay = delay
		self.zones_delay = 0.0
		self.record_calls: List[Tuple[str, str, int]] = []
		self.fail_records = 0
		self.fail_zones = False
		self.fail_visited = False

	async def get_visited_zone_ids(self, user_id: str) -> Set[str]:
		if self.fail_visited:
			raise ConnectionError("visited lookup unavailable")
		return {zone_id for uid, zone_id in self.visits if uid == user_id}

	async def record_visit_and_reward(self, user_id: str, zone_id: str, reward_points: int) -> VisitResult:
		self.record_calls.append((user_id, zone_id, reward_points))
		if self.delay:
			await asyncio.sleep(self.delay)
		if self.fail_records > 0:
			self.fail_records -= 1
			raise ConnectionError("database unavailable")
		key = (user_id, zone_id)
		if key in self.visits:
			return VisitResult(created=False, new_balance=self.balance_of(user_id))
		self.visits.add(key)
		self.balances[user_id] = self.balance_of(user_id) + reward_points
		return VisitResult(created=True, new_balance=self.balances[user_id])

	async def get_active_zones(self, user_id: str) -> List[QuestZone]:
		if self.zones_delay:
			await asyncio.sleep(self.zones_delay)
		if self.fail_zones:
			raise ConnectionError("registry unavailable")
		return list(self.zones)

	async def get_balance(self, user_id: str) -> int:
		return self.balance_of(user_id)

	def balance_of(self, user_id: str) -> int:
		return self.balances.get(user_id, self.default_balance)


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from campusquest.infra.redis import redis_client, set_redis_client

	original = redis_client._client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Tests identify through plain user ids, which only dev accepts."""
	original_env = settings.environment
	settings.environment = "dev"
	try:
		yield
	finally:
		settings.environment = original_env


@pytest.fixture
def fake_repo() -> FakeQuestRepository:
	return FakeQuestRepository()


@pytest.fixture
def quest_service(fake_repo) -> QuestService:
	return QuestService(fake_repo)


@pytest_asyncio.fixture
async def api_client(quest_service):
	from campusquest.main import app

	app.dependency_overrides[get_service] = lambda: quest_service
	set_service(quest_service)
	transport = ASGITransport(app=app)
	try:
		async with AsyncClient(transport=transport, base_url="http://testserver") as client:
			yield client
	finally:
		app.dependency_overrides.pop(get_service, None)
		set_service(None)
