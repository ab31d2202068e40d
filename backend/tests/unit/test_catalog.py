import asyncio
from datetime import datetime, timezone

import pytest

from campusquest.domain.quests.catalog import STATIC_ZONES, ZoneCatalog, merge_zones, run_zone_refresher
from campusquest.domain.quests.models import InviteStatus, QuestZone, ZoneSource

INVITED = QuestZone(
	id="custom:q-1",
	name="Study group",
	latitude=40.444,
	longitude=-79.943,
	radius_km=0.05,
	reward_points=30,
	source=ZoneSource.CUSTOM_INVITED,
	scheduled_time=datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc),
	invite_status=InviteStatus.ACCEPTED,
)


def test_static_zones_are_the_campus_landmarks():
	fence, bridge = STATIC_ZONES

	assert (fence.id, fence.latitude, fence.longitude, fence.radius_km, fence.reward_points) == (
		"static:1",
		40.4432,
		-79.9428,
		0.03,
		50,
	)
	assert (bridge.id, bridge.reward_points) == ("static:2", 100)


def test_merge_zones_keeps_last_definition():
	override = QuestZone(id="static:1", latitude=0.0, longitude=0.0, radius_km=1.0, reward_points=5)

	merged = merge_zones(STATIC_ZONES, [override])

	assert [zone.id for zone in merged] == ["static:1", "static:2"]
	assert merged[0] is override


@pytest.mark.asyncio
async def test_refresh_loads_static_plus_registry_zones(fake_repo):
	fake_repo.zones = [INVITED]
	catalog = ZoneCatalog(fake_repo)

	index = await catalog.refresh("user-1")

	assert [zone.id for zone in index.snapshot.zones] == ["static:1", "static:2", "custom:q-1"]
	assert index.version == 1
	assert catalog.users() == ["user-1"]


@pytest.mark.asyncio
async def test_first_load_failure_falls_back_to_static(fake_repo):
	fake_repo.fail_zones = True
	catalog = ZoneCatalog(fake_repo)

	index = await catalog.ensure_loaded("user-1")

	assert index.snapshot.zones == STATIC_ZONES


@pytest.mark.asyncio
async def test_refresh_failure_keeps_previous_snapshot(fake_repo):
	fake_repo.zones = [INVITED]
	catalog = ZoneCatalog(fake_repo)
	index = await catalog.refresh("user-1")
	before = index.snapshot

	fake_repo.fail_zones = True
	again = await catalog.refresh("user-1")

	assert again is index
	assert index.snapshot is before


@pytest.mark.asyncio
async def test_current_zones_does_not_cache(fake_repo):
	fake_repo.zones = [INVITED]
	catalog = ZoneCatalog(fake_repo)

	zones = await catalog.current_zones("user-1")

	assert [zone.id for zone in zones] == ["static:1", "static:2", "custom:q-1"]
	assert catalog.get("user-1") is None


@pytest.mark.asyncio
async def test_drop_and_clear_forget_indexes(fake_repo):
	catalog = ZoneCatalog(fake_repo)
	await catalog.refresh("user-1")
	await catalog.refresh("user-2")

	catalog.drop("user-1")
	assert catalog.users() == ["user-2"]

	catalog.clear()
	assert catalog.users() == []


@pytest.mark.asyncio
async def test_zone_refresher_reloads_until_cancelled(fake_repo, monkeypatch):
	catalog = ZoneCatalog(fake_repo)
	await catalog.refresh("user-1")
	real_sleep = asyncio.sleep

	async def _fast_sleep(_delay):
		await real_sleep(0)

	monkeypatch.setattr("campusquest.domain.quests.catalog.asyncio.sleep", _fast_sleep)
	task = asyncio.create_task(run_zone_refresher(catalog, 60))
	for _ in range(20):
		await real_sleep(0)
	task.cancel()
	with pytest.raises(asyncio.CancelledError):
		await task

	assert catalog.get("user-1").version > 1
