"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from campusquest.api import ops, presence, quests
from campusquest.api.errors import install_error_handlers
from campusquest.domain.presence.sockets import MapNamespace, set_namespace
from campusquest.domain.quests.catalog import run_zone_refresher
from campusquest.domain.quests.repository import PostgresQuestRepository
from campusquest.domain.quests.service import QuestService, set_service
from campusquest.infra import postgres
from campusquest.obs import init as obs_init
from campusquest.settings import settings

logger = logging.getLogger(__name__)

quest_service = QuestService(PostgresQuestRepository())
set_service(quest_service)


@asynccontextmanager
async def lifespan(app: FastAPI):
	await postgres.init_pool()
	worker_tasks: list[asyncio.Task] = []
	if settings.zone_refresh_interval_seconds > 0:
		worker_tasks.append(
			asyncio.create_task(
				run_zone_refresher(quest_service.catalog, settings.zone_refresh_interval_seconds),
				name="zone-refresher",
			)
		)
	logger.info("campusquest started env=%s commit=%s", settings.environment, settings.git_commit)
	try:
		yield
	finally:
		for task in worker_tasks:
			task.cancel()
		if worker_tasks:
			await asyncio.gather(*worker_tasks, return_exceptions=True)
		quest_service.catalog.clear()
		await postgres.close_pool()


app = FastAPI(title="CampusQuest Map Core", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(settings.cors_allow_origins)
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else []

# Starlette disallows wildcard '*' with allow_credentials=True.
if "*" in allow_origins:
	allow_origins = ["http://localhost:3000", "http://127.0.0.1:3000"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

# Use the same allowed origins for Socket.IO as for the REST API
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
map_namespace = MapNamespace(quest_service)
sio.register_namespace(map_namespace)
set_namespace(map_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
obs_init(app)

app.include_router(quests.router)
app.include_router(presence.router)
app.include_router(ops.router)
