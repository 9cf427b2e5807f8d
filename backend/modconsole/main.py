"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI

from modconsole.api import ops
from modconsole.infra import postgres
from modconsole.infra.redis import redis_client
from modconsole.moderation.api.admin import router as moderation_admin_router
from modconsole.moderation.domain.container import ModerationRuntime, build_runtime
from modconsole.moderation.domain.notifications import PushSender
from modconsole.moderation.infra.config_store import PostgresConfigurationStore
from modconsole.moderation.infra.postgres_repo import PostgresModerationStore
from modconsole.moderation.infra.push import FcmPushSender, LoggingPushSender
from modconsole.moderation.infra.scheduler import ModerationScheduler
from modconsole.moderation.workers.runner import schedule_jobs
from modconsole.obs import init as obs_init
from modconsole.obs import middleware as obs_middleware
from modconsole.settings import settings

logger = logging.getLogger(__name__)


def _push_sender(http: httpx.AsyncClient) -> PushSender:
	if settings.fcm_project_id and settings.fcm_access_token:
		return FcmPushSender(
			http=http,
			project_id=settings.fcm_project_id,
			access_token=settings.fcm_access_token,
			base_url=settings.fcm_base_url,
			request_timeout=settings.push_timeout_seconds,
		)
	logger.warning("FCM credentials missing; push messages are only logged")
	return LoggingPushSender()


async def _build_postgres_runtime(http: httpx.AsyncClient) -> ModerationRuntime:
	pool = await postgres.init_pool()
	return build_runtime(
		push=_push_sender(http),
		store=PostgresModerationStore(pool, redis_client, report_stream=settings.report_events_stream),
		config_store=PostgresConfigurationStore(pool, redis_client, stream_key=settings.configuration_stream),
	)


def create_app(runtime: Optional[ModerationRuntime] = None) -> FastAPI:
	"""Build the API; a prebuilt runtime skips Postgres wiring (tests, local tooling)."""

	@asynccontextmanager
	async def lifespan(app: FastAPI):
		obs_init()
		http = httpx.AsyncClient()
		active: ModerationRuntime | None = None
		scheduler: ModerationScheduler | None = None
		try:
			active = runtime or await _build_postgres_runtime(http)
			await active.start()
			if settings.moderation_workers_enabled:
				scheduler = schedule_jobs(active)
				scheduler.start()
			app.state.moderation = active
			app.state.moderation_scheduler = scheduler
			yield
		finally:
			if scheduler is not None:
				scheduler.shutdown()
			if active is not None:
				await active.stop()
			await http.aclose()
			if runtime is None:
				await postgres.close_pool()

	app = FastAPI(title="Moderation Console", lifespan=lifespan)
	if runtime is not None:
		app.state.moderation = runtime
	obs_middleware.install(app)
	app.include_router(ops.router)
	app.include_router(moderation_admin_router, tags=["moderation"])
	return app


app = create_app()
