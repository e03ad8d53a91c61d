"""explorAble memories runtime: entry point for the host application.

Usage::

    configure_logging()
    async with memories_runtime(permissions, location, tasks) as controller:
        await controller.on_sign_in(user_id)
        await controller.start_session(user_id)
        controller.on_app_active()
        ...
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from explorable.config import Settings, get_settings
from explorable.memories.base import BackgroundTasks, LocationProvider, Permissions
from explorable.memories.config_loader import get_memories_config
from explorable.memories.lifecycle import LifecycleController
from explorable.services.local_storage import JsonFileLocalStore
from explorable.services.push import ExpoPushChannel
from explorable.services.supabase import SupabaseRemoteStore, close_pool, init_pool

logger = logging.getLogger("explorable")


# ---------- Logging ----------

def configure_logging(settings: Settings | None = None) -> None:
    s = settings or get_settings()
    logging.basicConfig(
        level=logging.DEBUG if s.debug else s.log_level.upper(),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


# ---------- Lifespan ----------

@asynccontextmanager
async def memories_runtime(
    permissions: Permissions,
    location: LocationProvider,
    tasks: BackgroundTasks,
    settings: Settings | None = None,
) -> AsyncGenerator[LifecycleController, None]:
    """Startup / shutdown around a fully wired LifecycleController."""
    s = settings or get_settings()
    logger.info("Starting %s memories v%s [%s]", s.app_name, s.app_version, s.environment)
    pool = await init_pool(s)
    controller = LifecycleController.build(
        remote=SupabaseRemoteStore(pool),
        local_store=JsonFileLocalStore(settings=s),
        push=ExpoPushChannel(settings=s),
        permissions=permissions,
        location=location,
        tasks=tasks,
        config=get_memories_config(),
    )
    try:
        yield controller
    finally:
        controller.end_session()
        await close_pool()
        logger.info("%s memories shut down", s.app_name)
