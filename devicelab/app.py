from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from devicelab import __version__
from devicelab.diagnostics.catalog import TestCatalog
from devicelab.diagnostics.run_manager import RunManager
from devicelab.routes import get_routers
from devicelab.services.broadcaster import ProgressBroadcaster
from devicelab.services.command_channel import CommandChannel
from devicelab.services.event_bus import EventBus
from devicelab.services.logging_service import logging_service
from devicelab.services.mqtt_channel import MqttCommandChannel
from devicelab.services.settings_service import SettingsService


def create_app(
    settings_service: Optional[SettingsService] = None,
    channel: Optional[CommandChannel] = None,
) -> FastAPI:
    """Build the API application.

    Pass *channel* to run against something other than the MQTT broker; the
    app only connects and closes channels it created itself.
    """
    settings_service = settings_service or SettingsService()
    event_bus = EventBus()
    catalog = TestCatalog()
    logger = logging_service.get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logging_service.configure()
        logger.info("Backend startup initiated")
        settings_service.load()
        engine_settings = settings_service.engine_settings()
        device_channel = channel
        owns_channel = device_channel is None
        if owns_channel:
            device_channel = MqttCommandChannel(settings_service.mqtt_settings())
            await device_channel.connect()
        manager = RunManager(
            catalog,
            device_channel,
            ProgressBroadcaster(event_bus),
            settings=engine_settings,
        )
        app.state.engine_settings = engine_settings
        app.state.channel = device_channel
        app.state.run_manager = manager
        await event_bus.publish(
            "system",
            {"type": "startup", "message": "Backend ready", "tests": len(catalog.list_all())},
        )
        try:
            yield
        finally:
            await manager.shutdown()
            if owns_channel:
                await device_channel.close()
            logger.info("Backend stopped")

    app = FastAPI(title="Device Diagnostics Backend", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings_service = settings_service
    app.state.event_bus = event_bus
    app.state.catalog = catalog
    for router in get_routers():
        app.include_router(router)
    return app
