import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from config import settings
from api.commands import router as commands_router
from api.state import router as state_router
from register_table import load_register_table
from services.command_dispatcher import CommandDispatcher
from services.command_listener import CommandListener
from services.modbus_poller import ModbusPoller, make_reader

APP_VERSION = "0.1.0"

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("gateway.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("DEIF gateway starting... DEBUG=%s DEMO_MODE=%s", settings.DEBUG, settings.DEMO_MODE)

    # Register table: a bad table is fatal, nothing gets polled
    table = load_register_table(settings.REGISTER_TABLE_PATH or None)
    app.state.table = table

    # Redis
    redis = Redis.from_url(settings.REDIS_URL, decode_responses=False)
    app.state.redis = redis
    logger.info("Redis connected: %s", settings.REDIS_URL)

    # Transport shared by poller and commands (one reader lock)
    reader = make_reader(table)

    poller = ModbusPoller(redis, reader, table)
    app.state.poller = poller
    poller_task = asyncio.create_task(poller.start())

    dispatcher = CommandDispatcher(reader, table.commands, cooldown=settings.COMMAND_COOLDOWN)
    app.state.dispatcher = dispatcher

    listener = CommandListener(redis, dispatcher, prefix=settings.topic_prefix)
    app.state.command_listener = listener
    listener_task = asyncio.create_task(listener.start())

    yield

    # Shutdown
    logger.info("DEIF gateway shutting down...")
    await listener.stop()
    await poller.stop()

    all_tasks = [poller_task, listener_task]
    for t in all_tasks:
        t.cancel()
    for t in all_tasks:
        try:
            await t
        except asyncio.CancelledError:
            pass

    await redis.close()
    logger.info("Shutdown complete")


app = FastAPI(
    title="DEIF GC-1F/2 Gateway",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(state_router)
app.include_router(commands_router)


@app.get("/health")
async def health():
    return {"status": "ok", "version": APP_VERSION}
