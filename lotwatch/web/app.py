from __future__ import annotations
import logging, os

from fastapi import FastAPI
from sse_starlette import EventSourceResponse
from starlette.middleware.cors import CORSMiddleware

from lotwatch import db
from lotwatch.events import LOG_FORMAT, EventHub, attach_log_relay, stream
from lotwatch.settings import load_settings
from lotwatch.tracker import Tracker

from .api import api as api_app, bind

if os.getenv("DEBUG_WEB", "0") == "1":
    import debugpy

    debugpy.listen(("0.0.0.0", 5679))
    if os.getenv("DEBUGPY_WAIT", "0") == "1":
        debugpy.wait_for_client()

LOG_LEVEL = os.getenv("LOTWATCH_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=LOG_LEVEL,
    format=LOG_FORMAT,
    datefmt="%Y-%m-%d %H:%M:%S",
)
log_hub = EventHub()
attach_log_relay(log_hub, level=getattr(logging, LOG_LEVEL, logging.INFO))
logger = logging.getLogger("lotwatch.web")


app = FastAPI(title="lotwatch", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ALLOW_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.mount("/api", api_app)


@app.get("/logs_stream")
async def logs_stream():
    return EventSourceResponse(stream(log_hub, lambda: ("log", "log stream connected")))


@app.on_event("startup")
async def _startup():
    settings = load_settings()
    db.configure(settings.storage.database)
    tracker = Tracker(settings)
    bind(tracker)
    tracker.start()
    tracker.enable_backups()
    app.state.tracker = tracker
    logger.info("lotwatch web started")


@app.on_event("shutdown")
async def _shutdown():
    tracker = getattr(app.state, "tracker", None)
    if tracker is not None:
        tracker.shutdown()
