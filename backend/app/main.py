import logging
import logging.config

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.metrics import router as metrics_router
from app.api.routes import router as api_router
from app.config import get_settings
from app.database import engine
from app.models import Base
from parley.realtime.services import RealtimeServices

settings = get_settings()

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {"format": "%(asctime)s %(levelname)s [%(name)s] %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "plain"},
    },
    "root": {"handlers": ["console"], "level": settings.log_level.upper()},
    "loggers": {
        # signaling chatter stays at INFO even when the root is turned down
        "parley.realtime": {"handlers": ["console"], "level": "INFO", "propagate": False},
    },
}


logging.config.dictConfig(LOGGING_CONFIG)

logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, debug=settings.debug)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin).rstrip("/") for origin in settings.cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_origin_regex=settings.cors_allow_origin_regex,
)


@app.get("/health", tags=["system"])
def health_check() -> dict[str, object]:
    """Liveness plus a count of open push channels."""
    realtime = getattr(app.state, "realtime", None)
    return {
        "status": "ok",
        "environment": settings.environment,
        "pushEnabled": settings.push_enabled,
        "pushConnections": len(realtime.registry.connected_users()) if realtime else 0,
    }


@app.on_event("startup")
async def _startup() -> None:
    if settings.database_auto_create:
        Base.metadata.create_all(bind=engine)
    app.state.realtime = RealtimeServices.from_settings(settings)
    await app.state.realtime.start()
    logger.info("%s started", settings.app_name, extra={"environment": settings.environment})


@app.on_event("shutdown")
async def _shutdown() -> None:
    realtime = getattr(app.state, "realtime", None)
    if realtime is not None:
        await realtime.shutdown()
        app.state.realtime = None


app.include_router(api_router, prefix="/api")
app.include_router(metrics_router)
