# memoir_voice/main.py
import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from memoir_voice.api.twilio_webhooks import router as twilio_router
from memoir_voice.api.voice_ai_webhooks import router as voice_ai_router
from memoir_voice.config import get_settings
from memoir_voice.services import Services, build_services
from memoir_voice.state.session_store import RedisKV
from memoir_voice.utils.logging import configure_logging

logger = logging.getLogger("memoir-voice")


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI app. When `services` is given (tests, embedding) it is used as-is
    and left open on shutdown; otherwise services are built on startup.
    """
    settings = services.settings if services is not None else get_settings()

    app = FastAPI(
        title="Memoir Voice",
        version="0.1.0",
        description="Phone conversations -> call sessions -> memories and memoir chapters",
    )

    # CORS - relaxed for dev
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.ENV == "dev" else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(twilio_router, prefix="/webhook/twilio", tags=["telephony"])
    app.include_router(voice_ai_router, prefix="/webhook", tags=["voice-ai"])

    # Generated speech is written to MEDIA_DIR and played back by the telephony provider from /media
    media_path = Path(settings.MEDIA_DIR)
    media_path.mkdir(parents=True, exist_ok=True)
    app.mount("/media", StaticFiles(directory=str(media_path)), name="media")

    app.state.services = services
    app.state.owns_services = services is None

    @app.get("/", tags=["health"])
    async def root():
        return JSONResponse({"status": "ok", "service": "memoir-voice", "env": settings.ENV})

    @app.get("/health", tags=["health"])
    async def health():
        current: Optional[Services] = app.state.services
        if current is None:
            return JSONResponse({"status": "starting"}, status_code=503)
        return JSONResponse(
            {
                "status": "ok",
                "db": current.database is not None and current.database.is_connected,
                "redis": isinstance(current.kv, RedisKV),
                "jobs": await current.jobs.get_stats(),
            }
        )

    @app.on_event("startup")
    async def on_startup():
        logger.info("Starting Memoir Voice app (env=%s)", settings.ENV)
        if app.state.services is None:
            app.state.services = await build_services(settings)
        await app.state.services.jobs.start()

    @app.on_event("shutdown")
    async def on_shutdown():
        logger.info("Shutting down Memoir Voice app")
        current: Optional[Services] = app.state.services
        if current is None:
            return
        if app.state.owns_services:
            await current.close()
        else:
            await current.jobs.stop()

    return app


configure_logging(get_settings().LOG_LEVEL)
app = create_app()


# If run directly: start uvicorn programmatically (handy for `python -m memoir_voice.main`)
if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "memoir_voice.main:app",
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        reload=settings.ENV == "dev",
        log_level=settings.LOG_LEVEL,
    )
