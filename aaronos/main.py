import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from aaronos import __version__
from aaronos.jobs_routes import api_router as jobs_start_router
from aaronos.jobs_routes import router as jobs_router
from aaronos.services import AppServices
from aaronos.system_routes import router as system_router

# Configure logging
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    """
    Build the API. When no services are passed they are created from the
    environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_services = services or AppServices.from_env()
        app.state.services = app_services
        await app_services.startup()

        port = os.environ.get("PORT", "8000")
        logger.info(f"AaronOS API starting on port {port}")
        logger.info(f"Supabase connected: {app_services.settings.supabase_configured}")
        logger.info(
            f"AI Service: {'Configured' if app_services.settings.gemini_api_key else 'NOT CONFIGURED - set GEMINI_API_KEY'}"
        )
        try:
            yield
        finally:
            await app_services.shutdown()

    app = FastAPI(
        title="AaronOS API",
        description="Long-running AI jobs: research, eBook generation and accessibility scans",
        version=__version__,
        lifespan=lifespan,
    )

    # Additional allowed origins come from CORS_ORIGINS; defaults to all
    extra_origins = os.environ.get("CORS_ORIGINS", "")
    allowed_origins = [o.strip() for o in extra_origins.split(",") if o.strip()] or ["*"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(jobs_start_router)
    app.include_router(jobs_router)
    app.include_router(system_router)

    @app.get("/")
    def read_root():
        return {"message": "AaronOS API is running", "version": __version__}

    return app


app = create_app()
