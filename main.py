# Standard library imports
import logging

# Third-party imports
from fastapi import FastAPI

# Local imports
from config import get_settings
from database import engine, Base
import models  # noqa: F401  registers the tables on Base.metadata
from middleware import AccessLogMiddleware, RecoveryMiddleware

# Plugin system
from plugin_manager import plugin_manager

# Get settings
settings = get_settings()

# Set up logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Hook Router", docs_url=None, redoc_url=None, openapi_url=None)

# Initialize database
Base.metadata.create_all(bind=engine)

# Recovery first so the access log (outermost) sees the 500s it produces
app.add_middleware(RecoveryMiddleware)
app.add_middleware(AccessLogMiddleware)

# Import and include routers
from oauth_routes import router as oauth_router
from telegram_routes import router as telegram_router
from webhook_routes import router as webhook_router

# Initialize plugins
if settings.PLUGINS_AUTO_DISCOVER:
    plugin_manager.discover_plugins()

# Register routers; the webhook router has catch-all paths and goes last
app.include_router(oauth_router)
app.include_router(telegram_router)
app.include_router(webhook_router)


@app.on_event("startup")
async def freeze_service_registry():
    """Services are read-only once the app is serving."""
    plugin_manager.freeze()
    logger.info(f"Serving services: {', '.join(plugin_manager.get_all_services()) or 'none'}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=settings.PORT,
        log_level="debug" if settings.DEBUG else "info"
    )
