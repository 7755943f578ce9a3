import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api.routes import router as api_router
from .core.config import get_settings
from .core.logging import RequestContextMiddleware, configure_logging
from .services.strategy_presets import PRESET_TEMPLATES
from .services.strategy_scripts import compile as compile_script

settings = get_settings()

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


def _warm_preset_cache() -> None:
    """Compile every preset once so the first evaluation cycle skips parsing."""

    for preset in PRESET_TEMPLATES:
        for script in (preset.buy_script, preset.sell_script):
            compile_script(script)


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    """FastAPI lifespan handler for startup/shutdown tasks."""

    _warm_preset_cache()
    logger.info(
        "Signals API started",
        extra={"extra": settings.dict_for_logging()},
    )
    yield


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    debug=settings.debug,
    lifespan=_lifespan,
)

app.add_middleware(RequestContextMiddleware)
app.include_router(api_router)


__all__ = ["app"]
