from fastapi import FastAPI

from ipo_engine.api.router import router
from ipo_engine.config import settings
from ipo_engine.core.engine import start, stop
from ipo_engine.utils.logs import configure_logging


app = FastAPI(
    title="ipo_engine (market data sync & analytics)",
    version="1.0.0",
    # Reverse-proxy aware Swagger/OpenAPI paths:
    root_path=settings.API_ROOT_PATH,
    docs_url="/docs",
    redoc_url=None,
    openapi_url="/openapi.json",
)

app.include_router(router)


@app.on_event("startup")
async def _startup() -> None:
    configure_logging()
    # CriticalDependencyError aborts startup when loops are enabled.
    app.state.engine = await start(settings)


@app.on_event("shutdown")
async def _shutdown() -> None:
    handle = getattr(app.state, "engine", None)
    if handle is not None:
        await stop(handle)
        app.state.engine = None
