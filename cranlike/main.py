import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from cranlike.api.packages import router as packages_router
from cranlike.core.dependencies import build_services, get_data_dir
from cranlike.domain.errors import ConsistencyError, NotFoundError, RegistryError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def status_for_error(exc: RegistryError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConsistencyError):
        return 409
    return 400


def create_app(data_dir: Optional[Path] = None) -> FastAPI:
    app = FastAPI(
        title="cranlike",
        version="0.1.0",
        description="Ingestion engine for a package registry of source and binary artifacts.",
    )

    @app.on_event("startup")
    async def startup_event() -> None:
        """
        Open the record and blob stores under the data directory and wire the
        ingestion services into application state.
        """
        root = data_dir or get_data_dir()
        app.state.services = await build_services(root)
        logger.info(f"Registry data directory: {root}")

    @app.exception_handler(RegistryError)
    async def registry_error_handler(request: Request, exc: RegistryError) -> PlainTextResponse:
        status_code = status_for_error(exc)
        logger.warning(f"{request.method} {request.url.path} failed ({status_code}): {exc.message}")
        return PlainTextResponse(exc.message, status_code=status_code)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> PlainTextResponse:
        logger.error(f"Unhandled error for {request.method} {request.url.path}: {exc}", exc_info=exc)
        return PlainTextResponse("Internal server error", status_code=500)

    @app.get("/health")
    async def health() -> dict:
        """
        Lightweight health check endpoint.
        """
        return {"status": "ok"}

    app.include_router(packages_router, tags=["packages"])
    return app


app = create_app()


if __name__ == "__main__":
    """
    Allow running `python -m cranlike.main` to start the Uvicorn development server.
    """
    import uvicorn

    uvicorn.run(
        "cranlike.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
