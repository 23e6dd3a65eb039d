from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config.settings import settings
from app.db.session import engine
from app.middlewares import HeaderAuthMiddleware, RequestIDMiddleware
from app.routers import main_router
from app.utils.errors import setup_error_handlers
from app.utils.logging import get_logger

logger = get_logger()


@asynccontextmanager
async def lifespan(_: FastAPI):
    logger.info(
        f"{settings.NAME} {settings.VERSION} starting in {settings.ENVIRONMENT} "
        f"(dispatch batch={settings.DISPATCH_BATCH_SIZE}, workers={settings.DISPATCH_MAX_WORKERS})"
    )
    yield
    engine.dispose()
    logger.info(f"{settings.NAME} is shutting down...")


def create_application() -> FastAPI:
    """Build the scheduler API: error envelopes, CORS, gateway identity and request ids."""
    application = FastAPI(
        title=settings.NAME, version=settings.VERSION, lifespan=lifespan
    )

    setup_error_handlers(application)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_HOSTS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            settings.AUTH_USER_ID_HEADER,
            settings.AUTH_USER_ROLES_HEADER,
        ],
    )

    # Added last so it runs first and every log line carries the request id
    application.add_middleware(HeaderAuthMiddleware)
    application.add_middleware(RequestIDMiddleware)

    application.include_router(main_router, prefix=settings.API_PREFIX, tags=["APIs"])

    return application


app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.ENVIRONMENT == "development",
        log_config=None,
        log_level=None,
    )
