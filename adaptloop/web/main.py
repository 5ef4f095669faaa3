from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from adaptloop.output import setup_rich_logging
from adaptloop.service import AdaptiveLoop
from adaptloop.web.api import router as api_router, register_error_handlers

PORT = 8679

LoopFactory = Callable[[], Awaitable[AdaptiveLoop]]


def create_app(loop_factory: Optional[LoopFactory] = None) -> FastAPI:
    """Build the API app. The loop is created on startup and closed on shutdown."""
    factory = loop_factory or AdaptiveLoop.from_config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.loop = await factory()
        try:
            yield
        finally:
            await app.state.loop.close()

    app = FastAPI(title="AdaptLoop API", lifespan=lifespan)

    # Allow CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api")
    register_error_handlers(app)

    @app.get("/")
    def health_check():
        return {"status": "ok", "service": "adaptloop"}

    return app


def run(host: str = "0.0.0.0", port: int = PORT) -> None:
    import uvicorn

    setup_rich_logging()
    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    run()
