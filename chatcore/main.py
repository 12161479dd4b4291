from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chatcore.config import Settings
from chatcore.container import ChatCore
from chatcore.errors import ChatError, ConflictError, ConnectivityError, ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError
from chatcore.routers.conversations import router as conversations_router
from chatcore.routers.messages import router as messages_router
from chatcore.routers.presence import router as presence_router
from chatcore.routers.realtime import router as realtime_router
from chatcore.utils.logging import configure_logging

ERROR_STATUS = [
    (ValidationError, 422),
    (ForbiddenError, 403),
    (NotFoundError, 404),
    (InvalidTransitionError, 409),
    (ConflictError, 409),
    (ConnectivityError, 503),
]


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


def create_app(settings: Optional[Settings] = None, core: Optional[ChatCore] = None) -> FastAPI:
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):

        configure_logging(settings.LOG_LEVEL)
        app.state.core = core or ChatCore.from_settings(settings)
        await app.state.core.start()
        try:
            yield
        finally:
            await app.state.core.stop()

    app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)
    app.add_exception_handler(ChatError, chat_error_handler)

    app.include_router(messages_router)
    app.include_router(conversations_router)
    app.include_router(presence_router)
    app.include_router(realtime_router)

    @app.get("/")
    async def root():

        core: ChatCore = app.state.core
        return {"message": f"{settings.APP_NAME} running", "online": core.connectivity.online, "queued": len(core.queue)}

    return app


app = create_app()
