import asyncio
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .core.config import get_settings
from .core.errors import ChatError
from .core.logging_config import setup_logging
from .core.rate_limit import limiter
from .db import database, models
from .routes.auth_routes import router as auth_router
from .routes.files import router as files_router
from .routes.friends import router as friends_router
from .routes.groups import router as groups_router
from .routes.messages import router as messages_router
from .routes.users import router as users_router
from .services.sweeper import ExpirySweeper
from .ws.relay import relay
from .ws.sockets import ws_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    models.Base.metadata.create_all(bind=database.engine)
    relay.bind_loop(asyncio.get_running_loop())

    sweeper = None
    if settings.SWEEP_ENABLED:
        sweeper = ExpirySweeper(database.SessionLocal, relay, settings.SWEEP_INTERVAL_SECONDS)
        sweeper.start()
    app.state.sweeper = sweeper
    logger.info("CipherChat started")
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.stop()
        relay.bind_loop(None)
        logger.info("CipherChat stopped")


app = FastAPI(title="CipherChat", lifespan=lifespan)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})


# Mount routers
app.include_router(auth_router)
app.include_router(users_router)
app.include_router(friends_router)
app.include_router(groups_router)
app.include_router(messages_router)
app.include_router(files_router)
app.include_router(ws_router)


@app.get("/health")
def health():
    return {"status": "ok"}
