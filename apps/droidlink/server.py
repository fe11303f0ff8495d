import contextlib

from fastapi import FastAPI

from .api.app import SETTINGS, router, shutdown_event
from .utils import configure_logging

configure_logging(SETTINGS.log_level)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await shutdown_event()


app = FastAPI(title="droidlink", lifespan=lifespan)
app.include_router(router)
