from fastapi import FastAPI

from app.api.v1.endpoints.internal import router as internal_router
from app.api.v1.router import router as v1_router
from app.core.errors import install_error_handlers
from app.core.logging import setup_logging
from app.core.telemetry import setup_telemetry

setup_logging()

app = FastAPI(title="Listing Moderation API", version="0.1.0")

install_error_handlers(app)
setup_telemetry(app)
app.include_router(v1_router)
app.include_router(internal_router, tags=["internal"])
