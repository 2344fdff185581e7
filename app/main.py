import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.errors import DriveError, EmptyFolder, Forbidden, InvalidInput, NotFound, PartialFailure, SizeLimitExceeded
from app.core.logging import setup_logging
from app.models.database import Base, engine
from app.models.node import Node  # noqa: F401  registers the table
from app.routers import files

setup_logging()
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

app = FastAPI(title="Drive")

# include our routers
app.include_router(files.router)

# most specific first; anything else (store/repository unavailable) is a 503
_STATUS_BY_ERROR = [
    (SizeLimitExceeded, 413),
    (Forbidden, 403),
    (EmptyFolder, 404),
    (NotFound, 404),
    (InvalidInput, 400),
    (PartialFailure, 502),
]


@app.exception_handler(DriveError)
async def drive_error_handler(request: Request, exc: DriveError) -> JSONResponse:
    status_code = next((code for kind, code in _STATUS_BY_ERROR if isinstance(exc, kind)), 503)
    if status_code >= 500:
        logger.warning("%s %s failed: %s: %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=status_code, content={"error": exc.kind, "detail": exc.message})


@app.get("/health")
def health():
    return {"status": "ok"}
