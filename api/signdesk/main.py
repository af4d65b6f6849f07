import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .certificates import get_authority
from .db import init_db
from .errors import SignDeskError
from .logging_config import configure_logging
from .routers import cron, envelopes, signing, templates

logger = logging.getLogger(__name__)

app = FastAPI(title="SignDesk API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SignDeskError)
async def handle_signdesk_error(request: Request, exc: SignDeskError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
def on_startup():
    configure_logging()
    init_db()
    # Bad CA material must stop the process here, not at the first finalization.
    get_authority().init()


@app.on_event("shutdown")
def on_shutdown():
    get_authority().shutdown()


app.include_router(envelopes.router, prefix="/api/envelopes", tags=["envelopes"])
app.include_router(signing.router, prefix="/api/sign", tags=["signing"])
app.include_router(templates.router, prefix="/api/templates", tags=["templates"])
app.include_router(cron.router, prefix="/api/cron", tags=["cron"])


@app.get("/")
def root():
    return {"ok": True, "service": "signdesk-api"}
