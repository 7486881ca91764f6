from typing import Optional

from fastapi import APIRouter, Query, Request, Response
from fastapi.responses import JSONResponse

from app.core import state
from app.core.metrics import metrics

router = APIRouter()

CHAT_METHODS = ["POST", "OPTIONS", "GET", "HEAD", "PUT", "PATCH", "DELETE"]


@router.api_route("/api/chat", methods=CHAT_METHODS)
@router.api_route("/api/chat/", methods=CHAT_METHODS, include_in_schema=False)
async def chat(request: Request) -> Response:
    body = await request.body() if request.method not in ("GET", "HEAD") else b""
    result = await state.gateway.handle(request.method, request.headers, body)
    if result.body is None:
        return Response(status_code=result.status_code, headers=result.headers)
    return JSONResponse(status_code=result.status_code, content=result.body, headers=result.headers)


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/ready")
def ready():
    return {"status": "ok"}


@router.get("/healthz")
def healthz():
    return {"ok": True}


@router.get("/metrics")
def get_metrics(prefix: Optional[str] = Query(default=None)):
    return metrics.snapshot(prefix)
