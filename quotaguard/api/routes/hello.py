from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

router = APIRouter(tags=["Demo"])


@router.get("/", response_class=PlainTextResponse)
async def root() -> str:
    return "Hello"


@router.get("/hello", response_class=PlainTextResponse)
async def hello() -> str:
    """Greeting endpoint, rate limited per client address in the sample rules."""
    return "Hello"
