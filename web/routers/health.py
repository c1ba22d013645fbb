"""Liveness endpoints."""

from fastapi import APIRouter

from layerbuild import __version__

router = APIRouter()


@router.get("/ping")
def ping() -> str:
    """Liveness check.

    Returns:
        The string "ok".
    """
    return "ok"


@router.get("/version")
def version() -> str:
    """Return the layerbuild version."""
    return __version__
