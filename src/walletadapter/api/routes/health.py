"""Health check endpoints."""

from fastapi import APIRouter

from walletadapter.api.responses import envelope

router = APIRouter()


@router.get("/ping")
async def ping():
    """Liveness check."""
    return envelope("pong", data={"service": "wallet-adapter"})
