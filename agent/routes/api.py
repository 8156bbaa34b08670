from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, Depends, HTTPException

from agent.schemas import ClientSnapshot
from agent.services.client import Client, get_client

router = APIRouter(prefix="/api", tags=["api"])


def registered_client() -> Client:
    try:
        return get_client()
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


ClientDep = Depends(registered_client)


@router.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@router.get("/status", response_model=ClientSnapshot)
async def status(client: Client = ClientDep) -> ClientSnapshot:
    """Redacted view of the agent: state, signal severity and current job."""
    return client.snapshot()
