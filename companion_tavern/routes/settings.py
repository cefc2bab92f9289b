"""Health check, settings and connection check endpoints."""

import httpx
from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from companion_tavern.config import update_config

from .models import CheckConnectionBody

router = APIRouter()

MASKED_KEY = "***"


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.post("/check-connection")
async def check_connection(body: CheckConnectionBody):
    """Quick reachability check against an OpenAI-compatible endpoint."""
    url = f"{body.api_base.rstrip('/')}/models"
    headers: dict[str, str] = {}
    if body.api_key:
        headers["Authorization"] = f"Bearer {body.api_key}"
    try:
        async with httpx.AsyncClient(timeout=5) as client:
            resp = await client.get(url, headers=headers)
            resp.raise_for_status()
        return {"ok": True}
    except httpx.HTTPError as e:
        return {"ok": False, "error": str(e) or type(e).__name__}


@router.get("/settings")
async def get_settings(request: Request):
    """Current config with the API key masked."""
    config = request.app.state.registry.config.model_dump()
    if config["endpoint"]["api_key"]:
        config["endpoint"]["api_key"] = MASKED_KEY
    return config


@router.patch("/settings")
async def update_settings(body: dict, request: Request):
    """Update global settings (partial merge) and apply them to live sessions."""
    registry = request.app.state.registry
    endpoint = body.get("endpoint")
    if isinstance(endpoint, dict) and endpoint.get("api_key") == MASKED_KEY:
        # a masked key echoed back from GET means "unchanged"
        body = {**body, "endpoint": {k: v for k, v in endpoint.items() if k != "api_key"}}
    try:
        update_config(registry.storage.config_path, body)
    except ValidationError as e:
        raise HTTPException(422, str(e)) from e
    registry.reload_config()
    return {"ok": True}
