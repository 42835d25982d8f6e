"""Admin endpoints for key management."""

from typing import Dict

from fastapi import APIRouter, HTTPException, Request
from starlette.responses import JSONResponse

admin_router = APIRouter(prefix="/admin", tags=["admin"])


@admin_router.get("/status")
async def get_all_status(request: Request) -> Dict[str, object]:
    """Get status of all API keys in the pool."""
    pool = request.app.state.pool
    return await pool.get_status()


@admin_router.get("/status/{key_id}")
async def get_key_status(request: Request, key_id: str) -> Dict[str, object]:
    """Get status of a specific API key."""
    pool = request.app.state.pool
    status = await pool.get_credential_status(key_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Key {key_id} not found")
    return status


@admin_router.post("/keys")
async def add_key(request: Request) -> JSONResponse:
    """Add an API key to the pool, reactivating it if it is already known."""
    pool = request.app.state.pool
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="api_key is required")
    api_key = body.get("api_key") if isinstance(body, dict) else None
    if not isinstance(api_key, str) or not api_key.strip():
        raise HTTPException(status_code=400, detail="api_key is required")

    existing = await pool.store.get_by_secret(api_key.strip())
    credential = await pool.add_credential(api_key)
    return JSONResponse(
        content={
            "key_id": credential.id,
            "key_prefix": credential.secret_prefix(),
            "reactivated": existing is not None,
        },
        status_code=200 if existing is not None else 201,
    )
