"""
PayPai Vault API Server - FastAPI Backend

Endpoints:
- GET  /health            Heartbeat + executor / pipeline configuration
- GET  /vault/info        Vault state, token meta, allowance, funding diagnostics
- GET  /vault/activity    Spent / remaining budget for the current window
- POST /vault/execute     Executor-signed executeSpend (pre-flight + checkSpendAllowed)
- GET  /wallet/activity   Explorer activity for any address (cached, single-flight sync)

Status codes:
- 400 invalid address / malformed body
- 403 spend rejected by policy (off-chain pre-flight or the vault itself)
- 200 with an `error` field for chain read failures (partial data still useful)
- 500 with `details` for anything unexpected
"""

import logging
import os
import time
from typing import Optional, Union

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from core.errors import InvalidAddress, PolicyRejected, VaultError, error_message

logger = logging.getLogger("paypai.api")


# ============================================================
# MODELS
# ============================================================

class ExecuteSpendRequest(BaseModel):
    vaultAddress: str = Field(..., min_length=1, max_length=64)
    recipient: str = Field(..., min_length=1, max_length=64)
    amount: Union[str, float, int]


class HealthResponse(BaseModel):
    ok: bool
    network: str
    chain_id: int
    executor: str
    operations_enabled: bool
    missing_settings: list[str] = []
    uptime_sec: float


def _error(status: int, message: str, details: Optional[str] = None, **extra) -> JSONResponse:
    body = {"error": message}
    if details:
        body["details"] = details
    body.update(extra)
    return JSONResponse(status_code=status, content=body)


# ============================================================
# SERVER FACTORY
# ============================================================

def create_app(service, coordinator) -> FastAPI:
    """
    Create FastAPI app wired to the vault service and the activity coordinator.

    service: core.vault.VaultService
    coordinator: core.activity.ActivitySyncCoordinator
    """
    app = FastAPI(
        title="PayPai Vault",
        description="Spending vault reads, executor spends and wallet activity.",
        version="0.1.0",
    )

    # CORS: allow all in dev, restrict in production via CORS_ORIGINS env var
    cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    started_at = time.time()

    # ============================================================
    # ROUTES
    # ============================================================

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Heartbeat endpoint."""
        settings = service.settings
        missing = settings.missing_for_operations()
        return HealthResponse(
            ok=True,
            network=settings.network,
            chain_id=settings.chain_id,
            executor=service.executor_address,
            operations_enabled=service.ladder is not None,
            missing_settings=missing,
            uptime_sec=round(time.time() - started_at, 1),
        )

    @app.get("/vault/info")
    async def vault_info(address: str = ""):
        try:
            info = await service.get_vault_info(address)
        except InvalidAddress:
            return _error(400, "Invalid vault address")
        except Exception as e:
            logger.error(f"/vault/info failed: {e}", exc_info=True)
            return _error(500, "Failed to fetch vault info", error_message(e))
        return info.to_dict()

    @app.get("/vault/activity")
    async def vault_activity(address: str = ""):
        try:
            activity = await service.get_activity(address)
        except InvalidAddress:
            return _error(400, "Invalid vault address")
        except Exception as e:
            logger.error(f"/vault/activity failed: {e}", exc_info=True)
            return _error(500, "Failed to fetch vault activity", error_message(e))
        return activity.to_dict()

    @app.post("/vault/execute")
    async def vault_execute(req: ExecuteSpendRequest):
        if req.amount in ("", 0, None):
            return _error(400, "Missing required fields", success=False)
        amount = req.amount if isinstance(req.amount, str) else str(req.amount)
        try:
            result = await service.execute_spend(req.vaultAddress, req.recipient, amount)
        except InvalidAddress:
            return _error(400, "Invalid address format", success=False)
        except PolicyRejected as e:
            logger.info(f"Spend rejected ({e.reason}): {e.message}")
            return _error(403, e.message, success=False, reason=e.reason, action_hint=e.action_hint)
        except VaultError as e:
            return _error(500, e.message, success=False, code=e.code, action_hint=e.action_hint)
        except Exception as e:
            logger.error(f"/vault/execute failed: {e}", exc_info=True)
            return _error(500, "Failed to execute spend", error_message(e), success=False)

        if not result.success:
            return JSONResponse(status_code=500, content=result.to_dict())
        return result.to_dict()

    @app.get("/wallet/activity")
    async def wallet_activity(address: str = "", refresh: str = ""):
        force = refresh in ("1", "true")
        try:
            snapshot = await coordinator.ensure_fresh(address, force_refresh=force)
        except InvalidAddress:
            return _error(400, "Invalid address")
        except Exception as e:
            logger.error(f"/wallet/activity failed: {e}", exc_info=True)
            return _error(500, "Failed to fetch wallet activity", error_message(e))

        payload = {
            "address": snapshot.address,
            "activity": [r.to_dict() for r in snapshot.records],
            "lastSynced": snapshot.last_synced_at,
            "syncing": snapshot.syncing,
        }
        if snapshot.error:
            payload["error"] = snapshot.error
        return payload

    return app
