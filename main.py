"""
PayPai vault backend - main entry point

Loads settings, builds the chain reader, executor, user-operation pipeline
and activity sync, wires them into the FastAPI app and starts the server.
One file to understand how everything connects.

Usage:
    python main.py              # Start the API
    uvicorn main:app            # Or via uvicorn directly
"""

import os
import re
import logging
from typing import Optional
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact 64-char hex strings (private keys) from all log output."""
    _PATTERN = re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub('[REDACTED]', record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
            except (TypeError, ValueError):
                return True
            if self._PATTERN.search(formatted):
                record.msg = self._PATTERN.sub('[REDACTED]', formatted)
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("paypai.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from core.config import Settings
from core.chain import ChainReader, ChainExecutor
from core.bundler import BundlerClient
from core.userop import OperationBuilder
from core.submitter import OperationSubmitter, StatusPoller
from core.ladder import SigningEscalationLadder
from core.activity import ActivityStore, ExplorerClient, ActivitySyncCoordinator
from core.vault import VaultService
from api.server import create_app


# ============================================================
# WIRING
# ============================================================

settings = Settings.from_env()

chain = ChainReader(settings.rpc_url, timeout=settings.rpc_timeout_sec)

executor: Optional[ChainExecutor] = None
if settings.executor_private_key:
    executor = ChainExecutor(chain, settings.executor_private_key, settings.chain_id)
else:
    logger.warning("EXECUTOR_PRIVATE_KEY not set: /vault/execute is disabled")

bundler: Optional[BundlerClient] = None
builder: Optional[OperationBuilder] = None
ladder: Optional[SigningEscalationLadder] = None
_missing = settings.missing_for_operations()
if not _missing:
    bundler = BundlerClient(settings.bundler_url, settings.entry_point, timeout=settings.rpc_timeout_sec)
    builder = OperationBuilder(chain, bundler, settings)
    ladder = SigningEscalationLadder(
        builder,
        OperationSubmitter(bundler, settings.paymaster),
        StatusPoller(bundler, interval=settings.poll_interval_sec, max_attempts=settings.poll_max_attempts),
        settings,
    )
else:
    logger.info(f"User operations disabled (missing {', '.join(_missing)})")

explorer = ExplorerClient(
    settings.explorer_api,
    timeout=settings.explorer_timeout_sec,
    native_symbol=settings.native_symbol,
)
activity_store = ActivityStore(settings.activity_db_path, limit=settings.activity_cache_limit)
coordinator = ActivitySyncCoordinator(
    activity_store,
    lambda address: explorer.fetch_activity(address, limit=settings.activity_cache_limit),
    ttl_ms=settings.activity_sync_ttl_ms,
)

service = VaultService(settings, chain, executor=executor, ladder=ladder, builder=builder)


# ============================================================
# LIFECYCLE
# ============================================================

@asynccontextmanager
async def lifespan(app):
    """Startup and shutdown."""
    logger.info("=" * 60)
    logger.info(f"PayPai vault backend on {settings.network} (chain {settings.chain_id})")
    logger.info(f"RPC: {settings.rpc_url} | explorer: {settings.explorer_api}")
    logger.info(f"Executor: {service.executor_address or 'NONE'}")
    logger.info(f"User operations: {'enabled' if ladder else 'disabled'}")
    logger.info("=" * 60)

    yield

    # Shutdown
    logger.info("Shutting down...")
    await coordinator.aclose()
    await explorer.close()
    if bundler is not None:
        await bundler.close()
    logger.info("Goodbye.")


def create_paypai_app():
    """Create the fully wired FastAPI app."""
    app = create_app(service, coordinator)
    app.router.lifespan_context = lifespan
    return app


# ============================================================
# ENTRY POINT
# ============================================================

app = create_paypai_app()

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    reload = os.getenv("DEV", "").lower() in ("1", "true", "yes")

    logger.info(f"Starting server on {host}:{port} (reload={reload})")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=LOG_LEVEL.lower(),
    )
