from contextlib import asynccontextmanager
from pathlib import Path

import conf
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from routes.base import router, ws_router
from utils import log

from clients.couchbase import check_connection
from models.engine.auction import AuctionEngine
from models.engine.clock import SystemClock
from models.operations.auctions import CouchbaseAuctionStore
from models.operations.bids import CouchbaseBidLedger
from models.operations.users import CouchbaseBidderDirectory
from models.services.locks import AuctionLocks
from models.services.orchestrator import AuctionOrchestrator
from notifications.websocket import ConnectionManager

log.init(conf.get_log_level())
logger = log.get_logger(__name__)


def build_orchestrator(connections: ConnectionManager) -> AuctionOrchestrator:
    bidding = conf.get_bidding_conf()
    return AuctionOrchestrator(
        engine=AuctionEngine(SystemClock()),
        auctions=CouchbaseAuctionStore(),
        ledger=CouchbaseBidLedger(),
        bidders=CouchbaseBidderDirectory(),
        notifier=connections,
        locks=AuctionLocks(timeout_seconds=bidding.lock_timeout_seconds),
        max_commit_retries=bidding.commit_max_retries,
        commit_backoff_ms=bidding.commit_backoff_ms,
        final_countdown_seconds=bidding.final_countdown_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Check database connection
    logger.info("Verifying Couchbase connection...")
    await check_connection()
    logger.info("Couchbase connection verified.")

    app.state.connections = ConnectionManager()
    app.state.orchestrator = build_orchestrator(app.state.connections)
    logger.info("Bidding orchestrator ready")

    yield

    await app.state.connections.close()


app = FastAPI(
    title="Auction Bidding API",
    version="0.1.0",
    docs_url="/docs",
    lifespan=lifespan,
    debug=conf.get_http_expose_errors(),
)

app.include_router(router)
app.include_router(ws_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Internal server error"},
    )


if not conf.validate():
    raise ValueError("Invalid configuration.")

http_conf = conf.get_http_conf()
logger.info(f"Starting API on port {http_conf.port}")

# Log all registered routes to help debug routing issues
logger.info("--- Registered Routes ---")
for route in app.routes:
    methods_set = getattr(route, "methods", None)
    methods = ", ".join(methods_set) if methods_set else "Any"
    path = getattr(route, "path", "<unknown>")
    logger.info(f"{path} [{methods}]")
logger.info("-------------------------")

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=http_conf.host,
        port=http_conf.port,
        reload=http_conf.autoreload,
        log_level="info",
        reload_dirs=[str(Path(__file__).parent), "/models", "/clients"],
        log_config=None,
    )
