# http_api.py
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from predblink.chain.rpc_client import ChainRpcClient
from predblink.errors import ValidationError
from predblink.service.activity_service import PredBlinkService
from predblink.tasks.blockchain_indexer import build_indexer
from predblink.tasks.sql_indexer import PredBlinkSQLIndexer
from settings import Settings, settings as default_settings

ENDPOINTS = [
    "/trades/:address",
    "/markets/:address",
    "/market-trades/:id",
    "/claims/:address",
    "/global-activity",
    "/stats",
    "/health",
    "/index",
]


# Response models
class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    details: Optional[str] = None
    endpoints: Optional[List[str]] = None


def _error(status_code: int, error: str, **extra) -> JSONResponse:
    body = ErrorResponse(error=error, **extra)
    return JSONResponse(body.model_dump(exclude_none=True), status_code=status_code)


def _get_service(request: Request) -> PredBlinkService:
    return request.app.state.service


async def _respond(result: Awaitable[Dict[str, Any]]) -> JSONResponse:
    """Await a service call and wrap every outcome in the JSON envelope."""
    try:
        return JSONResponse(await result)
    except ValidationError as e:
        return _error(400, e.message)
    except Exception as e:
        logger.exception(f"Unhandled API error: {e}")
        return _error(500, "Internal server error", details=str(e))


def create_app(app_settings: Optional[Settings] = None,
               service: Optional[PredBlinkService] = None) -> FastAPI:
    """
    Build the API. With `service` given, the app uses it as-is; otherwise the
    lifespan opens (and later closes) its own database pool and RPC client.
    """
    app_settings = app_settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if service is not None:
            app.state.service = service
            yield
            return

        store = PredBlinkSQLIndexer(app_settings)
        rpc = ChainRpcClient(app_settings.RPC_URL, timeout=app_settings.RPC_TIMEOUT_SECONDS)
        try:
            await store.connect()
            await store.ensure_schema()
            indexer = build_indexer(app_settings, rpc, store)
            app.state.service = PredBlinkService(
                store, indexer.sync_state, indexer, chain_name=app_settings.CHAIN_NAME
            )
            logger.info(f"PredBlink API ready for {app_settings.PREDBLINK_ADDRESS} on {app_settings.CHAIN_NAME}")
            yield
        finally:
            await rpc.close()
            await store.close()

    app = FastAPI(
        title="PredBlink Indexer API",
        description="Indexed trades, markets and activity for PredBlink prediction markets",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type"],
        max_age=86400,
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error(404, "Not found", endpoints=ENDPOINTS)
        return _error(exc.status_code, str(exc.detail))

    @app.get("/")
    async def root():
        """API root endpoint"""
        return {
            "name": "PredBlink Indexer API",
            "description": "Event indexer for PredBlink prediction markets",
            "version": "1.0.0",
            "endpoints": ENDPOINTS
        }

    @app.get("/health")
    async def health_check(request: Request):
        """Liveness check"""
        return _get_service(request).health()

    @app.get("/stats")
    async def stats(request: Request):
        """Sync cursor and event counts"""
        return await _respond(_get_service(request).get_stats())

    @app.get("/trades/{address}")
    async def trades_by_trader(address: str, request: Request):
        """Trade history of one address, newest block first"""
        return await _respond(_get_service(request).get_trades(address))

    @app.get("/markets/{address}")
    async def markets_by_creator(address: str, request: Request):
        """Markets created by one address, newest block first"""
        return await _respond(_get_service(request).get_created_markets(address))

    @app.get("/claims/{address}")
    async def claims_by_user(address: str, request: Request):
        """Payout claims of one address, newest block first"""
        return await _respond(_get_service(request).get_claims(address))

    @app.get("/market-trades/{market_id}")
    async def market_trades(market_id: str, request: Request):
        """All trades of a market with its price history"""
        return await _respond(_get_service(request).get_market_trades(market_id))

    @app.get("/global-activity")
    async def global_activity(request: Request):
        """Merged trade and market-creation feed"""
        return await _respond(_get_service(request).get_global_activity())

    @app.get("/index")
    async def trigger_index(request: Request):
        """Run one indexing pass and return its summary"""
        try:
            summary = await _get_service(request).run_index_pass()
        except Exception as e:
            logger.exception(f"Indexing pass crashed: {e}")
            return _error(500, "Internal server error", details=str(e))
        return JSONResponse(
            {"success": summary.ok, **summary.to_dict()},
            status_code=200 if summary.ok else 502
        )

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host=default_settings.HOST, port=default_settings.PORT)
