import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from fastapi.middleware.cors import CORSMiddleware
from config import config
from monitoring.logging_utils import setup_logging


trading_system = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global trading_system
    from main import TradingSystem
    trading_system = TradingSystem()
    task = asyncio.create_task(trading_system.start())
    try:
        yield
    finally:
        if trading_system:
            await trading_system.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


app = FastAPI(title="MACD Allocation Trader API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(config.api.get('cors_origins') or ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_system():
    if not trading_system:
        raise HTTPException(status_code=503, detail="Trading system not initialized")
    return trading_system


@app.get("/")
async def root():
    return {
        "service": "MACD Allocation Trader",
        "version": "1.0.0",
        "status": "running" if trading_system and trading_system.running else "stopped"
    }

@app.get("/favicon.ico")
async def favicon():
    return Response(content=b"", media_type="image/x-icon")

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": _now(),
        "system_running": trading_system.running if trading_system else False
    }

@app.post("/api/run-symbol")
async def run_symbol(symbol: str):
    system = _require_system()
    if symbol not in system.symbols:
        raise HTTPException(status_code=404, detail=f"Unknown symbol {symbol}")
    result = await system.run_symbol(symbol)
    system.notifier.notify_manual_run(symbol, result)
    return {"result": result.to_dict(), "timestamp": _now()}

@app.get("/api/snapshot")
async def get_snapshot(force: bool = False):
    system = _require_system()
    return await system.snapshots.get_snapshot(force=force)

@app.get("/api/trades")
async def get_trades(symbol: Optional[str] = None, limit: int = 200):
    system = _require_system()
    if symbol:
        trades = sorted(system.ledger.trades_by_symbol(symbol), key=lambda t: t.exit_time, reverse=True)
    else:
        trades = system.ledger.all_trades()
    trades = trades[:max(0, limit)]
    return {
        "trades": [t.to_dict() for t in trades],
        "count": len(trades),
        "timestamp": _now()
    }

@app.get("/api/metrics")
async def get_metrics():
    system = _require_system()
    snapshot = await system.metrics_service.latest_metrics()
    return {
        "metrics": snapshot.to_dict(),
        "per_symbol": system.ledger.symbol_metrics(),
        "pool": system.pool.snapshot(),
        "timestamp": _now()
    }

@app.get("/api/equity")
async def get_equity():
    system = _require_system()
    history = system.ledger.equity_history()
    return {
        "equity": [p.to_dict() for p in history],
        "count": len(history),
        "timestamp": _now()
    }

@app.get("/api/positions")
async def get_positions():
    system = _require_system()
    positions = [p.to_dict() for p in system.positions.positions.values()]
    return {"positions": positions, "count": len(positions), "timestamp": _now()}

if __name__ == "__main__":
    import uvicorn
    setup_logging()
    uvicorn.run(
        app,
        host=config.api['host'],
        port=config.api['port'],
        log_level="info"
    )
