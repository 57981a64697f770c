import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Dict, Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.monitoring.get('prometheus_port_scan', 0))
    except Exception:
        return 0


def _get_port_file() -> Optional[Path]:
    path_value = config.monitoring.get('metrics_port_file') if config.get('monitoring') else None
    if not path_value:
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except Exception as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.equity = Gauge('account_equity', 'Shared pool equity')
        self.used_margin = Gauge('account_used_margin', 'Margin committed to open positions')
        self.free_margin = Gauge('account_free_margin', 'Margin available for new positions')
        self.open_positions = Gauge('open_positions', 'Open positions by side', ['side'])

        self.runs = Counter('symbol_runs_total', 'Symbol invocations by outcome', ['symbol', 'action'])
        self.trades_closed = Counter('trades_closed_total', 'Closed trades by reason', ['reason'])
        self.orders_placed = Counter('orders_placed_total', 'Orders submitted', ['side'])
        self.margin_denied = Counter('margin_denied_total', 'Opens skipped for lack of free margin', ['symbol'])
        self.pnl_realized = Gauge('pnl_realized_total', 'Total realized PnL')

        self.gateway_retries = Counter('gateway_retries_total', 'Failed gateway attempts', ['operation'])
        self.gateway_failures = Counter('gateway_failures_total', 'Gateway calls that exhausted retries', ['operation'])
        self.gateway_latency = Histogram('gateway_latency_seconds', 'Latency of successful gateway calls', ['operation'])

        self.notifications = Counter('notifications_total', 'Notification outcomes', ['outcome'])

        self.max_drawdown = Gauge('ledger_max_drawdown_pct', 'Latest max drawdown in percent')
        self.sharpe_ratio = Gauge('ledger_sharpe_ratio', 'Latest annualised Sharpe ratio')
        self.win_rate = Gauge('ledger_win_rate_pct', 'Latest win rate in percent')

    def update_pool(self, snapshot: Dict[str, float]):
        self.equity.set(snapshot.get('equity', 0.0))
        self.used_margin.set(snapshot.get('used_margin', 0.0))
        self.free_margin.set(snapshot.get('free_margin', 0.0))

    def update_positions(self, counts: Dict[str, int]):
        for side, count in counts.items():
            self.open_positions.labels(side=side).set(count)

    def record_run(self, symbol: str, action: str):
        self.runs.labels(symbol=symbol, action=action).inc()

    def record_trade_closed(self, reason: str, pnl: Optional[float] = None):
        self.trades_closed.labels(reason=reason).inc()
        if pnl is None:
            return
        if pnl >= 0:
            self.pnl_realized.inc(pnl)
        else:
            self.pnl_realized.dec(abs(float(pnl)))

    def record_order_placed(self, side: str):
        self.orders_placed.labels(side=side).inc()

    def record_margin_denied(self, symbol: str):
        self.margin_denied.labels(symbol=symbol).inc()

    def record_gateway_retry(self, operation: str):
        self.gateway_retries.labels(operation=operation).inc()

    def record_gateway_failure(self, operation: str):
        self.gateway_failures.labels(operation=operation).inc()

    def record_gateway_latency(self, operation: str, seconds: float):
        self.gateway_latency.labels(operation=operation).observe(seconds)

    def record_notification(self, sent: bool):
        self.notifications.labels(outcome='sent' if sent else 'suppressed').inc()

    def update_performance(self, max_drawdown: float, sharpe_ratio: float, win_rate: float):
        self.max_drawdown.set(max_drawdown)
        self.sharpe_ratio.set(sharpe_ratio)
        self.win_rate.set(win_rate)


def start_metrics_server(port: int = 9090):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
