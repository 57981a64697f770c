import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Set

import aiohttp

from api.metrics import metrics
from risk.position_sizer import AccountHealth
from strategy.models import ClosedTrade, RunResult, Side


logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org/bot{token}/sendMessage"


class TelegramNotifier:
    """Fire-and-forget Telegram sink with duplicate suppression.

    Identical text sent within ``dedupe_window_s`` is dropped. Messages are only
    delivered when ``deliver`` is true (production); otherwise they are logged.
    Delivery failures are logged and never raised to the caller.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        chat_id: Optional[str] = None,
        dedupe_window_s: float = 10.0,
        deliver: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.token = token
        self.chat_id = chat_id
        self.enabled = bool(token and chat_id)
        self.deliver = deliver
        self.dedupe_window_s = dedupe_window_s
        self._clock = clock
        self._last_sent: Dict[str, float] = {}
        self._pending: Set[asyncio.Task] = set()
        self.sent_count = 0
        self.suppressed_count = 0

    @classmethod
    def from_config(cls, cfg) -> 'TelegramNotifier':
        notifications = cfg.get('notifications') or {}
        app = cfg.get('app') or {}
        production = str(app.get('env') or '').lower() == 'production'
        if not notifications.get('production_only', True):
            production = True
        return cls(
            token=notifications.get('telegram_token'),
            chat_id=notifications.get('telegram_chat_id'),
            dedupe_window_s=float(notifications.get('dedupe_window_s', 10)),
            deliver=production,
        )

    def _is_duplicate(self, text: str) -> bool:
        now = self._clock()
        last = self._last_sent.get(text)
        if last is not None and now - last < self.dedupe_window_s:
            return True
        self._last_sent[text] = now
        return False

    def send(self, text: str) -> bool:
        """Queue ``text`` for delivery. Returns False when it was suppressed."""
        if not self.enabled:
            logger.debug("[Notify] disabled: %s", text)
            return False
        if self._is_duplicate(text):
            self.suppressed_count += 1
            metrics.record_notification(False)
            return False
        if not self.deliver:
            logger.info("[Notify] %s", text)
            return True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("[Notify] no running loop, dropping message: %s", text)
            return False
        task = loop.create_task(self._deliver(text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def _deliver(self, text: str) -> None:
        payload = {'chat_id': self.chat_id, 'text': text, 'parse_mode': 'Markdown'}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    TELEGRAM_API.format(token=self.token),
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=5),
                ) as response:
                    if response.status != 200:
                        logger.error("[Notify] Telegram returned status %s", response.status)
                        return
            self.sent_count += 1
            metrics.record_notification(True)
        except Exception as exc:
            logger.error("[Notify] Telegram error: %s", exc)

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def notify_trade_open(self, symbol: str, side: Side, price: float, leverage: float, notional: float) -> bool:
        return self.send(
            f"🚀 *Open* {side.value} {symbol}\nPrice: {price:.6f}\nLev: x{leverage:g} Notional: {notional:g}"
        )

    def notify_trade_close(self, trade: ClosedTrade) -> bool:
        direction = '✅' if trade.pnl_usd >= 0 else '🔻'
        sign = '+' if trade.pnl_usd >= 0 else ''
        return self.send(
            f"{direction} *Close* {trade.side.value} {trade.symbol}\n"
            f"Entry: {trade.entry_price:.6f} Exit: {trade.exit_price:.6f}\n"
            f"PnL: {sign}{trade.pnl_usd:.2f} USD ({trade.pnl_pct:.2f}%)\n"
            f"Reason: {trade.reason.value}"
        )

    def notify_no_action(self, symbol: str, price: float, signal: Optional[str] = None) -> bool:
        return self.send(f"ℹ️ {symbol} no action. Price={price:.6f} Signal={signal or 'NONE'}")

    def notify_stop_loss(self, symbol: str, side: Side, exit_price: float) -> bool:
        return self.send(f"🛑 Stop-Loss {side.value} {symbol} @ {exit_price:.6f}")

    def notify_error(self, context: str, symbol: str, message: str) -> bool:
        return self.send(f"❌ Error {context} {symbol}\n{message}")

    def notify_manual_run(self, symbol: str, result: RunResult) -> bool:
        summary = result.action.value
        if result.message:
            summary = f"{summary}: {result.message}"
        return self.send(f"🛠 Manual run {symbol}\n{summary}")

    def notify_account_health(self, health: AccountHealth) -> bool:
        if health is None or health.is_healthy:
            return False
        lines = '\n'.join(health.warnings[:3])
        return self.send(f"⚠️ Account *ALERT*\nMargin: {health.margin_ratio * 100:.1f}%\n{lines}")
