"""Paper exchange — in-memory account and executor for dry runs.

Fills market orders immediately at the intent price and honours client
order ids, so a retried submission returns the original order.  Spot
holdings are tracked by their quote-currency cost.
"""

import itertools
import logging
from typing import Optional

from tradegate.models.trading import MarketBar, OrderResult, Position, PositionIntent

logger = logging.getLogger("tradegate.exchange")


class PaperExchange:
    """Simulated futures + spot account.

    Args:
        balance: Starting futures balance per coin.
        spot_balance: Starting spot balance per coin.
    """

    def __init__(
        self,
        balance: Optional[dict[str, float]] = None,
        spot_balance: Optional[dict[str, float]] = None,
    ) -> None:
        self._balance = dict(balance or {"USDT": 1000.0})
        self._spot_balance = dict(spot_balance or {})
        self._positions: dict[str, Position] = {}
        self._orders: dict[str, OrderResult] = {}
        self._ids = itertools.count(1)
        self._bars: dict[tuple[str, str], MarketBar] = {}
        self.submitted: list[PositionIntent] = []

    # ── AccountProtocol ──────────────────────────────────────────────────

    async def get_balance(self) -> dict[str, float]:
        return dict(self._balance)

    async def get_positions(self, instrument: Optional[str] = None) -> list[Position]:
        if instrument is not None:
            pos = self._positions.get(instrument)
            return [pos] if pos else []
        return list(self._positions.values())

    # ── ExecutorProtocol ─────────────────────────────────────────────────

    async def open(self, intent: PositionIntent) -> OrderResult:
        if intent.client_oid and intent.client_oid in self._orders:
            logger.info("Duplicate client order id %s ignored", intent.client_oid)
            return self._orders[intent.client_oid]

        order_id = f"paper-{next(self._ids)}"
        signed = intent.quantity if intent.direction == "long" else -intent.quantity
        current = self._positions.get(intent.instrument)
        size = (current.size if current else 0.0) + signed
        price = intent.price or (current.mark_price if current else 0.0)
        if abs(size) < 1e-12:
            self._positions.pop(intent.instrument, None)
        else:
            self._positions[intent.instrument] = Position(
                instrument=intent.instrument, size=size, mark_price=price,
            )
        self.submitted.append(intent)

        result = OrderResult(status="success", order_id=order_id, client_oid=intent.client_oid)
        if intent.client_oid:
            self._orders[intent.client_oid] = result
        logger.info(
            "Paper %s %s %.6f @ %s (%dx) -> %s",
            intent.direction, intent.instrument, intent.quantity,
            intent.price, intent.leverage, order_id,
        )
        return result

    # ── SpotExecutorProtocol ─────────────────────────────────────────────

    async def get_spot_balance(self) -> dict[str, float]:
        return dict(self._spot_balance)

    async def buy_spot(
        self,
        instrument: str,
        quote_amount: float,
        client_oid: str,
        force: str = "gtc",
    ) -> OrderResult:
        if client_oid in self._orders:
            return self._orders[client_oid]
        available = self._spot_balance.get("USDT", 0.0)
        if quote_amount > available:
            raise ValueError(
                f"Insufficient spot USDT: {available:.2f} < {quote_amount:.2f}"
            )
        self._spot_balance["USDT"] = available - quote_amount
        self._spot_balance[instrument] = self._spot_balance.get(instrument, 0.0) + quote_amount
        result = OrderResult(
            status="success", order_id=f"paper-{next(self._ids)}", client_oid=client_oid,
        )
        self._orders[client_oid] = result
        return result

    # ── MarketDataProtocol ───────────────────────────────────────────────

    def set_bar(self, instrument: str, timeframe: str, bar: MarketBar) -> None:
        """Publish *bar* as the latest bar and mark open positions to its close."""
        self._bars[(instrument, timeframe)] = bar
        current = self._positions.get(instrument)
        if current is not None:
            self._positions[instrument] = Position(
                instrument=instrument, size=current.size, mark_price=bar.close,
            )

    async def latest_bar(self, instrument: str, timeframe: str) -> Optional[MarketBar]:
        return self._bars.get((instrument, timeframe))

