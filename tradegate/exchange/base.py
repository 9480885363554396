"""Exchange collaborator protocols and client order id helper.

The REST/WebSocket client itself lives outside this package.  These
protocols describe the slice of it the decision engine consumes.
"""

from __future__ import annotations

import uuid
from typing import Optional, Protocol, runtime_checkable

from tradegate.models.trading import MarketBar, OrderResult, Position, PositionIntent


def new_client_oid(prefix: str = "bot") -> str:
    """Return a fresh idempotency token for an order submission."""
    return f"{prefix}_{uuid.uuid4().hex}"


@runtime_checkable
class AccountProtocol(Protocol):
    """Balances and positions of the trading account."""

    async def get_balance(self) -> dict[str, float]:
        """Available balance per coin, e.g. ``{"USDT": 125.0}``."""
        ...

    async def get_positions(self, instrument: Optional[str] = None) -> list[Position]:
        ...


@runtime_checkable
class ExecutorProtocol(Protocol):
    """Order submission.  Must treat a repeated ``client_oid`` as the same order."""

    async def open(self, intent: PositionIntent) -> OrderResult:
        ...


@runtime_checkable
class SpotExecutorProtocol(Protocol):
    """Spot market buys funded in quote currency."""

    async def get_spot_balance(self) -> dict[str, float]:
        ...

    async def buy_spot(
        self,
        instrument: str,
        quote_amount: float,
        client_oid: str,
        force: str = "gtc",
    ) -> OrderResult:
        ...


@runtime_checkable
class MarketDataProtocol(Protocol):
    """Latest bar per instrument and timeframe."""

    async def latest_bar(self, instrument: str, timeframe: str) -> Optional[MarketBar]:
        ...
