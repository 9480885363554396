"""Signal source protocol.

Technical-indicator and model-based generators live outside this package;
anything with an async ``generate`` of this shape can be plugged in.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from tradegate.models.trading import MarketBar, Signal


@runtime_checkable
class SignalSourceProtocol(Protocol):
    """Interface that all signal sources must satisfy."""

    async def generate(
        self,
        bar: MarketBar,
        instrument: str,
        timeframe: str,
    ) -> Optional[Signal]:
        """Return a signal for *instrument* on *timeframe*, or None."""
        ...
