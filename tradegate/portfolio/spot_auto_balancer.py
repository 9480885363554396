"""Spot auto-balancer — deploys idle spot quote balance into target weights.

When the spot quote balance reaches a threshold, the balance is split across
the target allocations and bought at market.  Runs are time-gated by a
single last-run timestamp and never overlap.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

from tradegate.clock import Clock, SystemClock
from tradegate.exchange.base import SpotExecutorProtocol, new_client_oid
from tradegate.models.portfolio import DEFAULT_TARGET_ALLOCATIONS, validate_allocations

logger = logging.getLogger("tradegate.portfolio")

_FORCES = {"gtc", "ioc", "fok"}


@dataclass(frozen=True)
class AutoBalancerConfig:
    enabled: bool = True
    min_usdt_threshold: float = 50.0
    check_interval_seconds: float = 60.0
    target_allocations: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_TARGET_ALLOCATIONS)
    )
    min_order_amount: float = 5.0
    force: str = "gtc"
    quote_currency: str = "USDT"


class SpotAutoBalancer:
    """Threshold-triggered spot allocator.

    Args:
        spot: Spot balance reader and order executor.
        config: Balancer settings.
        clock: Time source for the check interval.
    """

    def __init__(
        self,
        spot: SpotExecutorProtocol,
        config: Optional[AutoBalancerConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._spot = spot
        self._config = config or AutoBalancerConfig()
        self._clock = clock or SystemClock()
        self._is_balancing = False
        self._last_run: Optional[datetime] = None
        self._last_summary: Optional[dict] = None

    @property
    def config(self) -> AutoBalancerConfig:
        return self._config

    def _within_interval(self) -> bool:
        if self._last_run is None:
            return False
        elapsed = (self._clock.now() - self._last_run).total_seconds()
        return elapsed < self._config.check_interval_seconds

    async def check_and_balance(self) -> Optional[dict]:
        """Run one balancing check.

        Returns ``None`` when the check was not performed (disabled, already
        running, or inside the check interval); otherwise a summary dict.
        """
        if not self._config.enabled:
            return None
        if self._is_balancing:
            logger.debug("Balancing already in progress, skipping check")
            return None
        if self._within_interval():
            return None

        self._is_balancing = True
        self._last_run = self._clock.now()
        try:
            quote = self._config.quote_currency
            try:
                balances = await self._spot.get_spot_balance()
            except Exception as exc:
                logger.error("Failed to read spot balance: %s", exc)
                summary = {"triggered": False, "error": str(exc)}
                self._last_summary = summary
                return summary

            available = float(balances.get(quote, 0.0))
            if available < self._config.min_usdt_threshold:
                logger.debug(
                    "Spot %s balance %.2f below threshold %.2f, no action needed",
                    quote, available, self._config.min_usdt_threshold,
                )
                summary = {"triggered": False, "balance": available}
            else:
                logger.info(
                    "Spot %s balance %.2f exceeds threshold %.2f, auto-balancing",
                    quote, available, self._config.min_usdt_threshold,
                )
                summary = await self._execute_balancing(available)
            self._last_summary = summary
            return summary
        finally:
            self._is_balancing = False

    async def _execute_balancing(self, total: float) -> dict:
        success_count = 0
        fail_count = 0
        skipped: list[str] = []
        orders: list[dict] = []

        for symbol, weight in self._config.target_allocations.items():
            amount = total * weight
            if amount < self._config.min_order_amount:
                logger.warning(
                    "Skipping %s: amount too small (%.2f, minimum %.2f)",
                    symbol, amount, self._config.min_order_amount,
                )
                skipped.append(symbol)
                continue
            try:
                result = await self._spot.buy_spot(
                    symbol, amount, new_client_oid("autobalance"), self._config.force,
                )
                if not result.order_id:
                    raise RuntimeError("No order ID in response")
                success_count += 1
                orders.append({"symbol": symbol, "amount": round(amount, 2), "order_id": result.order_id})
                logger.info("Purchased %.2f %s of %s", amount, self._config.quote_currency, symbol)
            except Exception as exc:
                fail_count += 1
                logger.error("Spot purchase failed for %s: %s", symbol, exc)

        logger.info(
            "Auto-balancing completed: %d successful, %d failed",
            success_count, fail_count,
        )
        return {
            "triggered": True,
            "balance": total,
            "success_count": success_count,
            "fail_count": fail_count,
            "skipped": skipped,
            "orders": orders,
        }

    def get_status(self) -> dict:
        return {
            "enabled": self._config.enabled,
            "is_balancing": self._is_balancing,
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "min_usdt_threshold": self._config.min_usdt_threshold,
            "check_interval_seconds": self._config.check_interval_seconds,
            "last_summary": self._last_summary,
        }

    def update_config(self, **changes) -> None:
        candidate = replace(self._config, **changes)
        if "target_allocations" in changes:
            validate_allocations(candidate.target_allocations)
        if candidate.force not in _FORCES:
            raise ValueError(f"force must be one of {sorted(_FORCES)}, got {candidate.force!r}")
        if candidate.check_interval_seconds <= 0:
            raise ValueError("check_interval_seconds must be positive")
        self._config = candidate
        logger.info("Auto-balancer configuration updated: %s", sorted(changes))
