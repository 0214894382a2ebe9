"""
Periodic accrual scheduler.

The only mutation path not triggered by a request: every tick credits each
live participant with a sliver of their effective rate, then refreshes the
liquidity model. In the server this runs as an asyncio task on the same
event loop as the request handlers, so ticks and requests never interleave.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from ..state.schema import FACILITIES, PRODUCTS, DEFAULT_FACILITY, DEFAULT_PRODUCT, Participant, Phase, Role, round_money

if TYPE_CHECKING:
    from ..engine import GameEngine

logger = logging.getLogger(__name__)

IDLE_PHASES = frozenset({Phase.LOBBY, Phase.END})


class AccrualScheduler:
    """Credits interest and spread on a fixed cadence."""

    def __init__(self, engine: "GameEngine"):
        self._engine = engine
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def rate(self, participant: Participant) -> float:
        """Effective annual rate in percent; zero until a phase-1 choice is committed."""
        state = self._engine.state
        acct = participant.account
        if state.session.phase == Phase.PHASE1 and not acct.commitment.confirmed:
            return 0.0

        if participant.role == Role.DEPOSITOR:
            return PRODUCTS.get(acct.product or "", PRODUCTS[DEFAULT_PRODUCT]).rate

        facility = FACILITIES.get(acct.facility or "", FACILITIES[DEFAULT_FACILITY])
        override = max(0, acct.spread_bps_override) / 100
        return state.metrics.libor_pct + facility.spread_bps / 100 + override

    def accrue(self) -> int:
        """
        Apply one accrual step to every live participant.

        Returns the number of participants credited. Does nothing in the
        lobby or after the end.
        """
        state = self._engine.state
        state.ticks += 1
        state.last_tick_at = self._engine.now()

        if state.session.phase in IDLE_PHASES:
            return 0

        fraction = self._engine.config.accrual_fraction
        credited = 0
        for p in state.participants.values():
            if p.is_spectator:
                continue
            exposure = 1.0
            if p.role == Role.WHOLESALE:
                exposure = max(0.1, p.account.exposure_pct / 100)
            gain = p.balance * exposure * self.rate(p) / 100 * fraction
            p.balance = round_money(p.balance + gain)
            credited += 1

        self._engine.liquidity.recompute()
        return credited

    # -------------------------------------------------------------------------
    # Background loop
    # -------------------------------------------------------------------------

    def start(self) -> asyncio.Task:
        """Start ticking on the running event loop."""
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        interval = self._engine.config.tick_seconds
        logger.info("Accrual loop started (every %.1fs)", interval)
        while True:
            await asyncio.sleep(interval)
            try:
                self._engine.tick()
            except Exception:
                logger.exception("Accrual tick failed")
