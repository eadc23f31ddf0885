"""
RebalanceAgent: one rebalance decision per trigger.

Cycle: Idle -> PricingAndSurvey -> ClosingOutOfRange -> Reallocating ->
OpeningPosition -> Idle. Out-of-range positions are fully closed and a fresh
position is opened around the current price; nothing is resized in place.
"""

import logging
import threading

from rangebot.allocation import compute_optimal_amounts
from rangebot.errors import InvalidRange, QueryFailed, SubmissionExhausted
from rangebot.models import (
    BalancesChanged,
    CycleReport,
    CycleState,
    Event,
    OperationFailed,
    PoolState,
    Position,
    PositionClosed,
    PositionOpened,
    PriceRange,
    PriceUpdate,
)
from rangebot.notifications import LoggingSink
from rangebot.ranges import compute_range, tick_to_price, to_tick_range

logger = logging.getLogger(__name__)


class RebalanceAgent:
    """Keeps one concentrated position straddling the pool price."""

    def __init__(
        self,
        settings,
        oracle,
        tracker,
        wallet,
        lp_manager,
        sink=None,
        stop_event: threading.Event | None = None,
    ):
        self.settings = settings
        self.oracle = oracle
        self.tracker = tracker
        self.wallet = wallet
        self.lp_manager = lp_manager
        self.sink = sink or LoggingSink()
        self.stop_event = stop_event or threading.Event()

        self.state = CycleState.IDLE
        # Single in-flight cycle
        self._cycle_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self, stop_event: threading.Event, once: bool = False) -> None:
        """Run a cycle, wait the check interval, repeat until stop_event is set."""
        self.stop_event = stop_event
        interval = self.settings.check_interval_seconds
        logger.info("Agent running. Checking every %ds.", interval)
        while not stop_event.is_set():
            self.run_cycle()
            if once:
                break
            stop_event.wait(interval)
        logger.info("Agent loop stopped.")

    def run_cycle(self) -> CycleReport | None:
        """Run one full cycle. Returns None if another cycle is still in flight."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Previous rebalance cycle still in flight, skipping this trigger")
            return None

        report = CycleReport()
        try:
            logger.info("Starting position management cycle")
            self._run_cycle(report)
            logger.info("Position management cycle completed")
        except InvalidRange as e:
            logger.error("Aborting cycle on invalid range: %s", e, exc_info=True)
            report.error = _describe_error(e)
            self._emit(OperationFailed("Invalid price range, cycle aborted", report.error))
        except Exception as e:
            logger.error("Error managing positions: %s", e, exc_info=True)
            report.error = _describe_error(e)
            self._emit(OperationFailed("Error during position management cycle", report.error))
        finally:
            self.state = CycleState.IDLE
            self._cycle_lock.release()
        return report

    # ------------------------------------------------------------------
    # Cycle stages
    # ------------------------------------------------------------------

    def _run_cycle(self, report: CycleReport) -> None:
        self._enter(CycleState.PRICING_AND_SURVEY, report)
        try:
            pool_state = self.oracle.get_pool_state()
        except QueryFailed as e:
            logger.warning("Price unavailable, skipping this cycle: %s", e)
            report.skip_reason = "price unavailable"
            self._emit(OperationFailed("Failed to read pool price", _describe_error(e)))
            return

        price = pool_state.current_price
        price_range = compute_range(price, self.settings.width_percent)
        report.pool_state = pool_state
        report.price_range = price_range
        logger.info(
            "Current price: %.4f | target range: %.4f - %.4f",
            price,
            price_range.lower_bound,
            price_range.upper_bound,
        )
        self._emit(PriceUpdate(price, price_range.lower_bound, price_range.upper_bound))

        try:
            positions = self.tracker.list_positions(self.wallet.address, pool_state)
        except QueryFailed as e:
            logger.warning("Position listing failed, assuming no positions this cycle: %s", e)
            self._emit(OperationFailed("Failed to list positions", _describe_error(e)))
            positions = []
        report.positions_seen = len(positions)
        logger.info("Found %d existing position(s)", len(positions))

        self._enter(CycleState.CLOSING_OUT_OF_RANGE, report)
        closed_any = self._close_out_of_range(positions, price, report)

        self._enter(CycleState.REALLOCATING, report)
        try:
            balances = self.wallet.get_balances()
        except QueryFailed as e:
            logger.warning("Balance query failed, not opening a position this cycle: %s", e)
            report.skip_reason = "balances unavailable"
            self._emit(OperationFailed("Failed to read wallet balances", _describe_error(e)))
            return
        logger.info("Current balances: base=%.6f quote=%.2f", balances.base, balances.quote)
        if closed_any:
            self._emit(BalancesChanged(balances.base, balances.quote))

        # Keep some base back for transaction fees
        available_base = balances.base - self.settings.min_base_reserve
        available_quote = balances.quote
        if (
            available_base < self.settings.min_base_for_position
            or available_quote < self.settings.min_quote_for_position
        ):
            logger.info(
                "Insufficient funds to create a new position. Requires %.4f base and %.2f "
                "quote, available %.4f base and %.2f quote",
                self.settings.min_base_for_position,
                self.settings.min_quote_for_position,
                available_base,
                available_quote,
            )
            report.skip_reason = "insufficient funds"
            return

        total_value = available_base * price + available_quote

        # No new on-chain work once shutdown has been requested
        if self.stop_event.is_set():
            logger.info("Shutdown requested, not opening a new position")
            report.skip_reason = "shutdown requested"
            return

        self._enter(CycleState.OPENING_POSITION, report)
        self._open_position(
            pool_state, price_range, available_base, available_quote, total_value, report
        )

    def _close_out_of_range(
        self, positions: list[Position], price: float, report: CycleReport
    ) -> bool:
        closed_any = False
        for position in positions:
            if self.stop_event.is_set():
                logger.info("Shutdown requested, leaving remaining positions for next run")
                break
            if self.tracker.is_in_range(position, price):
                logger.info(
                    "Position %s is in range (%.4f - %.4f), keeping",
                    position.id,
                    position.lower_price,
                    position.upper_price,
                )
                continue

            logger.info("Position %s is out of range, closing", position.id)
            try:
                confirmation = self.lp_manager.close_position(position)
            except Exception as e:
                logger.error("Failed to close position %s: %s", position.id, e)
                report.close_failures.append(position.id)
                self._emit(
                    OperationFailed(f"Failed to close position {position.id}", _describe_error(e))
                )
                if isinstance(e, SubmissionExhausted) and e.cancelled:
                    break
                continue

            closed_any = True
            report.closed.append(position.id)
            self._forget(position)
            self._emit(
                PositionClosed(
                    id=position.id,
                    range=position.price_range,
                    base_amount=position.base_amount,
                    quote_amount=position.quote_amount,
                    signature=confirmation.signature,
                )
            )
        return closed_any

    def _open_position(
        self,
        pool_state: PoolState,
        price_range: PriceRange,
        available_base: float,
        available_quote: float,
        total_value: float,
        report: CycleReport,
    ) -> None:
        price = pool_state.current_price
        # Never deploy 100%: leave a buffer for price movement before execution
        deployable = total_value * self.settings.deploy_fraction
        allocation = compute_optimal_amounts(
            price_range.lower_bound,
            price_range.upper_bound,
            price,
            deployable,
            min_base_amount=self.settings.min_base_amount,
            min_quote_amount=self.settings.min_quote_amount,
        )
        base_amount = min(allocation.base_amount, available_base)
        quote_amount = min(allocation.quote_amount, available_quote)
        tick_range = to_tick_range(
            price_range, pool_state.tick_spacing, decimal_shift=self.settings.decimal_shift
        )
        logger.info(
            "Creating new position with %.6f base and %.2f quote in ticks [%d, %d]",
            base_amount,
            quote_amount,
            tick_range.lower_tick,
            tick_range.upper_tick,
        )

        try:
            opened = self.lp_manager.open_position(tick_range, base_amount, quote_amount, pool_state)
        except InvalidRange:
            raise
        except Exception as e:
            logger.error("Failed to create new position: %s", e)
            report.error = _describe_error(e)
            self._emit(OperationFailed("Failed to create new position", report.error))
            return

        report.opened = opened
        self._remember(opened.id, tick_range.lower_tick, tick_range.upper_tick, price)
        shift = self.settings.decimal_shift
        self._emit(
            PositionOpened(
                id=opened.id,
                range=PriceRange(
                    tick_to_price(tick_range.lower_tick, shift),
                    tick_to_price(tick_range.upper_tick, shift),
                ),
                base_amount=base_amount,
                quote_amount=quote_amount,
                signature=opened.signature,
            )
        )

        try:
            balances = self.wallet.get_balances()
        except QueryFailed as e:
            logger.warning("Could not refresh balances after opening position: %s", e)
            return
        self._emit(BalancesChanged(balances.base, balances.quote))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _enter(self, state: CycleState, report: CycleReport) -> None:
        logger.debug("Cycle state %s -> %s", self.state.value, state.value)
        self.state = state
        report.last_state = state

    def _emit(self, event: Event) -> None:
        try:
            self.sink.emit(event)
        except Exception as e:
            logger.warning("Event sink failed on %s: %s", event.kind, e)

    def _remember(self, position_id: str, tick_lower: int, tick_upper: int, price: float) -> None:
        if not position_id.isdigit():
            logger.warning("Opened position has no token id (%s); not tracking it", position_id)
            return
        try:
            self.tracker.record_opened(int(position_id), tick_lower, tick_upper, price)
        except OSError as e:
            logger.error("Could not record position %s: %s", position_id, e)
            self._emit(OperationFailed(f"Failed to record position {position_id}", str(e)))

    def _forget(self, position: Position) -> None:
        try:
            self.tracker.record_closed(position.id)
        except OSError as e:
            logger.error("Could not forget position %s: %s", position.id, e)
            self._emit(OperationFailed(f"Failed to forget position {position.id}", str(e)))


def _describe_error(error: Exception) -> str:
    return f"{type(error).__name__}: {error}"
