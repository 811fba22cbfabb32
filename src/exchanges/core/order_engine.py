"""
Per-order state machine.

One OrderEngine drives one order from creation to a terminal state. Push
and poll snapshots are folded through the same apply_snapshot(), which is
monotone in (update_time, filled): stale observations are dropped, every
increase of filled yields exactly one Deal, and observers see the last
Deal before `finished` flips.

    INITIAL -> CREATING -> WORKING -> DONE
                  |           |  ^
                  v           v  |
                FAILED     CANCELING / MODIFYING

Venue integrations subclass and implement the _send_* / _fetch_snapshot
hooks. Hooks raise the exchange exception family; the engine classifies:
transport errors are retried on the next tick, business errors are fatal
on create, surfaced on cancel/modify, and fatal after max_poll_errors
consecutive poll failures.
"""

import asyncio
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Callable, List, Optional

from exchanges.core.balance_ledger import BalanceLedger
from exchanges.core.deal import derive_deal, next_avg_price
from exchanges.core.instrument_registry import InstrumentRegistry
from exchanges.structs import (
    Deal, Instrument, OrderPhase, OrderSnapshot, OrderState, OrderStatus, Side
)
from infrastructure.exceptions.exchange import (
    ExchangeBusinessError, ExchangeRestError, RateLimitErrorRest, UnknownOrderError
)
from infrastructure.exceptions.system import ConnectionClosedError, NotReadyError
from infrastructure.logging import HFTLoggerInterface, get_exchange_logger

DealObserver = Callable[[Deal], None]

# Failures with an unknown outcome: the request may or may not have reached the venue
TRANSPORT_ERRORS = (ExchangeRestError, ConnectionClosedError, NotReadyError, asyncio.TimeoutError)


def make_client_id(prefix: str = "vl") -> str:
    return f"{prefix}{uuid.uuid4().hex[:22]}"


def _now_ms() -> int:
    return int(time.time() * 1000)


class OrderEngine(ABC):

    # Venues without frozen balances in their account feed reserve client-side
    tracks_frozen: bool = False
    supports_modify: bool = False

    def __init__(self, venue: str, instrument: Instrument, side: Side, price: Decimal, size: Decimal,
                 post_only: bool = False, reduce_only: bool = False, purpose: str = "",
                 registry: Optional[InstrumentRegistry] = None,
                 ledger: Optional[BalanceLedger] = None,
                 client_id: Optional[str] = None,
                 poll_interval: float = 10.0,
                 max_poll_errors: int = 3,
                 logger: Optional[HFTLoggerInterface] = None):
        self.venue = venue
        self.instrument = instrument
        self.post_only = post_only
        self.reduce_only = reduce_only
        self.purpose = purpose
        self.registry = registry
        self.ledger = ledger
        self.poll_interval = poll_interval
        self.max_poll_errors = max_poll_errors
        self.logger = logger or get_exchange_logger(venue, 'order')

        self.state = OrderState(client_id=client_id or make_client_id(),
                                instrument_id=instrument.id,
                                side=side, price=price, size=size)
        self.phase = OrderPhase.INITIAL
        self.created = False

        self._lock = threading.Lock()
        self._observers: List[DealObserver] = []
        self._refresh_event = asyncio.Event()
        self._cancel_task: Optional[asyncio.Task] = None
        self._task: Optional[asyncio.Task] = None
        self._poll_errors = 0

    # -- read accessors --

    @property
    def client_id(self) -> str:
        return self.state.client_id

    @property
    def venue_id(self) -> Optional[str]:
        return self.state.venue_id

    @property
    def side(self) -> Side:
        return self.state.side

    @property
    def finished(self) -> bool:
        return self.state.finished

    @property
    def fatal_error(self) -> bool:
        return self.state.fatal_error

    @property
    def is_done(self) -> bool:
        """No further work expected: terminal status or given up on."""
        return self.state.finished or self.phase == OrderPhase.FAILED

    def add_observer(self, observer: DealObserver) -> None:
        with self._lock:
            self._observers.append(observer)

    def remove_observer(self, observer: DealObserver) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    # -- venue hooks --

    @abstractmethod
    async def _send_create(self) -> Optional[str]:
        """Place the order; returns the venue id when the reply carries one."""

    @abstractmethod
    async def _send_cancel(self) -> Optional[OrderSnapshot]:
        """Request cancellation; a returned snapshot is applied like any other."""

    async def _send_modify(self, price: Decimal, size: Decimal) -> Optional[OrderSnapshot]:
        raise NotImplementedError(f"{self.venue} does not support modify")

    @abstractmethod
    async def _fetch_snapshot(self) -> Optional[OrderSnapshot]:
        """Query the venue for the current order state."""

    async def _on_uninit(self) -> None:
        pass

    def _is_benign_cancel_error(self, error: ExchangeBusinessError) -> bool:
        return isinstance(error, UnknownOrderError)

    # -- reconciliation --

    def apply_snapshot(self, snapshot: OrderSnapshot) -> Optional[Deal]:
        """
        Fold one observation into the order state.

        Returns the Deal it produced, if any. Stale, duplicate and foreign
        snapshots are dropped without effect.
        """
        with self._lock:
            st = self.state
            if st.finished:
                return None
            if snapshot.client_id and snapshot.client_id != st.client_id:
                return None
            if snapshot.update_time < st.update_time or snapshot.filled < st.filled:
                if self.logger.isEnabledFor(logging.DEBUG):
                    self.logger.debug(f"Dropped stale snapshot for {st.client_id}",
                                      ts=snapshot.update_time, filled=str(snapshot.filled),
                                      state_ts=st.update_time, state_filled=str(st.filled))
                return None

            deal = derive_deal(st, snapshot, _now_ms())

            if snapshot.venue_id and not st.venue_id:
                st.venue_id = snapshot.venue_id
            if snapshot.price is not None and snapshot.price > 0:
                st.price = snapshot.price
            if snapshot.size is not None and snapshot.size > 0:
                st.size = snapshot.size
            st.avg_price = next_avg_price(st, snapshot, deal)
            st.filled = snapshot.filled
            st.status = snapshot.status
            st.update_time = snapshot.update_time
            terminal = snapshot.status.is_terminal
            observers = list(self._observers) if deal else []

        if st.venue_id:
            self._mark_created(st.venue_id)

        if deal:
            self._on_deal(deal)
            for observer in observers:
                try:
                    observer(deal)
                except Exception as e:
                    self.logger.error(f"Deal observer failed for {self.client_id}: {e}")

        if terminal:
            with self._lock:
                st.finished = True
                self.phase = OrderPhase.DONE
            self.logger.info(f"Order finished: {st}", venue=self.venue, purpose=self.purpose)
            self._refresh_event.set()

        self._update_frozen()
        return deal

    def _on_deal(self, deal: Deal) -> None:
        """Project the fill into the ledger until the next balance refresh."""
        if self.ledger is None:
            return
        notional = deal.amount * deal.price
        if self.side == Side.BUY:
            self.ledger.record_temp_rights(self.instrument.base, deal.amount, deal.local_time)
            self.ledger.record_temp_rights(self.instrument.quote, -notional, deal.local_time)
        else:
            self.ledger.record_temp_rights(self.instrument.base, -deal.amount, deal.local_time)
            self.ledger.record_temp_rights(self.instrument.quote, notional, deal.local_time)

    def _update_frozen(self) -> None:
        if not self.tracks_frozen or self.ledger is None:
            return
        st = self.state
        remaining = st.size - st.filled
        if st.finished or self.phase == OrderPhase.FAILED or remaining <= 0:
            self.ledger.clear_order_frozen(st.client_id)
        elif st.side == Side.BUY:
            self.ledger.set_order_frozen(st.client_id, self.instrument.quote, st.price * remaining)
        else:
            self.ledger.set_order_frozen(st.client_id, self.instrument.base, remaining)

    def _mark_created(self, venue_id: str) -> None:
        if self.created or not _is_positive_id(venue_id):
            return
        self.created = True
        if self.phase == OrderPhase.CREATING:
            self.phase = OrderPhase.WORKING
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(f"Order created {self.client_id} -> {venue_id}", venue=self.venue)

    def _fail(self, message: str) -> None:
        with self._lock:
            self.state.fatal_error = True
            self.state.error_message = message
            self.phase = OrderPhase.FAILED
        self._update_frozen()
        self._refresh_event.set()

    # -- protocol --

    async def create(self) -> None:
        self.phase = OrderPhase.CREATING
        self._update_frozen()
        try:
            venue_id = await self._send_create()
        except RateLimitErrorRest as e:
            self.logger.warning(f"Create throttled, will reconcile by poll: {e}",
                                venue=self.venue, client_id=self.client_id)
            return
        except ExchangeBusinessError as e:
            self.logger.error(f"Order rejected on create: {e.message}",
                              venue=self.venue, client_id=self.client_id, code=e.api_code)
            with self._lock:
                self.state.status = OrderStatus.REJECTED
                self.state.finished = True
            self._fail(e.message)
            return
        except TRANSPORT_ERRORS as e:
            # Outcome unknown; the poll loop finds the order by client id if it landed
            self.logger.warning(f"Create transport error, will reconcile by poll: {e}",
                                venue=self.venue, client_id=self.client_id)
            return

        self.logger.info(f"Order placed: {self.state}", venue=self.venue, purpose=self.purpose)
        if venue_id:
            with self._lock:
                if not self.state.venue_id:
                    self.state.venue_id = venue_id
            self._mark_created(venue_id)

    async def cancel(self) -> None:
        """Request cancellation. Concurrent calls join the one in flight."""
        if self.is_done:
            return
        if self._cancel_task is None or self._cancel_task.done():
            self._cancel_task = asyncio.create_task(self._do_cancel())
        await asyncio.shield(self._cancel_task)

    async def _do_cancel(self) -> None:
        self.phase = OrderPhase.CANCELING
        try:
            snapshot = await self._send_cancel()
            if snapshot is not None:
                self.apply_snapshot(snapshot)
        except RateLimitErrorRest as e:
            self.logger.warning(f"Cancel throttled: {e}", venue=self.venue, client_id=self.client_id)
        except ExchangeBusinessError as e:
            if not self._is_benign_cancel_error(e):
                self.logger.warning(f"Cancel rejected: {e.message}",
                                    venue=self.venue, client_id=self.client_id, code=e.api_code)
                raise
            if self.logger.isEnabledFor(logging.DEBUG):
                self.logger.debug(f"Cancel raced with terminal state: {e.message}", client_id=self.client_id)
        except TRANSPORT_ERRORS as e:
            self.logger.warning(f"Cancel transport error: {e}", venue=self.venue, client_id=self.client_id)
        finally:
            if self.phase == OrderPhase.CANCELING:
                self.phase = OrderPhase.WORKING if self.created else OrderPhase.CREATING
            # Final truth arrives by snapshot
            self.request_refresh()

    async def modify(self, price: Decimal, size: Decimal) -> bool:
        """
        Reprice/resize a resting order. A size under the minimum escalates to
        cancel. Returns True when the venue accepted the modification.
        """
        if not self.supports_modify:
            raise NotImplementedError(f"{self.venue} does not support modify")
        if self.is_done:
            return False

        inst_id = self.instrument.id
        if self.registry is not None:
            if size < self.registry.min_size(inst_id, price):
                self.logger.info(f"Modify size {size} below minimum, cancelling", client_id=self.client_id)
                await self.cancel()
                return False
            price = self.registry.align_price(inst_id, price, self.side, self.post_only)
            size = self.registry.align_size(inst_id, size)
        elif size < self.instrument.min_size:
            await self.cancel()
            return False

        self.phase = OrderPhase.MODIFYING
        try:
            snapshot = await self._send_modify(price, size)
        except RateLimitErrorRest as e:
            self.logger.warning(f"Modify throttled: {e}", venue=self.venue, client_id=self.client_id)
            return False
        except ExchangeBusinessError as e:
            self.logger.warning(f"Modify rejected: {e.message}", venue=self.venue, client_id=self.client_id)
            raise
        except TRANSPORT_ERRORS as e:
            self.logger.warning(f"Modify transport error: {e}", venue=self.venue, client_id=self.client_id)
            return False
        finally:
            if self.phase == OrderPhase.MODIFYING:
                self.phase = OrderPhase.WORKING

        with self._lock:
            if not self.state.finished:
                self.state.price = price
                self.state.size = size
        if snapshot is not None:
            self.apply_snapshot(snapshot)
        self._update_frozen()
        return True

    async def poll(self) -> None:
        try:
            snapshot = await self._fetch_snapshot()
        except RateLimitErrorRest as e:
            # Throttling does not count toward max_poll_errors
            self.logger.warning(f"Poll throttled: {e}", venue=self.venue, client_id=self.client_id)
            if e.retry_after:
                await asyncio.sleep(e.retry_after)
            return
        except ExchangeBusinessError as e:
            self._poll_errors += 1
            self.logger.warning(f"Poll error {self._poll_errors}/{self.max_poll_errors}: {e.message}",
                                venue=self.venue, client_id=self.client_id)
            if self._poll_errors >= self.max_poll_errors:
                self._fail(e.message)
                self.logger.error(f"Order marked fatal after repeated poll errors: {self.state}",
                                  venue=self.venue)
            return
        except TRANSPORT_ERRORS as e:
            self.logger.warning(f"Poll transport error: {e}", venue=self.venue, client_id=self.client_id)
            return

        self._poll_errors = 0
        if snapshot is not None:
            self.apply_snapshot(snapshot)

    def request_refresh(self) -> None:
        """Wake the poll loop now instead of at the next tick."""
        self._refresh_event.set()

    async def run(self) -> None:
        """Order task: create, then poll until done."""
        if self.phase == OrderPhase.INITIAL:
            await self.create()
        while not self.is_done:
            try:
                await asyncio.wait_for(self._refresh_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            self._refresh_event.clear()
            if self.is_done:
                break
            await self.poll()

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def uninit(self) -> None:
        """Release resources held for this order; called once it is done."""
        await self.stop()
        if self.ledger is not None:
            self.ledger.clear_order_frozen(self.client_id)
        await self._on_uninit()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.state}, phase={self.phase.name})"


def _is_positive_id(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        return int(value) > 0
    except ValueError:
        return True


__all__ = ['OrderEngine', 'DealObserver', 'TRANSPORT_ERRORS', 'make_client_id']
