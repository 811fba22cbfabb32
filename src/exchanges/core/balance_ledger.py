"""
Per-currency balance ledger.

Authoritative refreshes come from the venue (account snapshot or push).
Between refreshes, order fills project their effect through
record_temp_rights; the next refresh reports the pitch, the divergence
between what the venue says and what was projected locally. A non-zero
pitch means events were missed.

Venues that do not report frozen amounts rely on client-side per-order
reservations (set_order_frozen / clear_order_frozen).
"""

import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Optional

from config.structs import BalanceConfig
from exchanges.structs import Balance, ZERO
from infrastructure.logging import HFTLoggerInterface, get_exchange_logger

PitchCallback = Callable[[str, Decimal], None]


@dataclass
class _Entry:
    rights: Decimal = ZERO
    frozen: Decimal = ZERO
    last_update: int = 0
    temp_rights_delta: Decimal = ZERO
    refreshed: bool = False


def _now_ms() -> int:
    return int(time.time() * 1000)


class BalanceLedger:

    def __init__(self, venue: str, config: Optional[BalanceConfig] = None,
                 on_pitch: Optional[PitchCallback] = None,
                 logger: Optional[HFTLoggerInterface] = None):
        self.venue = venue
        self.config = config or BalanceConfig()
        self.on_pitch = on_pitch
        self.logger = logger or get_exchange_logger(venue, 'balances')

        self._lock = threading.Lock()
        self._entries: Dict[str, _Entry] = {}
        # order_id -> (currency, amount)
        self._order_frozen: Dict[str, tuple] = {}
        self._max_pitch = {ccy.upper(): Decimal(str(v)) for ccy, v in self.config.max_pitch_allowed.items()}

    def max_pitch_allowed(self, currency: str) -> Decimal:
        return self._max_pitch.get(currency.upper(), ZERO)

    def refresh(self, currency: str, rights: Decimal, frozen: Optional[Decimal] = None,
                ts: Optional[int] = None) -> Optional[Decimal]:
        """
        Apply an authoritative venue balance.

        Returns:
            The pitch (reported rights minus locally projected rights), or
            None when the update is older than the last one and was dropped.
        """
        currency = currency.upper()
        ts = _now_ms() if ts is None else ts
        with self._lock:
            entry = self._entries.setdefault(currency, _Entry())
            if ts < entry.last_update:
                dropped = True
            else:
                dropped = False
                had_previous = entry.refreshed
                pitch = rights - (entry.rights + entry.temp_rights_delta)
                entry.rights = rights
                entry.frozen = frozen if frozen is not None else ZERO
                entry.temp_rights_delta = ZERO
                entry.last_update = ts
                entry.refreshed = True

        if dropped:
            if self.logger.isEnabledFor(logging.DEBUG):
                self.logger.debug(f"Dropped out-of-order balance for {currency}",
                                  venue=self.venue, ts=ts)
            return None

        if had_previous and abs(pitch) > self.max_pitch_allowed(currency):
            self.logger.warning(f"Balance pitch for {currency}: {pitch}",
                                venue=self.venue, currency=currency, rights=str(rights), pitch=str(pitch))
            if self.on_pitch:
                try:
                    self.on_pitch(currency, pitch)
                except Exception as e:
                    self.logger.error(f"Pitch callback failed: {e}", venue=self.venue)
        return pitch

    def record_temp_rights(self, currency: str, delta: Decimal, ts: Optional[int] = None) -> None:
        """Project a fill's effect until the next authoritative refresh."""
        currency = currency.upper()
        ts = _now_ms() if ts is None else ts
        with self._lock:
            entry = self._entries.setdefault(currency, _Entry())
            # Already covered by a newer refresh
            if ts < entry.last_update:
                return
            entry.temp_rights_delta += delta

    def set_order_frozen(self, order_id: str, currency: str, amount: Decimal) -> None:
        with self._lock:
            if amount > 0:
                self._order_frozen[order_id] = (currency.upper(), amount)
            else:
                self._order_frozen.pop(order_id, None)

    def clear_order_frozen(self, order_id: str) -> None:
        with self._lock:
            self._order_frozen.pop(order_id, None)

    def _client_frozen_locked(self, currency: str) -> Optional[Decimal]:
        amounts = [amount for ccy, amount in self._order_frozen.values() if ccy == currency]
        if not amounts:
            return None
        return sum(amounts, ZERO)

    def client_frozen(self, currency: str) -> Decimal:
        with self._lock:
            return self._client_frozen_locked(currency.upper()) or ZERO

    def _frozen_locked(self, currency: str, entry: _Entry) -> Decimal:
        client = self._client_frozen_locked(currency)
        return client if client is not None else entry.frozen

    def available(self, currency: str) -> Decimal:
        currency = currency.upper()
        with self._lock:
            entry = self._entries.get(currency)
            if entry is None:
                return -(self._client_frozen_locked(currency) or ZERO)
            return entry.rights - self._frozen_locked(currency, entry)

    def get(self, currency: str) -> Optional[Balance]:
        currency = currency.upper()
        with self._lock:
            entry = self._entries.get(currency)
            if entry is None:
                return None
            return Balance(currency=currency, rights=entry.rights,
                           frozen=self._frozen_locked(currency, entry),
                           last_update=entry.last_update,
                           temp_rights_delta=entry.temp_rights_delta)

    def get_all(self) -> Dict[str, Balance]:
        with self._lock:
            currencies = list(self._entries)
        return {ccy: bal for ccy in currencies if (bal := self.get(ccy)) is not None}

    def is_ready(self, currency: str, now: Optional[int] = None) -> bool:
        """True when the last refresh lies within the readiness window."""
        now = _now_ms() if now is None else now
        with self._lock:
            entry = self._entries.get(currency.upper())
            if entry is None or not entry.refreshed:
                return False
            return now - entry.last_update <= self.config.ready_window * 1000
