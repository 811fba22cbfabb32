from enum import Enum, IntEnum


class ContractKind(Enum):
    """Kind of tradable contract."""
    SPOT = "spot"
    PERPETUAL = "perpetual"
    STOCK = "stock"


class Side(IntEnum):
    """Order side."""
    BUY = 1
    SELL = 2

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


OrderSide = Side


class OrderStatus(IntEnum):
    """Order execution status."""
    NEW = 1
    FILLED = 2
    PARTIALLY_FILLED = 3
    CANCELED = 4
    REJECTED = 7

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.REJECTED})


class OrderPhase(Enum):
    """Lifecycle phase of one order worker."""
    INITIAL = "initial"
    CREATING = "creating"
    WORKING = "working"
    CANCELING = "canceling"
    MODIFYING = "modifying"
    DONE = "done"
    FAILED = "failed"


class SnapshotSource(Enum):
    """Where an order observation came from."""
    PUSH = "push"
    POLL = "poll"


class RespCode(IntEnum):
    """Outcome of a synchronous gateway call."""
    OK = 0
    CONNECTION_ERROR = 1
    TIMEOUT = 2
    VENUE_ERROR = 3


class TimeInForce(IntEnum):
    """Time in force for orders."""
    GTC = 1  # Good Till Cancelled
    IOC = 2  # Immediate or Cancel
    FOK = 3  # Fill or Kill
    DAY = 4
