from typing import Optional, Dict, List
from msgspec import Struct, field


class NetworkConfig(Struct, frozen=True):
    """
    Network configuration settings.

    Attributes:
        request_timeout: HTTP request timeout in seconds
        connect_timeout: Connection timeout in seconds
        max_retries: Maximum number of retry attempts for callers that own a retry policy
        retry_delay: Base delay between retries in seconds
    """
    request_timeout: float = 10.0
    connect_timeout: float = 5.0
    max_retries: int = 3
    retry_delay: float = 1.0

    def validate(self) -> None:
        """Validate network configuration."""
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.retry_delay < 0:
            raise ValueError("retry_delay cannot be negative")


class WebSocketConfig(Struct, frozen=True):
    """
    WebSocket carrier configuration.

    Attributes:
        # Connection settings
        connect_timeout: WebSocket connection timeout in seconds
        ping_interval: Protocol-level ping interval in seconds (None disables)
        ping_timeout: Protocol-level ping timeout in seconds
        close_timeout: Connection close timeout in seconds

        # Liveness settings
        read_idle_timeout: Reader inactivity before forced reconnect
        heartbeat_interval: Writer idle time before an application heartbeat
        ack_timeout: Time a subscriber may stay unacknowledged before resend
        resubscribe_interval: How often the writer checks unhealthy subscribers

        # Reconnection settings
        max_reconnect_attempts: Number of precomputed backoff steps
        reconnect_delay: Base delay between reconnection attempts in seconds
        reconnect_backoff: Backoff multiplier for reconnection delays
        max_reconnect_delay: Maximum reconnection delay in seconds

        # Performance settings
        max_message_size: Maximum message size in bytes
        max_queue_size: Maximum inbound queue size
    """
    # Connection settings
    connect_timeout: float = 10.0
    ping_interval: Optional[float] = 20.0
    ping_timeout: Optional[float] = 10.0
    close_timeout: float = 5.0

    # Liveness settings
    read_idle_timeout: float = 60.0
    heartbeat_interval: Optional[float] = None
    ack_timeout: float = 5.0
    resubscribe_interval: float = 5.0

    # Reconnection settings
    max_reconnect_attempts: int = 10
    reconnect_delay: float = 1.0
    reconnect_backoff: float = 2.0
    max_reconnect_delay: float = 60.0

    # Performance settings
    max_message_size: int = 1048576  # 1MB
    max_queue_size: int = 1000

    @property
    def has_heartbeat(self) -> bool:
        """Check if application heartbeat is enabled."""
        return self.heartbeat_interval is not None and self.heartbeat_interval > 0

    def validate(self) -> None:
        """Validate websocket configuration."""
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")
        if self.read_idle_timeout <= 0:
            raise ValueError("read_idle_timeout must be positive")
        if self.ack_timeout <= 0:
            raise ValueError("ack_timeout must be positive")
        if self.reconnect_delay < 0:
            raise ValueError("reconnect_delay cannot be negative")
        if self.reconnect_backoff < 1.0:
            raise ValueError("reconnect_backoff must be >= 1.0")
        if self.max_reconnect_attempts <= 0:
            raise ValueError("max_reconnect_attempts must be positive")


class ExchangeCredentials(Struct, frozen=True):
    """Venue API credentials."""
    api_key: str = ""
    secret_key: str = ""

    @property
    def has_private_api(self) -> bool:
        """Check if credentials are configured for private API access."""
        return bool(self.api_key) and bool(self.secret_key)

    def get_preview(self) -> str:
        """Safe preview of the key for logging."""
        if not self.api_key:
            return "Not configured"
        if len(self.api_key) > 8:
            return f"{self.api_key[:4]}...{self.api_key[-4:]}"
        return "***"


class VenueConfig(Struct, frozen=True):
    """
    Complete REST/WebSocket venue configuration.

    Attributes:
        name: Venue name (e.g. 'binance')
        base_url: REST base URL
        websocket_url: Public WebSocket URL (user stream URLs are derived from it)
        credentials: API credentials
        recv_window: Signed request validity window in milliseconds
        poll_interval: Per-order poll cadence in seconds
        catalog_refresh_hour: Local hour of the daily catalog reload
    """
    name: str
    base_url: str
    websocket_url: str
    credentials: ExchangeCredentials = field(default_factory=ExchangeCredentials)
    recv_window: int = 10000
    poll_interval: float = 10.0
    catalog_refresh_hour: int = 8

    def validate(self) -> None:
        if not self.name:
            raise ValueError("venue name is required")
        if not self.base_url:
            raise ValueError(f"{self.name}: base_url is required")
        if not self.websocket_url.startswith(('ws://', 'wss://')):
            raise ValueError(f"{self.name}: websocket_url must start with ws:// or wss://")
        if self.recv_window <= 0:
            raise ValueError("recv_window must be positive")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if not 0 <= self.catalog_refresh_hour < 24:
            raise ValueError("catalog_refresh_hour must be in [0, 24)")


class GatewayConnectionConfig(Struct, frozen=True):
    """
    Broker gateway (TWS/IB Gateway) connection settings.

    Attributes:
        address: Gateway host
        port: Gateway port
        client_id: API client id
        request_timeout: Sync-over-async wait timeout in seconds
        reconnect_delay: Backoff before reconnecting after a fatal error
        max_buffer_size: Largest frame accepted before the session is reset
    """
    address: str = "127.0.0.1"
    port: int = 7497
    client_id: int = 1
    request_timeout: float = 5.0
    reconnect_delay: float = 3.0
    max_buffer_size: int = 16 * 1024 * 1024

    def validate(self) -> None:
        if not self.address:
            raise ValueError("connection.address is required")
        if not 0 < self.port < 65536:
            raise ValueError("connection.port must be a valid TCP port")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")


class ContractConfig(Struct, frozen=True):
    """
    Per-instrument trading contract settings.

    max_price_dist_abs / max_price_dist_rel define the envelope around the
    best price inside which new orders are accepted.
    """
    symbol: str
    currency: str = "USD"
    sec_type: str = "STK"
    exchange: str = "SMART"
    time_in_force: str = "GTC"
    max_price_dist_abs: float = 0.0
    max_price_dist_rel: float = 0.0

    def validate(self) -> None:
        if not self.symbol:
            raise ValueError("contract symbol is required")
        if self.max_price_dist_abs < 0 or self.max_price_dist_rel < 0:
            raise ValueError(f"{self.symbol}: price distance tolerances cannot be negative")


class BalanceConfig(Struct, frozen=True):
    """Balance ledger settings: per-currency pitch tolerance and readiness window."""
    max_pitch_allowed: Dict[str, float] = {}
    ready_window: float = 300.0

    def validate(self) -> None:
        for ccy, value in self.max_pitch_allowed.items():
            if value < 0:
                raise ValueError(f"max_pitch_allowed[{ccy}] cannot be negative")
        if self.ready_window <= 0:
            raise ValueError("ready_window must be positive")


class RateLimitConfig(Struct, frozen=True):
    """
    Pacing of paginated historical pulls.

    Attributes:
        min_interval_ms: Minimum spacing between page requests
        error_backoff: Sleep after a transport error, in seconds
        max_errors: Errors tolerated before a partial result is returned
        page_limit: Records requested per page
    """
    min_interval_ms: int = 1200
    error_backoff: float = 10.0
    max_errors: int = 5
    page_limit: int = 1000

    def validate(self) -> None:
        if self.min_interval_ms < 0:
            raise ValueError("min_interval_ms cannot be negative")
        if self.max_errors <= 0:
            raise ValueError("max_errors must be positive")
        if self.page_limit <= 0:
            raise ValueError("page_limit must be positive")


class CacheConfig(Struct, frozen=True):
    """Series cache disk layer settings."""
    enabled: bool = True
    root: str = "cache"

    def validate(self) -> None:
        if self.enabled and not self.root:
            raise ValueError("cache.root is required when the cache is enabled")


class IbkrConfig(Struct, frozen=True):
    """Broker venue settings: gateway connection plus configured contracts and currencies."""
    connection: GatewayConnectionConfig = field(default_factory=GatewayConnectionConfig)
    contracts: List[ContractConfig] = []
    currencies: List[str] = []
    time_zone: str = "America/New_York"
    catalog_refresh_hour: int = 8

    def validate(self) -> None:
        self.connection.validate()
        for contract in self.contracts:
            contract.validate()
