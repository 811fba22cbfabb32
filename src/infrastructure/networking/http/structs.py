from enum import Enum
from typing import Callable, Mapping, Optional

from infrastructure.exceptions.exchange import ExchangeRestError


class HTTPMethod(Enum):
    """HTTP methods."""
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"


# (status, headers, body) -> None; may raise a business error found in the payload
ResponseProcessor = Callable[[int, Mapping[str, str], bytes], None]

# (status, body) -> mapped venue error, or None when the body carries no error envelope
ErrorMapper = Callable[[int, bytes], Optional[ExchangeRestError]]

# Receives every venue business error, for operator alerting
ErrorCallback = Callable[[ExchangeRestError], None]
