"""Error taxonomy for flow operations.

Every error raised below the orchestrator carries the HttpExchange captured
up to the point of failure (None when the failure happened before any
request was built).  The orchestrator turns these into a step's ``error``
status; none of them escape an orchestrator action.

  ValidationError: malformed or missing local input.
  ProtocolError:   a non-2xx response from the target, or a 2xx response
                    missing a field the operation cannot do without.
  TransportError:  the target (or the relay) could not be reached.
  IntegrityError:  the callback's state does not match the saved state.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.models.http_exchange import HttpExchange


class FlowError(Exception):
    def __init__(self, message: str, exchange: HttpExchange | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.exchange = exchange


class ValidationError(FlowError):
    pass


class ProtocolError(FlowError):
    def __init__(
        self,
        message: str,
        exchange: HttpExchange | None = None,
        *,
        status: int | None = None,
        error_code: str | None = None,
        error_description: str | None = None,
    ) -> None:
        super().__init__(message, exchange)
        self.status = status
        self.error_code = error_code
        self.error_description = error_description


class TransportError(FlowError):
    pass


class IntegrityError(FlowError):
    pass
