from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime


def now_ms() -> int:
    return int(datetime.now(UTC).timestamp() * 1000)


@dataclass(frozen=True, slots=True)
class HttpRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status: int
    status_text: str
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""


@dataclass(frozen=True, slots=True)
class HttpExchange:
    """One request attempt as it was sent and (if anything came back) answered.

    Kept on the step whether the attempt succeeded or not.
    """

    request: HttpRequest
    timestamp: int
    response: HttpResponse | None = None
    error: str | None = None
