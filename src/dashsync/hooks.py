"""Observability hooks around each HTTP call."""

from dataclasses import dataclass
from typing import Any, Protocol

from loguru import logger


@dataclass(frozen=True, slots=True)
class RequestEvent:
    request_id: str
    method: str
    path: str
    params: dict[str, Any] | None
    started_at: float  # perf_counter seconds


@dataclass(frozen=True, slots=True)
class ResponseEvent:
    request_id: str
    method: str
    path: str
    status: int | None  # None when no response arrived
    elapsed_ms: float
    error: BaseException | None = None


class RequestHooks(Protocol):
    def before_request(self, event: RequestEvent) -> None: ...

    def after_response(self, event: ResponseEvent) -> None: ...


class LoggingHooks:
    """Default hooks: one loguru line per request and per response."""

    def __init__(self, debug: bool = False):
        self._debug = debug

    def before_request(self, event: RequestEvent) -> None:
        if self._debug:
            logger.bind(request_id=event.request_id).debug(
                f"-> {event.method} {event.path} params={event.params}"
            )

    def after_response(self, event: ResponseEvent) -> None:
        log = logger.bind(request_id=event.request_id)
        if event.error is not None:
            log.warning(
                f"<- {event.method} {event.path} failed after "
                f"{event.elapsed_ms:.0f}ms: {event.error}"
            )
        elif self._debug:
            log.debug(
                f"<- {event.method} {event.path} {event.status} "
                f"in {event.elapsed_ms:.0f}ms"
            )


class RecordingHooks:
    """Keeps every event; useful for tests and diagnostics."""

    def __init__(self) -> None:
        self.requests: list[RequestEvent] = []
        self.responses: list[ResponseEvent] = []

    def before_request(self, event: RequestEvent) -> None:
        self.requests.append(event)

    def after_response(self, event: ResponseEvent) -> None:
        self.responses.append(event)
