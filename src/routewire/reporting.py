from __future__ import annotations

import logging
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Protocol

from routewire.exceptions import CastError, CircularDependencyError, HttpError
from routewire.request import Request, Response

logger = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class ErrorReport:
    """Structured description of a failed request, independent of transport."""

    kind: str
    """Exception class name."""
    message: str
    status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR
    param_name: str | None = None
    chain: list[str] | None = None
    stage: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, error: BaseException) -> ErrorReport:
        status = HTTPStatus.INTERNAL_SERVER_ERROR
        data: dict[str, Any] = {}
        if isinstance(error, HttpError):
            status = error.status
            data = dict(error.data)
        return cls(
            kind=type(error).__name__,
            message=str(error),
            status=status,
            param_name=error.param_name if isinstance(error, CastError) else None,
            chain=error.chain if isinstance(error, CircularDependencyError) else None,
            stage=getattr(error, "stage", None),
            data=data,
        )


class ErrorReporter(Protocol):
    """Turn an ``ErrorReport`` into the response sent to the client."""

    def report(self, report: ErrorReport, request: Request) -> Response: ...


class LoggingErrorReporter:
    """Log failed requests and answer with a JSON error payload.

    Client errors (4xx) are logged at WARNING, server errors at ERROR. The
    payload carries ``url``, ``path``, ``method``, ``name``, ``message``,
    ``statusMessage``, ``status`` and ``data``.
    """

    def report(self, report: ErrorReport, request: Request) -> Response:
        level = logging.ERROR if report.status >= HTTPStatus.INTERNAL_SERVER_ERROR else logging.WARNING
        logger.log(
            level,
            "%s %s failed with %s (%d): %s",
            request.method,
            request.path,
            report.kind,
            report.status,
            report.message,
        )
        return Response(status=report.status, body=self.payload(report, request))

    @staticmethod
    def payload(report: ErrorReport, request: Request) -> dict[str, Any]:
        return {
            "url": request.url,
            "path": request.path,
            "method": request.method,
            "name": report.kind,
            "message": report.message,
            "statusMessage": report.status.phrase,
            "status": int(report.status),
            "data": report.data,
        }
