from routewire.app import Application, create_app
from routewire.config import AppConfig, Injection, RouteWireSettings
from routewire.container import Container, injectable
from routewire.deferred import DeferredHandle
from routewire.exceptions import (
    AsyncDependencyInSyncContextError,
    CastError,
    CircularDependencyError,
    DuplicateTokenError,
    HttpError,
    InvalidRegistrationError,
    MissingBindingError,
    PayloadTooLargeError,
    RouteWireConfigurationError,
    RouteWireError,
    UnknownTokenError,
    UnresolvableDependencyError,
    ValidationPipeError,
    WiringValidationError,
)
from routewire.markers import (
    Body,
    DeepLocal,
    Header,
    Inject,
    Injected,
    Local,
    Logger,
    Param,
    Query,
    Req,
)
from routewire.pipes import ParamMetadata, PipeTransform, ValidationPipe, validation_pipe
from routewire.reporting import ErrorReport, ErrorReporter, LoggingErrorReporter
from routewire.request import Request, Response
from routewire.routing import controller, delete, get, middleware, patch, post, put, use_pipes
from routewire.scope import Scope

__all__ = [
    "AppConfig",
    "Application",
    "AsyncDependencyInSyncContextError",
    "Body",
    "CastError",
    "CircularDependencyError",
    "Container",
    "DeepLocal",
    "DeferredHandle",
    "DuplicateTokenError",
    "ErrorReport",
    "ErrorReporter",
    "Header",
    "HttpError",
    "Inject",
    "Injected",
    "Injection",
    "InvalidRegistrationError",
    "Local",
    "Logger",
    "LoggingErrorReporter",
    "MissingBindingError",
    "Param",
    "ParamMetadata",
    "PayloadTooLargeError",
    "PipeTransform",
    "Query",
    "Req",
    "Request",
    "Response",
    "RouteWireConfigurationError",
    "RouteWireError",
    "RouteWireSettings",
    "Scope",
    "UnknownTokenError",
    "UnresolvableDependencyError",
    "ValidationPipe",
    "ValidationPipeError",
    "WiringValidationError",
    "controller",
    "create_app",
    "delete",
    "get",
    "injectable",
    "middleware",
    "patch",
    "post",
    "put",
    "use_pipes",
    "validation_pipe",
]
