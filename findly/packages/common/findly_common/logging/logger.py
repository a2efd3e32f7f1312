"""
Process-wide logging setup for the semantic compiler.

Console output is always available. When the OpenTelemetry SDK is enabled the
root logger also ships records (and traces) through OTLP; when it is disabled
records go to a rotating local file instead.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from opentelemetry import _logs, trace
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import (
    OTLPLogExporter as GrpcOTLPLogExporter,
)
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
    OTLPSpanExporter as GrpcOTLPSpanExporter,
)
from opentelemetry.exporter.otlp.proto.http._log_exporter import (
    OTLPLogExporter as HttpOTLPLogExporter,
)
from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
    OTLPSpanExporter as HttpOTLPSpanExporter,
)
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from findly.packages.common.findly_common.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_DIR = "./"
DEFAULT_LOG_FILE = "findly.log"

_initialized = False


def get_root_logger() -> logging.Logger:
    """Return the process-wide root logger."""
    return logging.getLogger("")


def _otel_disabled() -> bool:
    return os.getenv("OTEL_SDK_DISABLED", "").strip().lower() in {"1", "true", "yes", "on"}


def _otlp_protocol(signal_env_key: str) -> str:
    value = os.getenv(signal_env_key) or os.getenv("OTEL_EXPORTER_OTLP_PROTOCOL", "grpc")
    return value.strip().lower()


def _exporter_enabled(env_key: str) -> bool:
    return os.getenv(env_key, "otlp").strip().lower() not in {"none", "disabled"}


def _file_handler(log_dir: str, log_file: str, formatter: logging.Formatter) -> RotatingFileHandler:
    os.makedirs(log_dir, exist_ok=True)
    handler = RotatingFileHandler(
        os.path.join(log_dir, log_file),
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setFormatter(formatter)
    return handler


def _install_otel(service_name: str, level: str | int) -> Optional[logging.Handler]:
    resource = Resource.create({"service.name": service_name})

    tracer_provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(tracer_provider)
    if _exporter_enabled("OTEL_TRACES_EXPORTER"):
        if _otlp_protocol("OTEL_EXPORTER_OTLP_TRACES_PROTOCOL") in {"http", "http/protobuf"}:
            span_exporter = HttpOTLPSpanExporter()
        else:
            span_exporter = GrpcOTLPSpanExporter()
        tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))

    if not _exporter_enabled("OTEL_LOGS_EXPORTER"):
        return None

    logger_provider = LoggerProvider(resource=resource)
    _logs.set_logger_provider(logger_provider)
    if _otlp_protocol("OTEL_EXPORTER_OTLP_LOGS_PROTOCOL") in {"http", "http/protobuf"}:
        log_exporter = HttpOTLPLogExporter()
    else:
        log_exporter = GrpcOTLPLogExporter()
    logger_provider.add_log_record_processor(BatchLogRecordProcessor(log_exporter))
    return LoggingHandler(level=level, logger_provider=logger_provider)


def setup_logging(
    *,
    service_name: Optional[str] = None,
    level: str | int | None = None,
    log_dir: str = DEFAULT_LOG_DIR,
    log_file: str = DEFAULT_LOG_FILE,
    with_console: bool = True,
) -> logging.Logger:
    """
    Configure the root logger once per process.
    Later calls only adjust the level.
    """
    global _initialized

    root = get_root_logger()
    resolved_level = level or settings.LOG_LEVEL
    root.setLevel(resolved_level.upper() if isinstance(resolved_level, str) else resolved_level)
    if _initialized:
        return root
    _initialized = True

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    handlers: list[logging.Handler] = []
    if with_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        handlers.append(console)

    if _otel_disabled():
        handlers.append(_file_handler(log_dir, log_file, formatter))
    else:
        otel_handler = _install_otel(service_name or settings.OTEL_SERVICE_NAME, root.level)
        if otel_handler is not None:
            handlers.append(otel_handler)

    existing = set(root.handlers)
    for handler in handlers:
        if handler not in existing:
            root.addHandler(handler)
    return root
