"""Tracing, error reporting, metrics and event logs for bootstrap calls and gate actions.

OpenTelemetry, Sentry and Datadog are optional. Each one is discovered at
construction time and silently skipped when its package is not installed.
Event logs are single JSON lines on the ``tenantry.observability`` logger.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Any, Mapping

import msgspec

logger = logging.getLogger("tenantry.observability")


class MetricNames(msgspec.Struct, frozen=True):
    success: str
    error: str
    timing: str


class BootstrapObservabilityConfig(msgspec.Struct, frozen=True):
    span_name: str = "tenantry.bootstrap"
    metrics: MetricNames = MetricNames(
        success="tenantry.bootstrap.success",
        error="tenantry.bootstrap.errors",
        timing="tenantry.bootstrap.duration",
    )


class GateObservabilityConfig(msgspec.Struct, frozen=True):
    span_name: str = "tenantry.gate"
    metrics: MetricNames = MetricNames(
        success="tenantry.gate.success",
        error="tenantry.gate.errors",
        timing="tenantry.gate.duration",
    )


class ObservabilityConfig(msgspec.Struct, frozen=True):
    """Switches for each provider plus the names used for spans and metrics."""

    enabled: bool = True
    log_events: bool = True
    opentelemetry_enabled: bool = True
    opentelemetry_tracer: str = "tenantry"
    sentry_enabled: bool = True
    sentry_capture_exceptions: bool = True
    datadog_enabled: bool = True
    datadog_tags: tuple[tuple[str, str], ...] = ()
    bootstrap: BootstrapObservabilityConfig = BootstrapObservabilityConfig()
    gate: GateObservabilityConfig = GateObservabilityConfig()


@dataclass(slots=True)
class _Tracing:
    tracer: Any
    client_kind: Any = None
    internal_kind: Any = None
    status_type: Any = None
    ok: Any = None
    error: Any = None

    def status(self, code: Any, description: str | None = None) -> Any | None:
        if self.status_type is None or code is None:
            return None
        if description is None:
            return self.status_type(code)
        return self.status_type(code, description=description)


def _load_tracing(name: str) -> _Tracing | None:
    try:
        from opentelemetry import trace  # type: ignore[import-not-found]
    except ImportError:  # pragma: no cover - optional dependency
        return None
    tracing = _Tracing(trace.get_tracer(name))
    span_kind = getattr(trace, "SpanKind", None)
    if span_kind is not None:
        tracing.client_kind = getattr(span_kind, "CLIENT", None)
        tracing.internal_kind = getattr(span_kind, "INTERNAL", None)
    status_type = getattr(trace, "Status", None)
    status_code = getattr(trace, "StatusCode", None)
    if status_type is not None and status_code is not None:
        tracing.status_type = status_type
        tracing.ok = getattr(status_code, "OK", None)
        tracing.error = getattr(status_code, "ERROR", None)
    return tracing


def _load_sentry_hub() -> Any | None:
    try:
        import sentry_sdk  # type: ignore[import-not-found]
    except ImportError:  # pragma: no cover - optional dependency
        return None
    return sentry_sdk.Hub.current


def _load_statsd() -> Any | None:
    try:
        from datadog import statsd  # type: ignore[import-not-found]
    except ImportError:  # pragma: no cover - optional dependency
        return None
    return statsd


@dataclass(slots=True)
class Observation:
    """State carried from a ``*_start`` hook to its matching outcome hook."""

    metrics: MetricNames
    tags: tuple[str, ...]
    fields: dict[str, Any]
    stack: ExitStack = field(default_factory=ExitStack)
    span: Any = None
    started: float = field(default_factory=time.perf_counter)

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000.0


class Observability:
    """Fan bootstrap and gate events out to the configured providers."""

    def __init__(self, config: ObservabilityConfig | None = None) -> None:
        self.config = config or ObservabilityConfig()
        self._tracing: _Tracing | None = None
        self._sentry: Any | None = None
        self._statsd: Any | None = None
        self._tags = tuple(f"{key}:{value}" for key, value in self.config.datadog_tags)
        if self.config.enabled:
            if self.config.opentelemetry_enabled:
                self._tracing = _load_tracing(self.config.opentelemetry_tracer)
            if self.config.sentry_enabled:
                self._sentry = _load_sentry_hub()
            if self.config.datadog_enabled:
                self._statsd = _load_statsd()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def on_bootstrap_start(self, identity_id: str, tenant_name: str) -> Observation | None:
        settings = self.config.bootstrap
        observation = self._open(
            settings.span_name,
            settings.metrics,
            kind=self._tracing.client_kind if self._tracing else None,
            attributes={"tenantry.identity": identity_id, "tenantry.tenant_name": tenant_name},
            sentry_tags={"tenantry.identity": identity_id},
            fields={"identity_id": identity_id, "tenant_name": tenant_name},
        )
        if observation is not None:
            self._emit("bootstrap.start", observation.fields)
        return observation

    def on_bootstrap_success(self, observation: Observation | None, tenant_id: str | None) -> None:
        if observation is None:
            return
        if observation.span is not None and tenant_id is not None:
            observation.span.set_attribute("tenantry.tenant", tenant_id)
        self._finish(
            observation,
            "bootstrap.success",
            "created" if tenant_id is not None else "empty",
            tenant_id=tenant_id,
        )

    def on_bootstrap_error(self, observation: Observation | None, error: BaseException) -> None:
        self._abort(observation, "bootstrap.failure", error, report=True)

    def on_gate_start(self, action: str, tenant_id: str | None, actor_id: str | None) -> Observation | None:
        settings = self.config.gate
        return self._open(
            settings.span_name,
            settings.metrics,
            kind=self._tracing.internal_kind if self._tracing else None,
            attributes={"tenantry.action": action, "tenantry.tenant": tenant_id, "tenantry.actor": actor_id},
            sentry_tags={"tenantry.action": action, "tenantry.tenant": tenant_id or ""},
            fields={"action": action, "tenant_id": tenant_id, "actor_id": actor_id},
            tags=(f"action:{action}",),
        )

    def on_gate_success(self, observation: Observation | None) -> None:
        if observation is not None:
            self._finish(observation, "gate.success", "success")

    def on_gate_error(
        self,
        observation: Observation | None,
        error: BaseException,
        *,
        error_code: str | None = None,
        expected: bool = False,
    ) -> None:
        """Record a failed gate action.

        ``expected`` refusals (coded errors) are counted and logged but not
        reported to Sentry.
        """

        self._abort(observation, "gate.error", error, report=not expected, error_code=error_code)

    def _open(
        self,
        span_name: str,
        metrics: MetricNames,
        *,
        kind: Any,
        attributes: Mapping[str, Any],
        sentry_tags: Mapping[str, Any],
        fields: Mapping[str, Any],
        tags: tuple[str, ...] = (),
    ) -> Observation | None:
        if not self.config.enabled:
            return None
        observation = Observation(metrics=metrics, tags=(*self._tags, *tags), fields=dict(fields))
        if self._tracing is not None:
            span = observation.stack.enter_context(self._tracing.tracer.start_as_current_span(span_name, kind=kind))
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
            observation.span = span
        if self._sentry is not None:
            scope = observation.stack.enter_context(self._sentry.push_scope())
            for key, value in sentry_tags.items():
                scope.set_tag(key, value)
        return observation

    def _finish(self, observation: Observation, event: str, result: str, **extra: Any) -> None:
        self._count(observation, observation.metrics.success, f"result:{result}")
        if observation.span is not None:
            observation.span.set_attribute("tenantry.result", result)
            status = self._tracing.status(self._tracing.ok) if self._tracing else None
            if status is not None:
                observation.span.set_status(status)
        self._emit(event, {**observation.fields, **extra, "result": result})
        observation.stack.close()

    def _abort(
        self,
        observation: Observation | None,
        event: str,
        error: BaseException,
        *,
        report: bool,
        **extra: Any,
    ) -> None:
        if report and self._sentry is not None and self.config.sentry_capture_exceptions:
            self._sentry.capture_exception(error)
        if observation is None:
            return
        error_name = type(error).__name__
        self._count(observation, observation.metrics.error, f"error:{error_name}")
        span = observation.span
        if span is not None:
            span.set_attribute("tenantry.result", "error")
            span.record_exception(error)
            status = self._tracing.status(self._tracing.error, str(error)) if self._tracing else None
            if status is not None:
                span.set_status(status)
        self._emit(event, {**observation.fields, **extra, "error": error_name})
        if report:
            observation.stack.__exit__(type(error), error, error.__traceback__)
        else:
            observation.stack.close()

    def _count(self, observation: Observation, metric: str, outcome_tag: str) -> None:
        if self._statsd is None:
            return
        tags = [*observation.tags, outcome_tag]
        self._statsd.increment(metric, tags=tags)
        self._statsd.timing(observation.metrics.timing, observation.elapsed_ms(), tags=tags)

    def _emit(self, event: str, fields: Mapping[str, Any]) -> None:
        if not self.config.log_events:
            return
        payload = {"event": event, **{key: value for key, value in fields.items() if value is not None}}
        logger.info(json.dumps(payload, separators=(",", ":")))


__all__ = [
    "BootstrapObservabilityConfig",
    "GateObservabilityConfig",
    "MetricNames",
    "Observability",
    "ObservabilityConfig",
    "Observation",
]
