"""Observability for program invocations.

Turns the CallRecords of an Invocation into structured observations,
per-step statistics and OTLP spans. Follows GenAI semantic conventions for
LLM observability.

Usage:
    from aiprogram.observability import summarize, observations

    output, invocation = program.invoke(question="...")

    summary = summarize(invocation)
    print(summary.to_markdown())

    # Export to an OTLP backend (requires opentelemetry-sdk)
    OTLPExporter(endpoint="http://localhost:4317").export(
        observations(invocation), summary
    )
"""

from __future__ import annotations

import importlib
import json
import statistics
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

if TYPE_CHECKING:
    from .core import CallRecord, Invocation


@dataclass
class ObservationRecord:
    """Observation of one provider attempt.

    Follows OpenTelemetry GenAI semantic conventions:
    https://opentelemetry.io/docs/specs/semconv/gen-ai/

    Attributes:
        step_id: Step the attempt belongs to
        attempt: 1-based attempt number within the step
        kind: Why the attempt was made (call, retry, suggest, assert)
        timestamp: ISO 8601 timestamp of the attempt
        elapsed_s: Duration in seconds
        success: Whether the provider call (and parse) succeeded
        predicate_passed: Predicate outcome, when one was evaluated
        error_type: Type of error if failed
        error_message: Error message if failed
    """

    step_id: str
    attempt: int
    kind: str
    timestamp: str
    elapsed_s: float
    success: bool = True
    predicate_passed: Optional[bool] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None

    # GenAI semantic conventions
    gen_ai_response_model: Optional[str] = None
    gen_ai_usage_input_tokens: Optional[int] = None
    gen_ai_usage_output_tokens: Optional[int] = None
    gen_ai_usage_total_tokens: Optional[int] = None
    gen_ai_response_finish_reason: Optional[str] = None

    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, omitting None values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != {}}

    @classmethod
    def from_call_record(cls, record: "CallRecord") -> "ObservationRecord":
        """Create from a CallRecord, reading model/usage from the reply metadata."""
        meta = record.metadata
        usage = meta.get("usage") or {}
        error = record.error
        return cls(
            step_id=record.step_id,
            attempt=record.attempt,
            kind=record.kind.value,
            timestamp=record.timestamp,
            elapsed_s=record.elapsed_s,
            success=record.success,
            predicate_passed=record.predicate_passed,
            error_type=type(error).__name__ if error is not None else None,
            error_message=str(error) if error is not None else None,
            gen_ai_response_model=meta.get("model"),
            gen_ai_usage_input_tokens=usage.get("prompt_tokens"),
            gen_ai_usage_output_tokens=usage.get("completion_tokens"),
            gen_ai_usage_total_tokens=usage.get("total_tokens"),
            gen_ai_response_finish_reason=meta.get("finish_reason"),
        )


@dataclass
class StepStats:
    """Per-step latency, failure and token totals."""

    step_id: str
    call_count: int
    success_count: int
    error_count: int
    predicate_failures: int
    total_elapsed_s: float
    min_elapsed_s: float
    max_elapsed_s: float
    mean_elapsed_s: float
    p50_elapsed_s: float
    p95_elapsed_s: float
    p99_elapsed_s: float
    error_rate: float
    total_input_tokens: Optional[int] = None  # None when no attempt reported usage
    total_output_tokens: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class TraceSummary:
    """Roll-up of one Invocation.

    ``by_step`` keeps execution order; ``counters`` is the invocation's
    Stats as a plain dict (retries, suggest warnings, assert failures).
    """

    program: str
    status: str
    total_calls: int
    total_errors: int
    total_elapsed_s: float
    by_step: Dict[str, StepStats]
    counters: Dict[str, Any] = field(default_factory=dict)
    total_input_tokens: Optional[int] = None
    total_output_tokens: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "program": self.program,
            "status": self.status,
            "calls": self.total_calls,
            "errors": self.total_errors,
            "elapsed_s": self.total_elapsed_s,
            "input_tokens": self.total_input_tokens,
            "output_tokens": self.total_output_tokens,
            "counters": dict(self.counters),
        }
        d["by_step"] = {name: s.to_dict() for name, s in self.by_step.items()}
        return d

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def to_markdown(self) -> str:
        """Render the summary as a markdown table, one row per step."""
        out = [f"# Trace Summary: {self.program}", ""]
        out.append(
            f"**Status:** {self.status} | **Calls:** {self.total_calls} | "
            f"**Errors:** {self.total_errors} | **Wall time:** {self.total_elapsed_s:.3f}s"
        )
        for label, tokens in (("Input", self.total_input_tokens), ("Output", self.total_output_tokens)):
            if tokens is not None:
                out.append(f"**Total {label} Tokens:** {tokens}")
        out += [
            "",
            "| Step | Calls | Errors | Predicate Failures | Mean (s) | P50 (s) | P95 (s) |",
            "|---|---|---|---|---|---|---|",
        ]
        for name, s in self.by_step.items():
            cells = [name, s.call_count, s.error_count, s.predicate_failures]
            cells += [f"{x:.3f}" for x in (s.mean_elapsed_s, s.p50_elapsed_s, s.p95_elapsed_s)]
            out.append("| " + " | ".join(str(c) for c in cells) + " |")
        return "\n".join(out)


def _compute_percentile(values: Sequence[float], percentile: float) -> float:
    """Linearly interpolated percentile; 0.0 for an empty sequence."""
    if not values:
        return 0.0
    ordered = sorted(values)
    position = (len(ordered) - 1) * percentile / 100
    lower = int(position)
    upper = min(lower + 1, len(ordered) - 1)
    return ordered[lower] + (position - lower) * (ordered[upper] - ordered[lower])


def observations(invocation: "Invocation") -> List[ObservationRecord]:
    """One ObservationRecord per CallRecord, in execution order."""
    return [ObservationRecord.from_call_record(r) for r in invocation.trace.records()]


def _step_stats(step_id: str, group: List[ObservationRecord]) -> StepStats:
    elapsed = [o.elapsed_s for o in group]
    errors = sum(1 for o in group if not o.success)
    reported = any(o.gen_ai_usage_total_tokens is not None for o in group)
    return StepStats(
        step_id=step_id,
        call_count=len(group),
        success_count=len(group) - errors,
        error_count=errors,
        predicate_failures=sum(1 for o in group if o.predicate_passed is False),
        total_elapsed_s=sum(elapsed),
        min_elapsed_s=min(elapsed),
        max_elapsed_s=max(elapsed),
        mean_elapsed_s=statistics.mean(elapsed),
        p50_elapsed_s=_compute_percentile(elapsed, 50),
        p95_elapsed_s=_compute_percentile(elapsed, 95),
        p99_elapsed_s=_compute_percentile(elapsed, 99),
        error_rate=errors / len(group),
        total_input_tokens=sum(o.gen_ai_usage_input_tokens or 0 for o in group) if reported else None,
        total_output_tokens=sum(o.gen_ai_usage_output_tokens or 0 for o in group) if reported else None,
    )


def summarize(invocation: "Invocation") -> TraceSummary:
    """Compute a TraceSummary from an Invocation's trace."""
    obs = observations(invocation)
    groups: Dict[str, List[ObservationRecord]] = {}
    for o in obs:
        groups.setdefault(o.step_id, []).append(o)
    by_step = {step_id: _step_stats(step_id, group) for step_id, group in groups.items()}

    with_usage = [s for s in by_step.values() if s.total_input_tokens is not None]
    return TraceSummary(
        program=invocation.program.name,
        status=invocation.status,
        total_calls=len(obs),
        total_errors=sum(s.error_count for s in by_step.values()),
        total_elapsed_s=invocation.elapsed_s,
        by_step=by_step,
        counters=invocation.stats.to_dict(),
        total_input_tokens=sum(s.total_input_tokens for s in with_usage) if with_usage else None,
        total_output_tokens=sum(s.total_output_tokens or 0 for s in with_usage) if with_usage else None,
    )


_EXPORTER_MODULES = {
    "grpc": ("opentelemetry.exporter.otlp.proto.grpc.trace_exporter", "opentelemetry-exporter-otlp-proto-grpc"),
    "http": ("opentelemetry.exporter.otlp.proto.http.trace_exporter", "opentelemetry-exporter-otlp-proto-http"),
}


@dataclass
class OTLPExporter:
    """Send one span per provider attempt to an OTLP collector.

    Needs the ``otlp`` extra (opentelemetry-sdk plus an OTLP exporter).
    Pass ``span_exporter`` to route spans elsewhere, e.g. an
    InMemorySpanExporter in tests or a ConsoleSpanExporter while debugging.

        exporter = OTLPExporter(endpoint="http://localhost:4317")
        exporter.export(observations(invocation), summarize(invocation))
    """

    endpoint: str = "http://localhost:4317"
    protocol: str = "grpc"  # "grpc" or "http"
    service_name: str = "aiprogram"
    insecure: bool = True
    headers: Optional[Dict[str, str]] = None
    span_exporter: Any = None

    def __post_init__(self) -> None:
        if self.protocol not in _EXPORTER_MODULES:
            raise ValueError(f"Unknown OTLP protocol: {self.protocol!r}")
        self._tracer: Any = None
        self._provider: Any = None

    def _make_span_exporter(self) -> Any:
        if self.span_exporter is not None:
            return self.span_exporter
        module_name, dist = _EXPORTER_MODULES[self.protocol]
        try:
            module = importlib.import_module(module_name)
        except ImportError as e:
            raise ImportError(f"OTLP {self.protocol} export needs: pip install {dist}") from e

        kwargs: Dict[str, Any] = {"endpoint": self.endpoint}
        if self.protocol == "grpc":
            kwargs["insecure"] = self.insecure
        if self.headers:
            kwargs["headers"] = self.headers
        return module.OTLPSpanExporter(**kwargs)

    def _ensure_tracer(self) -> None:
        if self._tracer is not None:
            return
        try:
            from opentelemetry.sdk.resources import Resource
            from opentelemetry.sdk.trace import TracerProvider
            from opentelemetry.sdk.trace.export import SimpleSpanProcessor
        except ImportError as e:
            raise ImportError("Span export needs: pip install 'aiprogram[otlp]'") from e

        self._provider = TracerProvider(resource=Resource.create({"service.name": self.service_name}))
        self._provider.add_span_processor(SimpleSpanProcessor(self._make_span_exporter()))
        self._tracer = self._provider.get_tracer("aiprogram")

    def export(
        self,
        observations: Sequence[ObservationRecord],
        summary: Optional[TraceSummary] = None,
    ) -> None:
        """Emit one CLIENT span per observation and flush."""
        self._ensure_tracer()

        from opentelemetry.trace import SpanKind, Status, StatusCode

        for obs in observations:
            start = datetime.fromisoformat(obs.timestamp.replace("Z", "+00:00"))
            start_ns = int(start.timestamp() * 1e9)
            span = self._tracer.start_span(f"step {obs.step_id}", kind=SpanKind.CLIENT, start_time=start_ns)
            try:
                for key, value in _span_attributes(obs, summary).items():
                    span.set_attribute(key, value)
                if not obs.success:
                    span.set_status(Status(StatusCode.ERROR, obs.error_message or obs.error_type or "error"))
            finally:
                span.end(end_time=start_ns + int(obs.elapsed_s * 1e9))

        self._provider.force_flush()

    def shutdown(self) -> None:
        if self._provider is not None:
            self._provider.shutdown()
            self._provider = None
            self._tracer = None


def _span_attributes(obs: ObservationRecord, summary: Optional[TraceSummary]) -> Dict[str, Any]:
    attrs: Dict[str, Any] = {
        "aiprogram.step": obs.step_id,
        "aiprogram.attempt": obs.attempt,
        "aiprogram.kind": obs.kind,
    }
    if summary is not None:
        attrs["aiprogram.program"] = summary.program
    optional = {
        "aiprogram.predicate_passed": obs.predicate_passed,
        "gen_ai.response.model": obs.gen_ai_response_model,
        "gen_ai.usage.input_tokens": obs.gen_ai_usage_input_tokens,
        "gen_ai.usage.output_tokens": obs.gen_ai_usage_output_tokens,
        "exception.type": obs.error_type,
        "exception.message": obs.error_message,
    }
    attrs.update({k: v for k, v in optional.items() if v is not None})
    if obs.gen_ai_response_finish_reason:
        attrs["gen_ai.response.finish_reasons"] = [obs.gen_ai_response_finish_reason]
    return attrs
