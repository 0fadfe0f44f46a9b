"""Experiment guardrails.

A pure check of live metrics against safety thresholds.  It only reports;
deciding whether to halt an experiment is up to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class GuardrailThresholds:
    error_rate: float = 0.05  # max error rate (0-1)
    p95_latency_ms: float = 3000
    conversion_harm: float = -0.10  # min relative change vs baseline


@dataclass
class GuardrailMetrics:
    error_rate: float | None = None
    p95_latency_ms: float | None = None
    conversion_rate: float | None = None
    baseline_conversion_rate: float | None = None


@dataclass
class GuardrailResult:
    violated: bool
    reasons: list[str] = field(default_factory=list)


def check_guardrails(
    experiment_id: str,
    metrics: GuardrailMetrics | dict,
    thresholds: GuardrailThresholds | None = None,
) -> GuardrailResult:
    """Compare ``metrics`` with ``thresholds`` and explain every violation.

    Parameters
    ----------
    experiment_id : str
        Experiment being checked.  Thresholds are not yet per-experiment.
    metrics : GuardrailMetrics | dict
        Observed values; missing values are not checked.
    thresholds : GuardrailThresholds, optional
        Defaults to 5% error rate, 3000 ms p95 latency and a 10% relative
        conversion drop.

    Returns
    -------
    GuardrailResult
        ``violated`` is True when ``reasons`` is non-empty.
    """
    if isinstance(metrics, dict):
        metrics = GuardrailMetrics(**metrics)
    limits = thresholds or GuardrailThresholds()
    reasons: list[str] = []

    if metrics.error_rate is not None and metrics.error_rate > limits.error_rate:
        reasons.append(
            f"Error rate {metrics.error_rate * 100:.1f}% exceeds threshold {limits.error_rate * 100:.1f}%"
        )

    if metrics.p95_latency_ms is not None and metrics.p95_latency_ms > limits.p95_latency_ms:
        reasons.append(
            f"P95 latency {metrics.p95_latency_ms:g}ms exceeds threshold {limits.p95_latency_ms:g}ms"
        )

    if (
        metrics.conversion_rate is not None
        and metrics.baseline_conversion_rate is not None
        and metrics.baseline_conversion_rate > 0
    ):
        change = (
            metrics.conversion_rate - metrics.baseline_conversion_rate
        ) / metrics.baseline_conversion_rate
        if change < limits.conversion_harm:
            reasons.append(f"Conversion rate dropped {abs(change) * 100:.1f}%, exceeds harm threshold")

    return GuardrailResult(violated=bool(reasons), reasons=reasons)
