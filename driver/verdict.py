"""Pass/fail decision from observed latencies and expected thresholds."""

from __future__ import annotations

import logging
from typing import Optional

from common.models.params import PerfTestParams
from common.models.report import Measurement, RoleReport, Verdict

logger = logging.getLogger(__name__)


def limit_of(expected: float, margin_percent: float) -> float:
    return expected * (1 + margin_percent / 100.0)


def check(name: str, observed: float, expected: float, margin_percent: float) -> Measurement:
    """Passes iff observed <= expected * (1 + margin_percent / 100)."""
    limit = limit_of(expected, margin_percent)
    return Measurement(
        name=name,
        observed=observed,
        expected=expected,
        margin_percent=margin_percent,
        limit=limit,
        passed=observed <= limit,
    )


def _p99(name: str, report: Optional[RoleReport], expected: float, margin: float) -> Measurement:
    if report is None or report.latency.count == 0:
        # Nothing recorded cannot prove the threshold was met
        logger.warning(f"No samples for {name}")
        return Measurement(
            name=name,
            observed=float("inf"),
            expected=expected,
            margin_percent=margin,
            limit=limit_of(expected, margin),
            passed=False,
        )
    return check(name, report.latency.p99, expected, margin)


def evaluate(
    server: Optional[RoleReport],
    probe: Optional[RoleReport],
    params: PerfTestParams,
    loader: Optional[RoleReport] = None,
) -> Verdict:
    """Compare every threshold the params define; an empty set of thresholds passes."""
    margin = params.expected_p99_error_margin
    measurements = []
    
    if params.expected_p99_server_latency is not None:
        measurements.append(_p99("server.p99", server, params.expected_p99_server_latency, margin))
    
    if params.expected_p99_probe_latency is not None:
        measurements.append(_p99("probe.p99", probe, params.expected_p99_probe_latency, margin))
    
    if params.max_error_rate_percent is not None:
        status = loader.status if loader is not None else None
        observed = status.error_rate_percent if status is not None and status.total else float("inf")
        measurements.append(
            Measurement(
                name="loader.error_rate_percent",
                observed=observed,
                expected=params.max_error_rate_percent,
                margin_percent=0.0,
                limit=params.max_error_rate_percent,
                passed=observed <= params.max_error_rate_percent,
            )
        )
    
    verdict = Verdict(passed=all(m.passed for m in measurements), measurements=measurements)
    for m in verdict.failures:
        logger.error(f"{m.name}: observed {m.observed:.0f} over limit {m.limit:.0f}")
    return verdict
