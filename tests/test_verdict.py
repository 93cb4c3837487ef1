"""Tests for the pass/fail verdict."""

import math

import pytest

from common.models.params import PerfTestParams, Protocol
from common.models.report import PercentileSummary, RoleReport, StatusSummary
from driver.verdict import check, evaluate


def role(name: str, p99: float, count: int = 1000, status: dict = None) -> RoleReport:
    return RoleReport(
        role=name,
        nodes=["1"],
        latency=PercentileSummary(count=count, p99=p99, max=p99),
        status=StatusSummary(counts=status) if status is not None else None,
    )


class TestCheck:
    """Tests for a single threshold comparison."""
    
    def test_within_margin_passes(self):
        m = check("server.p99", 3000, 3600, 15.0)
        
        assert m.passed
        assert m.limit == pytest.approx(4140.0)
    
    def test_over_margin_fails(self):
        assert not check("server.p99", 5000, 3600, 15.0).passed
    
    def test_limit_is_inclusive(self):
        assert check("server.p99", 150, 100, 50.0).passed
        assert not check("server.p99", 150.5, 100, 50.0).passed
    
    def test_zero_margin(self):
        assert check("probe.p99", 100, 100, 0).passed
        assert not check("probe.p99", 101, 100, 0).passed


class TestEvaluate:
    """Tests for evaluating a run against its params."""
    
    def test_all_thresholds_met(self, perf_params):
        verdict = evaluate(role("server", 3000), role("probe", 700_000), perf_params)
        
        assert verdict.passed
        assert [m.name for m in verdict.measurements] == ["server.p99", "probe.p99"]
        assert verdict.failures == []
    
    def test_server_over_limit_fails(self, perf_params):
        verdict = evaluate(role("server", 5000), role("probe", 700_000), perf_params)
        
        assert not verdict.passed
        assert [m.name for m in verdict.failures] == ["server.p99"]
    
    def test_probe_over_limit_fails(self, perf_params):
        verdict = evaluate(role("server", 3000), role("probe", 1_000_000), perf_params)
        
        assert not verdict.passed
        assert [m.name for m in verdict.failures] == ["probe.p99"]
    
    def test_missing_samples_fail(self, perf_params):
        verdict = evaluate(role("server", 0, count=0), None, perf_params)
        
        assert not verdict.passed
        assert all(math.isinf(m.observed) for m in verdict.measurements)
    
    def test_only_given_thresholds_are_checked(self):
        params = PerfTestParams(protocol=Protocol.H2C, expected_p99_probe_latency=50_000)
        verdict = evaluate(None, role("probe", 10_000), params)
        
        assert verdict.passed
        assert [m.name for m in verdict.measurements] == ["probe.p99"]
    
    def test_no_thresholds_pass(self):
        assert evaluate(None, None, PerfTestParams()).passed
    
    def test_error_rate_ceiling(self):
        params = PerfTestParams(max_error_rate_percent=1.0)
        
        ok = evaluate(None, None, params, loader=role("loader", 10, status={200: 995, 503: 5}))
        bad = evaluate(None, None, params, loader=role("loader", 10, status={200: 900, 0: 100}))
        
        assert ok.passed
        assert not bad.passed
        assert bad.failures[0].observed == pytest.approx(10.0)
    
    def test_params_are_not_mutated(self, perf_params):
        before = perf_params.model_dump()
        evaluate(role("server", 5000), role("probe", 1), perf_params)
        
        assert perf_params.model_dump() == before
    
    def test_describe(self, perf_params):
        verdict = evaluate(role("server", 5000), role("probe", 700_000), perf_params)
        text = verdict.describe()
        
        assert text.startswith("Verdict: FAIL")
        assert "server.p99" in text and "FAILED" in text
