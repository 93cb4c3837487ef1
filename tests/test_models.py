"""Unit tests for data models."""

import pytest
from pydantic import ValidationError

from common.models.cluster import ClusterConfig, NodeArrayConfig, NodeConfig, RuntimeConfig
from common.models.job import JobResult, JobStatus, NodeJob
from common.models.params import PerfTestParams, Protocol
from common.models.report import StatusSummary


class TestClusterModels:
    """Tests for cluster topology models."""
    
    def test_cluster_config(self, sample_cluster_config):
        cluster = ClusterConfig(**sample_cluster_config)
        
        assert [a.id for a in cluster.node_arrays] == ["server", "loaders", "probe"]
        assert cluster.node_count() == 6
        assert cluster.node_count("loaders") == 4
        assert cluster.participant_count() == 7
        assert cluster.node_array("server").node("1").hostname == "load-master"
        assert [n.id for n in cluster.nodes_in("loaders")] == ["1a", "1b", "2a", "2b"]
    
    def test_duplicate_node_ids_rejected(self):
        with pytest.raises(ValidationError, match="Duplicate node id"):
            NodeArrayConfig(
                id="loaders",
                nodes=[NodeConfig(id="1", hostname="a"), NodeConfig(id="1", hostname="b")],
            )
    
    def test_same_node_id_in_different_arrays(self):
        cluster = ClusterConfig(
            node_arrays=[
                {"id": "server", "nodes": [{"id": "1", "hostname": "h"}]},
                {"id": "probe", "nodes": [{"id": "1", "hostname": "h"}]},
            ]
        )
        assert cluster.node_count() == 2
    
    def test_duplicate_array_ids_rejected(self):
        with pytest.raises(ValidationError, match="Duplicate node array id"):
            ClusterConfig(node_arrays=[{"id": "x"}, {"id": "x"}])
    
    def test_unknown_array(self, cluster_config):
        with pytest.raises(KeyError):
            cluster_config.node_array("nope")
    
    def test_runtime_falls_back_to_cluster_default(self, sample_cluster_config):
        sample_cluster_config["runtime"] = {"tool_kind": "python", "tool_name": "py312"}
        sample_cluster_config["node_arrays"][0]["runtime"] = {"tool_kind": "jdk", "tool_name": "jdk17", "executable": "java"}
        cluster = ClusterConfig(**sample_cluster_config)
        
        assert cluster.runtime_of("server").tool_name == "jdk17"
        assert cluster.runtime_of("loaders").tool_name == "py312"
    
    def test_default_runtime(self, cluster_config):
        assert cluster_config.runtime_of("probe") == RuntimeConfig()
    
    def test_from_yaml(self, temp_dir):
        path = temp_dir / "cluster.yaml"
        path.write_text(
            "name: lab\n"
            "node_arrays:\n"
            "  - id: server\n"
            "    nodes:\n"
            "      - {id: '1', hostname: load-master}\n"
        )
        
        cluster = ClusterConfig.from_yaml(path)
        assert cluster.name == "lab"
        assert cluster.node_array("server").nodes[0].hostname == "load-master"


class TestParamsModels:
    """Tests for experiment parameters."""
    
    def test_protocols(self):
        assert Protocol("h2c").is_http2 and not Protocol("h2c").is_secure
        assert Protocol.H2.scheme == "https"
        assert Protocol.HTTP.default_port == 8080
        assert Protocol.HTTPS.default_port == 8443
    
    def test_defaults(self):
        params = PerfTestParams()
        
        assert params.protocol == Protocol.HTTP
        assert params.probe_rate == 5
        assert params.expected_p99_error_margin == 15.0
    
    def test_frozen(self, perf_params):
        with pytest.raises(ValidationError):
            perf_params.loader_rate = 1
    
    def test_rate_must_be_positive(self):
        with pytest.raises(ValidationError):
            PerfTestParams(loader_rate=0)
    
    def test_str(self, perf_params):
        assert str(perf_params).startswith("http/rate=60000")


class TestJobModels:
    """Tests for node jobs and their results."""
    
    def test_job_ids_are_unique(self):
        assert NodeJob(kind="system.info").id != NodeJob(kind="system.info").id
    
    def test_result_roundtrip(self):
        result = JobResult(
            job_id="job_1",
            array_id="loaders",
            node_id="1a",
            status=JobStatus.FAILED,
            error="boom",
        )
        data = result.model_dump(mode="json")
        
        assert data["status"] == "failed"
        assert not JobResult(**data).succeeded


class TestReportModels:
    """Tests for report models."""
    
    def test_status_summary(self):
        summary = StatusSummary(counts={200: 90, 302: 5, 500: 4, 0: 1})
        
        assert summary.total == 100
        assert summary.errors == 5
        assert summary.error_rate_percent == pytest.approx(5.0)
    
    def test_empty_status_summary(self):
        assert StatusSummary().error_rate_percent == 0.0
