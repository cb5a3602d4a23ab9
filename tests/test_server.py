"""Tests for FastAPI server module"""
from unittest.mock import patch
import pytest
from fastapi.testclient import TestClient

from app.server import MetricsServer
from collectors.process_memory import ProcessMemoryCollector
from collectors.procfs import ProcfsReader, UserNameCache
from exceptions import EnumerationError, RenderError
from metrics.exporter import PrometheusRenderer
from metrics.registry import ProcessRegistry


class TestMetricsServer:
    """Test HTTP exposition of process memory metrics"""

    @pytest.fixture(autouse=True)
    def setup_server(self, config, fake_proc):
        self.config = config
        self.proc = fake_proc
        self.registry = ProcessRegistry(config.grace_cycles)
        self.collector = ProcessMemoryCollector(config, self.registry, users=UserNameCache(lambda uid: "root"))
        self.server = MetricsServer(config, self.collector)
        self.client = TestClient(self.server.get_app())
        yield
        self.collector.close()

    def test_metrics_endpoint(self):
        """A scrape with no prior collection triggers one"""
        self.proc.add(10, "sshd", rss_kb=4)
        self.proc.add(20, "nginx", rss_kb=8)

        response = self.client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"] == "text/plain; version=0.0.4; charset=utf-8"
        assert 'node_process_resident_bytes{pid="10",command="sshd",user="root"} 4096\n' in response.text
        assert 'node_process_resident_bytes{pid="20",command="nginx",user="root"} 8192\n' in response.text
        assert "proc_mem_exporter_snapshot_stale 0\n" in response.text

    def test_fresh_snapshot_is_reused(self):
        self.proc.add(10, "sshd")
        self.client.get("/metrics")
        self.proc.add(20, "nginx")

        response = self.client.get("/metrics")

        assert 'pid="20"' not in response.text
        assert self.collector.status().cycles_total == 1

    def test_repeated_scrapes_are_identical(self):
        self.proc.add(10, "sshd")

        first = self.client.get("/metrics").content
        second = self.client.get("/metrics").content

        assert first == second

    def test_custom_metrics_path(self, config):
        config.metrics_path = "/custom"
        server = MetricsServer(config, self.collector)
        client = TestClient(server.get_app())
        self.proc.add(10, "sshd")

        assert client.get("/custom").status_code == 200
        assert client.get("/metrics").status_code == 404

    def test_enumeration_failure_serves_last_snapshot(self):
        """The previous snapshot survives a failed cycle and is marked stale"""
        self.proc.add(10, "sshd", rss_kb=4)
        self.client.get("/metrics")
        self.config.max_snapshot_age = 0

        with patch.object(ProcfsReader, "list_processes", side_effect=EnumerationError("cannot list /proc")):
            response = self.client.get("/metrics")

        assert response.status_code == 200
        assert 'node_process_resident_bytes{pid="10",command="sshd",user="root"} 4096\n' in response.text
        assert "proc_mem_exporter_collection_failures_total 1\n" in response.text
        assert "proc_mem_exporter_snapshot_stale 1\n" in response.text

    def test_cold_start_failure_returns_valid_body(self):
        with patch.object(ProcfsReader, "list_processes", side_effect=EnumerationError("cannot list /proc")):
            response = self.client.get("/metrics")

        assert response.status_code == 200
        assert "node_process_" not in response.text
        assert "proc_mem_exporter_snapshot_stale 1\n" in response.text

    def test_unexpected_collection_error_serves_snapshot(self):
        with patch.object(ProcessMemoryCollector, "ensure_fresh", side_effect=RuntimeError("boom")):
            response = self.client.get("/metrics")

        assert response.status_code == 200

    def test_render_error_is_server_error(self):
        self.proc.add(10, "sshd")

        with patch.object(PrometheusRenderer, "render", side_effect=RenderError("corrupt registry")):
            response = self.client.get("/metrics")

        assert response.status_code == 500
        assert response.json()["detail"]["error"] == "corrupt registry"

    def test_health_endpoint_unhealthy_before_first_collection(self):
        response = self.client.get("/health")

        assert response.status_code == 503
        assert response.json()["detail"]["status"] == "unhealthy"

    def test_health_endpoint_healthy(self):
        self.proc.add(10, "sshd")
        self.collector.refresh()

        response = self.client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["tracked_processes"] == 1
        assert data["consecutive_failures"] == 0

    def test_status_endpoint(self):
        self.proc.add(10, "sshd")
        self.collector.refresh()

        with patch('os.uname') as mock_uname:
            mock_uname.return_value.nodename = "test-host"
            response = self.client.get("/status")

        assert response.status_code == 200
        data = response.json()
        assert data["service"]["name"] == "proc-mem-exporter"
        assert data["service"]["hostname"] == "test-host"
        assert data["collection"]["state"] == "idle"
        assert data["collection"]["total_collections"] == 1
        assert data["collection"]["grace_cycles"] == self.config.grace_cycles
        assert data["registry"]["tracked_processes"] == 1

    def test_manual_collect(self):
        self.proc.add(10, "sshd")

        response = self.client.post("/collect")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["sampled"] == 1

    def test_manual_collect_failure(self):
        with patch.object(ProcfsReader, "list_processes", side_effect=EnumerationError("cannot list /proc")):
            response = self.client.post("/collect")

        assert response.status_code == 503
        assert response.json()["detail"]["error"] == "cannot list /proc"

    def test_background_loop_runs_on_startup(self):
        self.proc.add(10, "sshd")

        with TestClient(self.server.get_app()) as client:
            response = client.get("/metrics")
            assert response.status_code == 200

        assert self.collector.status().cycles_total >= 1
        assert self.server.collection_task.done()

    def test_request_logging_middleware(self, config):
        config.enable_request_logging = True
        server = MetricsServer(config, self.collector)
        client = TestClient(server.get_app())
        self.proc.add(10, "sshd")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "x-process-time" in response.headers
