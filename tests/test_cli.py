"""
Tests for the flowpilot command line.
"""

import json

import pytest
import structlog
import yaml
from click.testing import CliRunner

from cli import main as cli_main
from cli.main import cli, configure_logging

FLOW = """
name: Demo
nodes:
  - {name: Start, kind: ManualStart}
  - {name: Step, kind: JavaScript, code: return 1;}
  - {name: Lonely, kind: JavaScript, code: return 2;}
edges:
  - {from: Start, to: Step}
"""


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr(cli_main, "configure_logging", lambda level, log_format: None)


@pytest.fixture
def flow_file(tmp_path):
    path = tmp_path / "demo.yaml"
    path.write_text(FLOW)
    return path


class TestAnalyzeCommand:
    """flowpilot analyze"""

    def test_reports_orphans(self, flow_file):
        result = CliRunner().invoke(cli, ["analyze", str(flow_file)])

        assert result.exit_code == 2
        assert "3 nodes, 1 edges" in result.output
        assert "Orphans: Lonely" in result.output

    def test_json_output(self, flow_file):
        result = CliRunner().invoke(cli, ["analyze", str(flow_file), "--format", "json"])

        report = json.loads(result.output)
        assert report["orphans"] == ["Lonely"]
        assert set(report["endpoints"]) == {"Step", "Lonely"}

    def test_clean_flow_exits_zero(self, tmp_path):
        path = tmp_path / "clean.yaml"
        path.write_text("name: Clean\nnodes:\n  - {name: Start, kind: ManualStart}\n")

        result = CliRunner().invoke(cli, ["analyze", str(path)])

        assert result.exit_code == 0

    def test_invalid_document(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("nodes: []\n")

        result = CliRunner().invoke(cli, ["analyze", str(path)])

        assert result.exit_code == 1


class TestLayoutCommand:
    """flowpilot layout"""

    def test_prints_positions_and_writes_output(self, flow_file, tmp_path):
        output = tmp_path / "out.yaml"

        result = CliRunner().invoke(cli, ["layout", str(flow_file), "-o", str(output)])

        assert result.exit_code == 0
        assert "L1  Step: (300, 0)" in result.output
        assert "left in place: Lonely" in result.output
        document = yaml.safe_load(output.read_text())
        step = next(n for n in document["nodes"] if n["name"] == "Step")
        assert step["position"] == {"x": 300.0, "y": 0.0}

    def test_vertical(self, flow_file):
        result = CliRunner().invoke(cli, ["layout", str(flow_file), "--orientation", "vertical"])

        assert "L1  Step: (0, 300)" in result.output


class TestConfigureLogging:
    """structlog setup used by the CLI."""

    def test_json_renderer(self):
        try:
            configure_logging("debug", "json")
            processors = structlog.get_config()["processors"]
            assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        finally:
            structlog.reset_defaults()
