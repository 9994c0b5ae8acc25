"""tests/unit/test_config.py: Config loader tests."""

import pytest
from pathlib import Path

from cpbridge.core.config import AppConfig, WorkerConfig, load_config
from cpbridge.core.exceptions import ConfigurationError


def test_load_default_config():
    """Default config/default.yaml must load successfully."""
    cfg = load_config()
    assert isinstance(cfg, AppConfig)
    assert cfg.worker.host == "127.0.0.1"
    assert cfg.worker.address_flag == "--knime-bridge-address"
    assert cfg.worker.response_timeout_s is None
    assert cfg.worker.stdout_level == "DEBUG"
    assert cfg.worker.stderr_level == "WARNING"
    assert cfg.output.on_row_error == "fail"


def test_missing_file_raises_configuration_error(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_config(tmp_path / "nonexistent.yaml")


def test_yaml_syntax_error(tmp_path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("worker: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="YAML"):
        load_config(bad)


@pytest.mark.parametrize(
    "content",
    [
        "worker:\n  connect_timeout_s: 0\n",
        "worker:\n  stderr_level: LOUD\n",
        "output:\n  on_row_error: retry\n",
        "processing:\n  channels:\n    - {channel: DNA, column: a}\n    - {channel: DNA, column: b}\n",
    ],
)
def test_invalid_values_raise(tmp_path, content):
    p = tmp_path / "invalid.yaml"
    p.write_text(content, encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(p)


def test_custom_overrides(tmp_path):
    yaml_content = """
worker:
  module_path: worker/CellProfiler.py
  response_timeout_s: 120
processing:
  channels:
    - {channel: DNA, column: dna_path}
    - {channel: Protein, column: protein_path}
output:
  group_by_table: false
logging:
  log_level: debug
"""
    p = tmp_path / "custom.yaml"
    p.write_text(yaml_content, encoding="utf-8")
    cfg = load_config(p)
    assert cfg.worker.response_timeout_s == 120.0
    assert [c.channel for c in cfg.processing.channels] == ["DNA", "Protein"]
    assert cfg.output.group_by_table is False
    assert cfg.logging.log_level == "DEBUG"


def test_empty_file_gives_defaults(tmp_path):
    p = tmp_path / "empty.yaml"
    p.write_text("", encoding="utf-8")
    assert load_config(p) == AppConfig()


def test_relative_paths_resolve_against_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    cfg = AppConfig.model_validate({"worker": {"module_path": "w.py"}, "pipeline": {"file": "p.cppipe"}})
    assert cfg.module_path() == tmp_path.resolve() / "w.py"
    assert cfg.pipeline_path() == tmp_path.resolve() / "p.cppipe"


def test_unset_paths_are_none():
    cfg = AppConfig()
    assert cfg.module_path() is None
    assert cfg.pipeline_path() is None


def test_worker_defaults_are_independent():
    a, b = WorkerConfig(), WorkerConfig()
    a.extra_args.append("--x")
    assert b.extra_args == []
    assert Path(a.python_executable).name
