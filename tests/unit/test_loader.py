"""Unit tests for the YAML config loader and env var resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from cdc_relay.config.loader import load_relay_config, load_yaml, resolve_env_vars
from cdc_relay.config.models import CommitPolicy

SAMPLE_CONFIG = Path(__file__).resolve().parents[2] / "examples" / "relay.yaml"


class TestResolveEnvVars:
    def test_plain_string_unchanged(self):
        assert resolve_env_vars("hello") == "hello"

    def test_substitutes_env_var(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("RELAY_HOST", "rabbit.prod")
        assert resolve_env_vars("${RELAY_HOST}") == "rabbit.prod"

    def test_default_when_var_missing(self):
        assert resolve_env_vars("${MISSING_VAR:-fallback}") == "fallback"

    def test_env_var_overrides_default(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("RELAY_PORT", "5673")
        assert resolve_env_vars("${RELAY_PORT:-5672}") == "5673"

    def test_missing_var_no_default_raises(self):
        with pytest.raises(ValueError, match="UNDEFINED_VAR"):
            resolve_env_vars("${UNDEFINED_VAR}")

    def test_default_with_colons(self):
        assert resolve_env_vars("${MISSING:-broker:29092}") == "broker:29092"

    def test_default_ends_at_first_brace(self):
        assert resolve_env_vars("${MISSING:-a}b}") == "ab}"

    def test_several_references_in_one_string(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("RELAY_HOST", "rabbit")
        assert resolve_env_vars("${RELAY_HOST}:${RELAY_PORT_UNSET:-5672}") == "rabbit:5672"

    def test_recursive(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("Q", "cdc.orders")
        data = {"consumer": {"queue_name": "${Q}"}, "list": ["${Q}", 1], "n": None}
        assert resolve_env_vars(data) == {
            "consumer": {"queue_name": "cdc.orders"},
            "list": ["cdc.orders", 1],
            "n": None,
        }


class TestLoadYaml:
    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_yaml(tmp_path / "absent.yaml")

    def test_empty_file_is_empty_mapping(self, tmp_path: Path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_yaml(path) == {}

    def test_top_level_must_be_mapping(self, tmp_path: Path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(TypeError, match="mapping"):
            load_yaml(path)

    def test_parse_error_names_line(self, tmp_path: Path):
        path = tmp_path / "bad.yaml"
        path.write_text("kafka:\n  group_id: [unclosed\n")
        with pytest.raises(ValueError, match="line"):
            load_yaml(path)


class TestLoadRelayConfig:
    def test_defaults_when_no_path(self):
        cfg = load_relay_config()
        assert cfg.kafka.bootstrap_servers == "localhost:9092"
        assert cfg.kafka.group_id == "kafka-rabbitmq-bridge"
        assert cfg.kafka.topic_pattern == "sqlserver.*"
        assert cfg.kafka.commit_policy is CommitPolicy.EXPLICIT
        assert cfg.rabbitmq.host == "localhost"
        assert cfg.rabbitmq.password.get_secret_value() == "guest"
        assert cfg.consumer.queue_name == "cdc.customers"
        assert cfg.consumer.prefetch_count == 1
        assert cfg.bridge.poll_timeout_seconds == 1.0
        assert cfg.dead_letter.max_retries == 3

    def test_env_overrides_defaults(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("KAFKA_BOOTSTRAP_SERVERS", "kafka:29092")
        monkeypatch.setenv("RABBITMQ_PASSWORD", "s3cret")
        cfg = load_relay_config()
        assert cfg.kafka.bootstrap_servers == "kafka:29092"
        assert cfg.rabbitmq.password.get_secret_value() == "s3cret"

    def test_loads_from_yaml(self, tmp_path: Path):
        path = tmp_path / "relay.yaml"
        path.write_text(
            "kafka:\n  commit_policy: auto\nbridge:\n  queue_prefix: relay\n"
        )
        cfg = load_relay_config(path)
        assert cfg.kafka.commit_policy is CommitPolicy.AUTO
        assert cfg.bridge.queue_prefix == "relay"
        # non-overridden defaults preserved
        assert cfg.kafka.group_id == "kafka-rabbitmq-bridge"

    def test_invalid_config_names_source(self, tmp_path: Path):
        path = tmp_path / "relay.yaml"
        path.write_text("consumer:\n  prefetch_count: 10\n")
        with pytest.raises(ValueError, match="relay.yaml"):
            load_relay_config(path)

    def test_unknown_section_rejected(self, tmp_path: Path):
        path = tmp_path / "relay.yaml"
        path.write_text("webhook:\n  url: http://example.com\n")
        with pytest.raises(ValueError, match="Invalid relay config"):
            load_relay_config(path)

    def test_sample_config_loads(self):
        cfg = load_relay_config(SAMPLE_CONFIG)
        assert cfg.logging.json_output is True
        assert cfg.consumer.queue_name == "cdc.customers"

    def test_sample_config_env_override(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("CDC_QUEUE", "cdc.orders")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        cfg = load_relay_config(SAMPLE_CONFIG)
        assert cfg.consumer.queue_name == "cdc.orders"
        assert cfg.logging.level == "DEBUG"
