import os
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from config.config import (
    DEFAULT_CONFIG_FILE,
    PipelineConfig,
    _as_bool,
    _build_section,
    _deep_merge,
    _expand_env_vars,
    ConsumerSection,
    ProducerSection,
    get_config,
    load_config,
    load_yaml,
    reset_config,
    set_config,
)
from core.errors.exceptions import ConfigurationError


def _valid_data(**sections):
    data = {
        "kafka": {"bootstrap_servers": "broker:9092", "topic": "users"},
        "schema_registry": {"url": "http://registry:8081"},
    }
    for name, values in sections.items():
        data.setdefault(name, {}).update(values)
    return data


def _write_config(tmp_path, data) -> Path:
    config_file = tmp_path / "config.yaml"
    config_file.write_text(yaml.dump(data))
    return config_file


# =========================================================================
# load_yaml
# =========================================================================


class TestLoadYaml:
    def test_returns_empty_dict_for_nonexistent_file(self):
        result = load_yaml(Path("/nonexistent/path/config.yaml"))
        assert result == {}

    def test_loads_yaml_file(self, tmp_path):
        config_file = tmp_path / "test.yaml"
        config_file.write_text("key: value\nnested:\n  a: 1\n")
        result = load_yaml(config_file)
        assert result == {"key": "value", "nested": {"a": 1}}

    def test_returns_empty_dict_for_empty_file(self, tmp_path):
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")
        result = load_yaml(config_file)
        assert result == {}


# =========================================================================
# _expand_env_vars
# =========================================================================


class TestExpandEnvVars:
    def test_expands_set_variable(self):
        with patch.dict(os.environ, {"BROKER": "kafka:9092"}):
            assert _expand_env_vars("${BROKER}") == "kafka:9092"

    def test_uses_default_when_unset(self):
        with patch.dict(os.environ, {}, clear=True):
            assert _expand_env_vars("${BROKER:-localhost:9092}") == "localhost:9092"

    def test_leaves_placeholder_when_unset_without_default(self):
        with patch.dict(os.environ, {}, clear=True):
            assert _expand_env_vars("${BROKER}") == "${BROKER}"

    def test_empty_default(self):
        with patch.dict(os.environ, {}, clear=True):
            assert _expand_env_vars("x${SUFFIX:-}") == "x"

    def test_recurses_into_dicts_and_lists(self):
        with patch.dict(os.environ, {"TOPIC": "users"}):
            result = _expand_env_vars({"kafka": {"topics": ["${TOPIC}", "other"]}})
        assert result == {"kafka": {"topics": ["users", "other"]}}

    def test_non_strings_untouched(self):
        assert _expand_env_vars({"a": 1, "b": None, "c": True}) == {"a": 1, "b": None, "c": True}


# =========================================================================
# _deep_merge
# =========================================================================


class TestDeepMerge:
    def test_merges_nested_dicts(self):
        base = {"kafka": {"topic": "users", "client_id": "a"}}
        overlay = {"kafka": {"client_id": "b"}}
        assert _deep_merge(base, overlay) == {"kafka": {"topic": "users", "client_id": "b"}}

    def test_overlay_replaces_non_dicts(self):
        assert _deep_merge({"a": [1, 2]}, {"a": [3]}) == {"a": [3]}

    def test_does_not_mutate_base(self):
        base = {"a": {"b": 1}}
        _deep_merge(base, {"c": 2})
        assert base == {"a": {"b": 1}}


# =========================================================================
# Section building
# =========================================================================


class TestBuildSection:
    @pytest.mark.parametrize(
        "value,expected",
        [("true", True), ("False", False), ("1", True), ("no", False), (0, False), (True, True)],
    )
    def test_as_bool(self, value, expected):
        assert _as_bool(value) is expected

    def test_rejects_unknown_keys(self):
        with pytest.raises(ConfigurationError) as exc_info:
            _build_section(ConsumerSection, {"max_poll_records": 5, "bogus": 1}, "consumer")
        assert exc_info.value.context["keys"] == ["bogus"]
        assert "consumer" in str(exc_info.value)

    def test_coerces_strings_from_env_expansion(self):
        section = _build_section(
            ConsumerSection,
            {"max_poll_records": "50", "poll_timeout_s": "0.5", "allow_missing_topics": "true"},
            "consumer",
        )
        assert section.max_poll_records == 50
        assert section.poll_timeout_s == 0.5
        assert section.allow_missing_topics is True

    def test_invalid_integer(self):
        with pytest.raises(ConfigurationError, match="consumer.max_poll_records must be an integer"):
            _build_section(ConsumerSection, {"max_poll_records": "many"}, "consumer")

    def test_none_section_uses_defaults(self):
        assert _build_section(ProducerSection, None, "producer") == ProducerSection()

    def test_acks_kept_as_given(self):
        assert _build_section(ProducerSection, {"acks": 1}, "producer").acks == 1


# =========================================================================
# PipelineConfig
# =========================================================================


class TestPipelineConfig:
    def test_from_dict_defaults(self):
        config = PipelineConfig.from_dict({})
        assert config.kafka.topic == "users"
        assert config.producer.acks == "all"
        assert config.consumer.auto_offset_reset == "earliest"
        assert config.security.security_protocol == "PLAINTEXT"
        assert config.reconnect.max_attempts == 10

    def test_from_dict_rejects_unknown_section(self):
        with pytest.raises(ConfigurationError, match="Unknown config section"):
            PipelineConfig.from_dict({"kafka": {}, "delta": {}})

    def test_to_dict_round_trips(self):
        config = PipelineConfig.from_dict(_valid_data(producer={"linger_ms": 20}))
        assert PipelineConfig.from_dict(config.to_dict()) == config

    def test_valid_config_passes(self):
        PipelineConfig.from_dict(_valid_data()).validate()

    def test_collects_every_problem(self):
        config = PipelineConfig.from_dict(
            {
                "consumer": {"auto_offset_reset": "middle", "max_poll_records": 0},
                "schema_registry": {"url": ""},
            }
        )
        with pytest.raises(ConfigurationError) as exc_info:
            config.validate()

        problems = exc_info.value.context["problems"]
        assert "kafka.bootstrap_servers is required" in problems
        assert "schema_registry.url is required" in problems
        assert any(p.startswith("consumer.auto_offset_reset") for p in problems)
        assert any(p.startswith("consumer.max_poll_records") for p in problems)

    def test_registry_url_must_be_http(self):
        config = PipelineConfig.from_dict(_valid_data(schema_registry={"url": "registry:8081"}))
        with pytest.raises(ConfigurationError, match="must be http"):
            config.validate()

    def test_idempotence_requires_acks_all(self):
        config = PipelineConfig.from_dict(_valid_data(producer={"acks": 1, "enable_idempotence": True}))
        with pytest.raises(ConfigurationError, match="enable_idempotence requires"):
            config.validate()

    def test_acks_one_without_idempotence(self):
        PipelineConfig.from_dict(_valid_data(producer={"acks": 1, "enable_idempotence": False})).validate()

    def test_sasl_requires_known_mechanism(self):
        config = PipelineConfig.from_dict(
            _valid_data(security={"security_protocol": "SASL_SSL", "sasl_mechanism": "OAUTHBEARER"})
        )
        with pytest.raises(ConfigurationError) as exc_info:
            config.validate()
        assert any("sasl_mechanism" in p for p in exc_info.value.context["problems"])

    def test_unknown_security_protocol(self):
        config = PipelineConfig.from_dict(_valid_data(security={"security_protocol": "TLS"}))
        with pytest.raises(ConfigurationError, match="security.security_protocol"):
            config.validate()

    def test_heartbeat_must_fit_session_timeout(self):
        config = PipelineConfig.from_dict(
            _valid_data(consumer={"session_timeout_ms": 6000, "heartbeat_interval_ms": 3000})
        )
        with pytest.raises(ConfigurationError, match="heartbeat_interval_ms"):
            config.validate()

    def test_max_delay_not_below_base_delay(self):
        config = PipelineConfig.from_dict(_valid_data(reconnect={"base_delay_s": 5, "max_delay_s": 1}))
        with pytest.raises(ConfigurationError, match="reconnect.max_delay_s"):
            config.validate()

    def test_backpressure_timeout_must_be_positive(self):
        config = PipelineConfig.from_dict(_valid_data(producer={"backpressure_timeout_s": 0}))
        with pytest.raises(ConfigurationError, match="backpressure_timeout_s must be > 0"):
            config.validate()

    def test_reconnect_to_retry_config(self):
        config = PipelineConfig.from_dict(_valid_data(reconnect={"max_attempts": 4, "base_delay_s": 0.5}))
        retry = config.reconnect.to_retry_config()
        assert retry.max_attempts == 4
        assert retry.base_delay == 0.5
        assert retry.max_delay == 60.0


# =========================================================================
# load_config
# =========================================================================


class TestLoadConfig:
    def test_loads_and_validates_file(self, tmp_path):
        config_file = _write_config(tmp_path, _valid_data(kafka={"group_id": "g1"}))
        with patch.dict(os.environ, {}, clear=True):
            config = load_config(config_file)
        assert config.kafka.bootstrap_servers == "broker:9092"
        assert config.kafka.group_id == "g1"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("kafka: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config(config_file)

    def test_expands_env_vars_in_file(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            "kafka:\n  bootstrap_servers: broker:9092\n  topic: ${TOPIC_NAME:-users}\n"
            "schema_registry:\n  url: http://registry:8081\n"
        )
        with patch.dict(os.environ, {"TOPIC_NAME": "people"}, clear=True):
            config = load_config(config_file)
        assert config.kafka.topic == "people"

    def test_env_overrides_file(self, tmp_path):
        config_file = _write_config(tmp_path, _valid_data())
        env = {"KAFKA_BOOTSTRAP_SERVERS": "other:9093", "SCHEMA_REGISTRY_URL": "https://sr:8081"}
        with patch.dict(os.environ, env, clear=True):
            config = load_config(config_file)
        assert config.kafka.bootstrap_servers == "other:9093"
        assert config.schema_registry.url == "https://sr:8081"

    def test_overrides_win_over_env(self, tmp_path):
        config_file = _write_config(tmp_path, _valid_data())
        with patch.dict(os.environ, {"KAFKA_BOOTSTRAP_SERVERS": "env:9092"}, clear=True):
            config = load_config(config_file, overrides={"kafka": {"bootstrap_servers": "cli:9092"}})
        assert config.kafka.bootstrap_servers == "cli:9092"

    def test_invalid_values_raise(self, tmp_path):
        config_file = _write_config(tmp_path, _valid_data(consumer={"auto_offset_reset": "sometime"}))
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                load_config(config_file)
        assert len(exc_info.value.context["problems"]) == 1

    def test_default_file_is_valid(self):
        with patch.dict(os.environ, {}, clear=True):
            config = load_config(DEFAULT_CONFIG_FILE)
        assert config.kafka.bootstrap_servers == "localhost:9092"
        assert config.schema_registry.url == "http://localhost:8081"


# =========================================================================
# Singleton
# =========================================================================


class TestSingleton:
    def setup_method(self):
        reset_config()

    def teardown_method(self):
        reset_config()

    def test_set_and_get(self):
        config = PipelineConfig.from_dict(_valid_data())
        set_config(config)
        assert get_config() is config

    def test_get_loads_once(self):
        config = PipelineConfig.from_dict(_valid_data())
        with patch("config.config.load_config", return_value=config) as mock_load:
            assert get_config() is config
            assert get_config() is config
        mock_load.assert_called_once()

    def test_reset_forces_reload(self):
        first = PipelineConfig.from_dict(_valid_data())
        second = PipelineConfig.from_dict(_valid_data(kafka={"topic": "other"}))
        set_config(first)
        reset_config()
        with patch("config.config.load_config", return_value=second):
            assert get_config() is second
