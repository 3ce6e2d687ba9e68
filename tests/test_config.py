import json

import pytest

from muxgate.config import (
    GatewayConfig, load_config, load_pool_definitions, parse_pool_definitions,
)
from muxgate.errors import ConfigError


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "providerFallbackChain": {"kiro": ["gemini", "openai"]},
        "modelFallbackMapping": {"gpt-4": ["gpt-4-fallback"]},
        "REQUEST_MAX_RETRIES": 5,
        "REQUEST_BASE_DELAY": 250,
        "SYSTEM_PROMPT_MODE": "overwrite",
    }))
    return path


class TestGatewayConfig:

    def test_defaults(self):
        config = GatewayConfig()
        assert config.max_error_count == 3
        assert config.request_max_retries == 3
        assert config.request_base_delay == 1000
        assert config.request_max_delay == 30000
        assert config.request_timeout_seconds is None
        assert config.system_prompt_mode == "append"
        assert config.provider_pools_file_path == "configs/provider_pools.json"

    def test_fallback_chain_aliases_normalized(self):
        config = GatewayConfig(providerFallbackChain={"kiro": ["gemini"]})
        assert config.provider_fallback_chain == {"claude-kiro-oauth": ["gemini-cli-oauth"]}

    def test_populate_by_field_name(self):
        config = GatewayConfig(request_max_retries=7)
        assert config.request_max_retries == 7

    def test_config_is_frozen(self):
        config = GatewayConfig()
        with pytest.raises(Exception):
            config.request_max_retries = 10

    def test_proxy_for(self):
        config = GatewayConfig(PROXY_URL="http://127.0.0.1:7890", PROXY_ENABLED_PROVIDERS="openai, gemini")
        assert config.proxy_enabled_providers == ["openai-custom", "gemini-cli-oauth"]
        assert config.proxy_for("openai") == "http://127.0.0.1:7890"
        assert config.proxy_for("claude-kiro-oauth") is None

    def test_proxy_requires_url(self):
        config = GatewayConfig(PROXY_ENABLED_PROVIDERS=["openai"])
        assert config.proxy_for("openai") is None


class TestLoadConfig:

    def test_load_from_file(self, config_file):
        config = load_config(config_file, use_env=False)
        assert config.provider_fallback_chain == {"claude-kiro-oauth": ["gemini-cli-oauth", "openai-custom"]}
        assert config.model_fallback_mapping == {"gpt-4": ["gpt-4-fallback"]}
        assert config.request_max_retries == 5
        assert config.request_base_delay == 250
        assert config.system_prompt_mode == "overwrite"

    def test_environment_overrides_file(self, config_file, monkeypatch):
        monkeypatch.setenv("REQUEST_MAX_RETRIES", "2")
        monkeypatch.setenv("MAX_ERROR_COUNT", "4")
        monkeypatch.setenv("modelFallbackMapping", '{"claude-3": ["claude-3-haiku"]}')
        monkeypatch.setenv("PROXY_ENABLED_PROVIDERS", "kiro")
        config = load_config(config_file)
        assert config.request_max_retries == 2
        assert config.max_error_count == 4
        assert config.model_fallback_mapping == {"claude-3": ["claude-3-haiku"]}
        assert config.proxy_enabled_providers == ["claude-kiro-oauth"]
        # Untouched keys keep the file value
        assert config.request_base_delay == 250

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.json", use_env=False)

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError, match="Invalid JSON"):
            load_config(path, use_env=False)

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"REQUEST_MAX_RETRIES": 0}))
        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_config(path, use_env=False)

    def test_invalid_prompt_mode(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"SYSTEM_PROMPT_MODE": "prepend"}))
        with pytest.raises(ConfigError):
            load_config(path, use_env=False)


class TestPoolDefinitions:

    def test_parse(self):
        definitions = parse_pool_definitions({
            "kiro": [{"uuid": "k1", "accessToken": "t", "priority": 2, "isDisabled": True}],
        })
        entry = definitions["claude-kiro-oauth"][0]
        assert entry.uuid == "k1"
        assert entry.priority == 2
        assert entry.is_disabled is True
        assert entry.auth == {"accessToken": "t"}

    def test_missing_uuid(self):
        with pytest.raises(ConfigError, match="Invalid credential"):
            parse_pool_definitions({"openai-custom": [{"OPENAI_API_KEY": "sk"}]})

    def test_pool_must_be_list(self):
        with pytest.raises(ConfigError, match="must be a list"):
            parse_pool_definitions({"openai-custom": {"uuid": "x"}})

    def test_duplicate_uuid_across_pools(self):
        with pytest.raises(ConfigError, match="Duplicate credential uuid 'a'"):
            parse_pool_definitions({"openai-custom": [{"uuid": "a"}], "gemini": [{"uuid": "a"}]})

    def test_top_level_must_be_object(self):
        with pytest.raises(ConfigError):
            parse_pool_definitions([])

    def test_load_missing_file_is_empty(self, tmp_path):
        assert load_pool_definitions(tmp_path / "pools.json") == {}

    def test_load_file(self, tmp_path):
        path = tmp_path / "pools.json"
        path.write_text(json.dumps({"gemini-cli-oauth": [{"uuid": "g1", "PROJECT_ID": "p"}]}))
        definitions = load_pool_definitions(path)
        assert [d.uuid for d in definitions["gemini-cli-oauth"]] == ["g1"]
