"""Unit tests for HostConfig and remote provider persistence."""

import json

import pytest
from pydantic import ValidationError

from config import (
    AuthMode,
    HostConfig,
    RemoteProviderConfig,
    create_sample_env,
    generate_provider_id,
)


def provider(provider_id="p1", **kwargs):
    return RemoteProviderConfig(
        id=provider_id,
        display_name=kwargs.pop("display_name", "Docs"),
        endpoint_url=kwargs.pop("endpoint_url", "https://mcp.example.com/mcp"),
        **kwargs,
    )


@pytest.mark.unit
class TestRemoteProviderConfig:
    def test_generated_ids_are_valid(self):
        provider_id = generate_provider_id()
        assert provider_id.startswith("mcp-")
        assert provider(provider_id).id == provider_id

    def test_separator_in_id_is_rejected(self):
        with pytest.raises(ValidationError):
            provider("bad__id")

    def test_non_http_url_is_rejected(self):
        with pytest.raises(ValidationError):
            provider(endpoint_url="stdio://server")


@pytest.mark.unit
class TestHostConfig:
    def test_defaults(self, host_config):
        assert host_config.max_iterations == 3
        assert host_config.enable_tools is True
        assert host_config.language == "en"
        assert host_config.page_content_limit == 30000
        assert host_config.remote_providers_file.name == "mcp_servers.json"

    def test_environment_overrides(self, host_config, monkeypatch):
        monkeypatch.setenv("MAX_ITERATIONS", "5")
        monkeypatch.setenv("LANGUAGE", "zh-CN")
        config = HostConfig()
        assert config.max_iterations == 5
        assert config.language == "zh-CN"

    def test_invalid_iterations(self, host_config):
        with pytest.raises(ValidationError):
            HostConfig(MAX_ITERATIONS=0)

    def test_unsupported_language_falls_back(self, host_config):
        assert HostConfig(LANGUAGE="fr").language == "en"

    def test_chat_provider_config_requires_key(self, host_config):
        assert host_config.get_chat_provider_config().api_key == "test-key"
        with pytest.raises(ValueError):
            HostConfig(API_KEY="").get_chat_provider_config()

    def test_provider_persistence(self, host_config):
        host_config.add_remote_provider(provider("p1"))
        host_config.add_remote_provider(provider("p2", auth_mode=AuthMode.OAUTH))
        host_config.toggle_remote_provider("p1", False)
        host_config.save_remote_providers()

        reloaded = HostConfig(CONFIG_DIR=host_config.config_dir)
        reloaded.load_remote_providers()
        assert [p.id for p in reloaded.remote_providers] == ["p1", "p2"]
        assert [p.id for p in reloaded.get_enabled_remote_providers()] == ["p2"]
        assert reloaded.get_remote_provider("p2").auth_mode == AuthMode.OAUTH

        assert reloaded.remove_remote_provider("p1")
        assert not reloaded.remove_remote_provider("p1")

    def test_add_replaces_same_id(self, host_config):
        host_config.add_remote_provider(provider("p1"))
        host_config.add_remote_provider(provider("p1", display_name="Renamed"))
        assert [p.display_name for p in host_config.remote_providers] == ["Renamed"]

    def test_invalid_provider_entries_are_skipped(self, host_config):
        host_config.config_path.mkdir(parents=True)
        host_config.remote_providers_file.write_text(
            json.dumps(
                [
                    {"id": "ok", "display_name": "A", "endpoint_url": "https://a.example.com"},
                    {"id": "bad__id", "display_name": "B", "endpoint_url": "https://b.example.com"},
                ]
            )
        )
        host_config.load_remote_providers()
        assert [p.id for p in host_config.remote_providers] == ["ok"]

    def test_persistent_config(self, host_config):
        host_config.model = "chosen-model"
        host_config.language = "zh-CN"
        host_config.save_persistent_config()

        reloaded = HostConfig(CONFIG_DIR=host_config.config_dir)
        reloaded.load_persistent_config()
        assert reloaded.model == "chosen-model"
        assert reloaded.language == "zh-CN"

    def test_environment_wins_over_persistent_config(self, host_config, monkeypatch):
        host_config.model = "saved"
        host_config.save_persistent_config()
        monkeypatch.setenv("MODEL", "from-env")

        reloaded = HostConfig(CONFIG_DIR=host_config.config_dir)
        reloaded.load_persistent_config()
        assert reloaded.model == "from-env"

    def test_create_sample_env(self, host_config, tmp_path):
        create_sample_env()
        content = (tmp_path / ".env").read_text()
        assert "API_KEY=your_api_key_here" in content
        assert "MAX_ITERATIONS=3" in content
