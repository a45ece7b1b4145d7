"""Tests for DispatchSettings and its cache."""

import pytest
from pydantic import ValidationError

from agent_dispatch.core.settings import DispatchSettings, clear_settings_cache, get_settings


class TestDefaults:
    def test_creation_defaults(self):
        s = DispatchSettings(_env_file=None)
        assert s.default_model == "claude-sonnet-4-20250514"
        assert s.default_max_tokens == 4096
        assert s.default_timeout_seconds == 1800
        assert s.prompt_max_length == 100_000

    def test_orchestrator_defaults(self):
        s = DispatchSettings(_env_file=None)
        assert s.job_name_prefix == "claude-agent"
        assert s.cpu_request == "500m"
        assert s.memory_request == "1Gi"
        assert s.cpu_limit == "1000m"
        assert s.memory_limit == "2Gi"
        assert s.job_ttl_seconds == 3600

    def test_page_size_defaults(self):
        s = DispatchSettings(_env_file=None)
        assert (s.page_size_default, s.page_size_max) == (20, 100)


class TestEnvironment:
    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("AGENT_DISPATCH_K8S_NAMESPACE", "agents")
        monkeypatch.setenv("AGENT_DISPATCH_DEFAULT_MAX_TOKENS", "1024")
        s = DispatchSettings(_env_file=None)
        assert s.k8s_namespace == "agents"
        assert s.default_max_tokens == 1024

    def test_get_settings_is_cached(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("AGENT_DISPATCH_SERVICE_NAME", "changed")
        assert get_settings() is first
        clear_settings_cache()
        assert get_settings().service_name == "changed"


class TestValidation:
    def test_log_format_must_be_known(self):
        with pytest.raises(ValidationError):
            DispatchSettings(_env_file=None, log_format="xml")

    def test_log_format_normalised(self):
        s = DispatchSettings(_env_file=None, log_format="JSON")
        assert s.json_logs

    def test_trailing_slashes_stripped(self):
        s = DispatchSettings(_env_file=None, api_prefix="/api/v1/", backend_service_url="http://b:3001/")
        assert s.api_prefix == "/api/v1"
        assert s.backend_service_url == "http://b:3001"

    def test_page_size_default_cannot_exceed_max(self):
        with pytest.raises(ValidationError):
            DispatchSettings(_env_file=None, page_size_default=50, page_size_max=10)

    @pytest.mark.parametrize("url", ["memory", ":memory:", "sqlite:///:memory:"])
    def test_memory_database(self, url):
        assert DispatchSettings(_env_file=None, database_url=url).is_memory_database
