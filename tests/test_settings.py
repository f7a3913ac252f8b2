"""Tests for YAML settings loading with environment substitution."""
import textwrap
import pytest

from config.settings import Settings, load_settings


def _write(tmp_path, body: str) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(textwrap.dedent(body))
    return str(path)


class TestDefaults:
    def test_defaults_run_everything_in_memory(self):
        settings = Settings()
        assert settings.queue.backend == "memory"
        assert settings.cache.backend == "memory"
        assert settings.database.store_backend == "memory"
        assert settings.presence.ordering == "processing"

    def test_chat_queues_requeue_forever(self):
        policies = Settings().queue.policies
        for name in ("messages", "receipts", "presence"):
            assert policies[name].max_attempts == 0
            assert policies[name].backoff.type == "none"
            assert policies[name].dead_letter is False
        assert policies["notifications"].max_attempts == 5
        assert policies["notifications"].backoff.delay == 2.0

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.app_name == "ChatPipeline"


class TestLoadSettings:
    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_REDIS_URL", "redis://cache:6380")
        path = _write(tmp_path, """
            cache:
              backend: redis
              redis_url: "${TEST_REDIS_URL}"
            database:
              url: "${UNSET_DB_URL_FOR_TEST}"
        """)
        settings = load_settings(path)
        assert settings.cache.redis_url == "redis://cache:6380"
        assert settings.cache.key_prefix == "chat"
        assert settings.database.url == "${UNSET_DB_URL_FOR_TEST}"

    def test_policy_overlay_keeps_unspecified_fields(self, tmp_path):
        path = _write(tmp_path, """
            queue:
              backend: redis
              dlq_sweep_interval: 60
              policies:
                notifications:
                  max_attempts: 8
                reports:
                  max_attempts: 2
                  backoff: {type: linear, delay: 4}
        """)
        queue = load_settings(path).queue
        assert queue.backend == "redis"
        assert queue.dlq_sweep_interval == 60.0
        assert queue.policies["notifications"].max_attempts == 8
        assert queue.policies["notifications"].backoff.type == "exponential"
        assert queue.policies["reports"].backoff.type == "linear"
        assert queue.policies["messages"].max_attempts == 0

    def test_providers(self, tmp_path):
        path = _write(tmp_path, """
            notifications:
              token_max_idle_days: 7
              providers:
                log:
                  enabled: true
        """)
        notifications = load_settings(path).notifications
        assert notifications.token_max_idle_days == 7
        assert notifications.providers["log"].enabled is True

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = _write(tmp_path, "presence:\n  ordering: timestamp\n")
        monkeypatch.setenv("CHAT_PIPELINE_CONFIG", path)
        assert load_settings().presence.ordering == "timestamp"

    @pytest.mark.parametrize("section,key,value", [
        ("workers", "worker_count", 4),
        ("breaker", "volume_threshold", 20),
        ("presence", "stale_threshold", 60),
    ])
    def test_sections(self, tmp_path, section, key, value):
        path = _write(tmp_path, f"{section}:\n  {key}: {value}\n")
        assert getattr(getattr(load_settings(path), section), key) == value
