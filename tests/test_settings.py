"""
Tests — Configuration loading.

Run:
  pytest tests/test_settings.py -v
"""
import textwrap

from config.settings import (
    ConsumerConfig, QueueConfig, Settings, TimingConfig, load_settings,
)


class TestDefaults:

    def test_timing_defaults(self):
        cfg = TimingConfig()
        assert cfg.min_read_ms == 700
        assert cfg.max_total_ms == 45_000
        assert cfg.seeded_pauses is True

    def test_queue_defaults(self):
        cfg = QueueConfig()
        assert cfg.backend == "memory"
        assert cfg.max_delay_seconds == 900
        assert cfg.max_receive_count == 3

    def test_consumer_defaults(self):
        assert ConsumerConfig().batch_size == 5

    def test_settings_defaults(self):
        settings = Settings()
        assert settings.scheduler.default_persona == "Carlos"
        assert settings.scheduler.rollback_on_failure is True
        assert settings.personas == {}


class TestLoadSettings:

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.queue.backend == "memory"
        assert settings.responder.base_url == ""

    def test_bundled_settings_file(self):
        settings = load_settings()
        assert settings.app_name == "PacedReplies"
        assert "Jordan" in settings.personas

    def test_sections_and_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RESPONDER_URL", "http://responder.internal")
        path = tmp_path / "settings.yaml"
        path.write_text(textwrap.dedent("""
            app_name: Test
            timing:
              max_total_ms: 20000
              seeded_pauses: false
            queue:
              backend: redis
              max_receive_count: 7
            responder:
              base_url: ${RESPONDER_URL}
              auth_token: ${UNSET_TOKEN_FOR_TEST}
            scheduler:
              rollback_on_failure: false
            personas:
              Quick:
                read_cps: [20, 25]
        """))

        settings = load_settings(str(path))

        assert settings.app_name == "Test"
        assert settings.timing.max_total_ms == 20_000
        assert settings.timing.min_read_ms == 700
        assert settings.timing.seeded_pauses is False
        assert settings.queue.backend == "redis"
        assert settings.queue.max_receive_count == 7
        assert settings.queue.dedup_window_seconds == 300
        assert settings.responder.base_url == "http://responder.internal"
        assert settings.responder.auth_token == "${UNSET_TOKEN_FOR_TEST}"
        assert settings.scheduler.rollback_on_failure is False
        assert settings.personas["Quick"]["read_cps"] == [20, 25]

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("consumer:\n  batch_size: 9\n  shiny_new_option: 1\n")
        settings = load_settings(str(path))
        assert settings.consumer.batch_size == 9

    def test_env_var_selects_file(self, tmp_path, monkeypatch):
        path = tmp_path / "other.yaml"
        path.write_text("app_name: FromEnv\n")
        monkeypatch.setenv("PACED_REPLIES_CONFIG", str(path))
        assert load_settings().app_name == "FromEnv"
