"""Tests — settings loader (YAML + ${VAR} substitution + env overrides)."""
import textwrap

from config.settings import Settings, get_settings, load_settings, reset_settings


def _write(tmp_path, body: str) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(textwrap.dedent(body))
    return str(path)


class TestDefaults:

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "nope.yaml"), env={})
        assert settings.database.store_backend == "memory"
        assert settings.worker.worker_count == 4
        assert settings.reaper.stale_threshold == 600
        assert settings.retry.base_delay == 30
        assert settings.retry.max_delay == 3600
        assert settings.rate_limits.provider_limits["google"] == 500
        assert settings.handlers.timeouts["ProcessCampaign"] == 300

    def test_get_settings_caches(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OUTREACH_CONFIG", str(tmp_path / "nope.yaml"))
        first = get_settings()
        assert get_settings() is first
        reset_settings()
        assert get_settings() is not first


class TestYaml:

    def test_sections_and_env_substitution(self, tmp_path):
        path = _write(tmp_path, """
            app_name: "Test Worker"
            database:
              url: "${TEST_DB_URL}"
              store_backend: sql
            worker:
              worker_count: 2
              eligible_types: [SendEmail]
            retry:
              base_delay: 10
              jitter: 0
            rate_limits:
              day_boundary_hour: 6
              provider_limits:
                google: 450
            handlers:
              timeouts:
                SendEmail: 12
            connector:
              type: rest
              base_url: "https://mail.test"
              api_key: "${MISSING_KEY}"
        """)
        settings = load_settings(path, env={"TEST_DB_URL": "sqlite:///./t.db"})

        assert settings.app_name == "Test Worker"
        assert settings.database.store_backend == "sql"
        assert settings.worker.worker_count == 2
        assert settings.worker.eligible_types == ["SendEmail"]
        assert settings.retry.base_delay == 10
        assert settings.retry.max_delay == 3600
        assert settings.rate_limits.day_boundary_hour == 6
        # overrides merge with the built-in provider table
        assert settings.rate_limits.provider_limits["google"] == 450
        assert settings.rate_limits.provider_limits["outlook"] == 300
        assert settings.handlers.timeouts["SendEmail"] == 12
        assert settings.handlers.timeouts["VerifyEmail"] == 30
        assert settings.connector.type == "rest"

    def test_substitution_uses_process_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_DB_URL", "postgresql://u:p@db/outreach")
        path = _write(tmp_path, """
            database:
              url: "${TEST_DB_URL}"
        """)
        assert load_settings(path).database.url == "postgresql://u:p@db/outreach"

    def test_unset_variable_left_verbatim(self, tmp_path):
        path = _write(tmp_path, """
            connector:
              api_key: "${MISSING_KEY}"
        """)
        assert load_settings(path, env={}).connector.api_key == "${MISSING_KEY}"

    def test_empty_file(self, tmp_path):
        path = _write(tmp_path, "")
        assert load_settings(path, env={}).worker.poll_interval == 2.0


class TestEnvOverrides:

    def test_env_beats_yaml(self, tmp_path):
        path = _write(tmp_path, """
            worker:
              worker_count: 2
        """)
        settings = load_settings(path, env={
            "WORKER_COUNT": "8",
            "WORKER_POLL_INTERVAL": "0.5",
            "WORKER_JOB_TYPES": "SendEmail, WarmupEmail",
            "STORE_BACKEND": "sql",
            "DATABASE_URL": "sqlite:///./x.db",
            "REAPER_STALE_THRESHOLD": "120",
        })
        assert settings.worker.worker_count == 8
        assert settings.worker.poll_interval == 0.5
        assert settings.worker.eligible_types == ["SendEmail", "WarmupEmail"]
        assert settings.database.store_backend == "sql"
        assert settings.database.url == "sqlite:///./x.db"
        assert settings.reaper.stale_threshold == 120

    def test_provider_limit_overrides(self, tmp_path):
        settings = load_settings(str(tmp_path / "nope.yaml"), env={
            "RATE_LIMIT_GOOGLE": "250",
            "RATE_LIMIT_FASTMAIL": "80",
            "RATE_LIMIT_DEFAULT": "60",
            "RATE_LIMIT_DAY_BOUNDARY_HOUR": "3",
        })
        limits = settings.rate_limits
        assert limits.provider_limits["google"] == 250
        assert limits.provider_limits["fastmail"] == 80
        assert limits.default_daily_limit == 60
        assert limits.day_boundary_hour == 3
        assert "default" not in limits.provider_limits

    def test_connector_url_switches_to_rest(self, tmp_path):
        settings = load_settings(str(tmp_path / "nope.yaml"), env={
            "CONNECTOR_BASE_URL": "https://mail.internal",
            "CONNECTOR_API_KEY": "secret",
        })
        assert settings.connector.type == "rest"
        assert settings.connector.api_key == "secret"

    def test_settings_instances_do_not_share_state(self):
        a, b = Settings(), Settings()
        a.rate_limits.provider_limits["google"] = 1
        assert b.rate_limits.provider_limits["google"] == 500
