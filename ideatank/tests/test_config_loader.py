from pathlib import Path

import ideatank.config.loader as loader


def _write_config(path: Path, content: str) -> None:
    path.write_text(content, encoding="utf-8")


def test_submission_limits_defaults_when_missing(monkeypatch, tmp_path):
    monkeypatch.setattr(loader, "_CONFIG_PATH", tmp_path / "config.yaml")

    limits = loader.get_submission_limits()

    assert limits == {
        "name_max_length": 50,
        "content_min_length": 5,
        "content_max_length": 500,
        "cooldown_seconds": 60,
    }


def test_submission_limits_coercion(monkeypatch, tmp_path):
    config_path = tmp_path / "config.yaml"
    _write_config(
        config_path,
        "\n".join(
            [
                "submission:",
                "  name_max_length: \"30\"",
                "  content_min_length: -1",
                "  content_max_length: abc",
                "  cooldown_seconds: 0",
            ]
        ),
    )
    monkeypatch.setattr(loader, "_CONFIG_PATH", config_path)

    limits = loader.get_submission_limits()

    assert limits["name_max_length"] == 30
    assert limits["content_min_length"] == 5
    assert limits["content_max_length"] == 500
    # Zero switches the cooldown off instead of falling back.
    assert limits["cooldown_seconds"] == 0


def test_submission_limits_reject_inverted_bounds(monkeypatch, tmp_path):
    config_path = tmp_path / "config.yaml"
    _write_config(
        config_path,
        "submission:\n  content_min_length: 100\n  content_max_length: 20\n",
    )
    monkeypatch.setattr(loader, "_CONFIG_PATH", config_path)

    limits = loader.get_submission_limits()

    assert limits["content_min_length"] == 5
    assert limits["content_max_length"] == 500


def test_access_gate_settings(monkeypatch, tmp_path):
    config_path = tmp_path / "config.yaml"
    _write_config(
        config_path,
        "access_gate:\n  enabled: \"no\"\n  max_failures: 5\n  lockout_seconds: \"0\"\n",
    )
    monkeypatch.setattr(loader, "_CONFIG_PATH", config_path)

    settings = loader.get_access_gate_settings()

    assert settings["enabled"] is False
    assert settings["max_failures"] == 5
    assert settings["lockout_seconds"] == 30


def test_admin_login_env_overrides_config(monkeypatch, tmp_path):
    config_path = tmp_path / "config.yaml"
    _write_config(
        config_path,
        "admin_login:\n  username: host\n  max_failures: 4\n",
    )
    monkeypatch.setattr(loader, "_CONFIG_PATH", config_path)
    monkeypatch.setenv("IDEATANK_ADMIN_USERNAME", "facilitator")
    monkeypatch.setenv("IDEATANK_ADMIN_LOCKOUT_SECONDS", "90")

    settings = loader.get_admin_login_settings()

    assert settings["username"] == "facilitator"
    assert settings["max_failures"] == 4
    assert settings["lockout_seconds"] == 90
    assert settings["state_path"] == "state/admin_lockout.json"


def test_session_timing_defaults(monkeypatch, tmp_path):
    monkeypatch.setattr(loader, "_CONFIG_PATH", tmp_path / "config.yaml")

    timing = loader.get_session_timing_settings()

    assert timing["closing_countdown_seconds"] == 10
    assert timing["tick_seconds"] == 1.0
    assert timing["reveal_countdown_seconds"] == 5
    assert timing["max_analysis_reruns"] == 2


def test_ai_settings_key_only_from_env(monkeypatch, tmp_path):
    config_path = tmp_path / "config.yaml"
    _write_config(
        config_path,
        "ai:\n  base_url: https://example.test/v1/\n  primary_model: model-a\n",
    )
    monkeypatch.setattr(loader, "_CONFIG_PATH", config_path)
    monkeypatch.delenv("IDEATANK_AI_API_KEY", raising=False)
    monkeypatch.setenv("IDEATANK_AI_MODEL_FALLBACK", "model-b")

    settings = loader.get_ai_settings()

    assert settings["api_key"] == ""
    assert settings["base_url"] == "https://example.test/v1"
    assert settings["primary_model"] == "model-a"
    assert settings["fallback_model"] == "model-b"


def test_api_settings_origins_from_env(monkeypatch, tmp_path):
    monkeypatch.setattr(loader, "_CONFIG_PATH", tmp_path / "config.yaml")
    monkeypatch.setenv("IDEATANK_ALLOWED_ORIGINS", "https://a.test, https://b.test")

    settings = loader.get_api_settings()

    assert settings["allowed_origins"] == ["https://a.test", "https://b.test"]
    assert settings["rate_limit_max_requests"] == 100
    assert settings["max_body_bytes"] == 1024 * 1024
    assert settings["trusted_proxies"] == []


def test_api_settings_trusted_proxies(monkeypatch, tmp_path):
    config_path = tmp_path / "config.yaml"
    _write_config(config_path, "api:\n  trusted_proxies:\n    - 10.0.0.1\n")
    monkeypatch.setattr(loader, "_CONFIG_PATH", config_path)

    assert loader.get_api_settings()["trusted_proxies"] == ["10.0.0.1"]

    monkeypatch.setenv("IDEATANK_TRUSTED_PROXIES", "10.0.0.2, 10.0.0.3")
    assert loader.get_api_settings()["trusted_proxies"] == ["10.0.0.2", "10.0.0.3"]


def test_store_backend_falls_back_to_memory(monkeypatch, tmp_path):
    monkeypatch.setattr(loader, "_CONFIG_PATH", tmp_path / "config.yaml")
    monkeypatch.setenv("IDEATANK_STORE_BACKEND", "redis")

    assert loader.get_store_backend() == "memory"


def test_non_mapping_config_uses_defaults(monkeypatch, tmp_path):
    config_path = tmp_path / "config.yaml"
    _write_config(config_path, "- just\n- a list\n")
    monkeypatch.setattr(loader, "_CONFIG_PATH", config_path)

    assert loader.load_config() == {}
    assert loader.get_default_session_id() == "idea-live-event"
