import pytest

from embed_gateway.config import DEFAULT_RLS_ENABLED_DATASETS, Settings

_ENV_KEYS = [
    "APP_ENV",
    "NODE_ENV",
    "RENDER",
    "RENDER_PAID",
    "HEROKU",
    "RESTRICTED_NETWORK",
    "SMTP_HOST",
    "SMTP_PORT",
    "SMTP_SECURE",
    "SMTP_EMAIL",
    "SMTP_USER",
    "SMTP_PASSWORD",
    "SMTP_PASS",
    "SENDGRID_API_KEY",
    "SENDGRID_FROM_EMAIL",
    "DELIVERY_BACKOFF_SECONDS",
    "OTP_TTL_SECONDS",
    "RLS_ENABLED_DATASETS",
    "REPORT_ACCESS_CONTROL",
    "CORS_ORIGINS",
    "CORS_ALLOW_ALL",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_development_defaults(clean_env):
    settings = Settings.from_env()

    assert settings.app_env == "development"
    assert settings.restricted_network is False
    assert settings.smtp_port == 465
    assert settings.smtp_secure is True
    assert settings.otp_ttl_seconds == 300
    assert settings.delivery_backoff_seconds == 1.0
    assert settings.rls_enabled_datasets == DEFAULT_RLS_ENABLED_DATASETS
    assert settings.cors_origins == ("*",)
    assert settings.smtp_configured is False
    assert settings.api_channel_configured is False


def test_production_defaults_to_starttls(clean_env):
    clean_env.setenv("NODE_ENV", "production")

    settings = Settings.from_env()

    assert settings.restricted_network is True
    assert settings.smtp_port == 587
    assert settings.smtp_secure is False


def test_render_free_tier_is_restricted(clean_env):
    clean_env.setenv("RENDER", "true")
    settings = Settings.from_env()
    assert settings.restricted_network is True
    assert settings.restricted_free_tier is True

    clean_env.setenv("RENDER_PAID", "1")
    assert Settings.from_env().restricted_free_tier is False


def test_restricted_network_override(clean_env):
    clean_env.setenv("APP_ENV", "production")
    clean_env.setenv("RESTRICTED_NETWORK", "false")
    assert Settings.from_env().restricted_network is False


def test_smtp_aliases_and_api_sender_fallback(clean_env):
    clean_env.setenv("SMTP_HOST", "smtp.example.com")
    clean_env.setenv("SMTP_USER", "sender@example.com")
    clean_env.setenv("SMTP_PASS", "  app-password  ")
    clean_env.setenv("SENDGRID_API_KEY", "SG.key")

    settings = Settings.from_env()

    assert settings.smtp_email == "sender@example.com"
    assert settings.smtp_password == "app-password"
    assert settings.sendgrid_from_email == "sender@example.com"
    assert settings.smtp_configured is True
    assert settings.api_channel_configured is True


def test_report_access_control_and_lists(clean_env):
    clean_env.setenv("REPORT_ACCESS_CONTROL", '{"Finance": ["admin"], "bad": "x"}')
    clean_env.setenv("RLS_ENABLED_DATASETS", "a, b ,,c")
    clean_env.setenv("CORS_ORIGINS", "https://app.example.com")

    settings = Settings.from_env()

    assert settings.report_access_control == {"Finance": ["admin"]}
    assert settings.rls_enabled_datasets == ("a", "b", "c")
    assert settings.cors_origins == ("https://app.example.com",)


def test_invalid_numbers_fall_back_to_defaults(clean_env):
    clean_env.setenv("OTP_TTL_SECONDS", "soon")
    clean_env.setenv("DELIVERY_BACKOFF_SECONDS", "-3")

    settings = Settings.from_env()

    assert settings.otp_ttl_seconds == 300
    assert settings.delivery_backoff_seconds == 1.0


def test_startup_snapshot_is_redacted():
    settings = Settings(
        smtp_password="super-secret",
        sendgrid_api_key="SG.secret",
        sp_client_secret="aad-secret",
    )

    snapshot = settings.startup_snapshot()
    rendered = repr(snapshot)

    assert snapshot["has_smtp_password"] is True
    assert snapshot["has_sendgrid_api_key"] is True
    for secret in ("super-secret", "SG.secret", "aad-secret"):
        assert secret not in rendered
    assert "AAD_TENANT_ID" in snapshot["missing_bi_settings"]
