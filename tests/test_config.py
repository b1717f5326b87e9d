import json

import pytest

from healthvault import config
from healthvault.config import Settings, load_settings
from healthvault.errors import RateLimitError
from healthvault.rate_limit import RequestLimits, SlidingWindow


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ("HEALTHVAULT_MASTER_SECRET", "HEALTHVAULT_SIGNING_SECRET", "HEALTHVAULT_ENVELOPE_SECRET"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(config, "SECRETS_PATH", str(tmp_path / "missing.json"))


def test_secrets_from_file(tmp_path):
    path = tmp_path / "secrets.json"
    path.write_text(json.dumps({"master_secret": "00" * 32, "signing_secret": "11" * 32}))

    settings = load_settings(str(path))
    assert settings.master_secret == bytes(32)
    assert settings.signing_secret == b"\x11" * 32
    assert settings.envelope_signing_secret == settings.signing_secret


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "secrets.json"
    path.write_text(json.dumps({"master_secret": "00" * 32, "signing_secret": "11" * 32}))
    monkeypatch.setenv("HEALTHVAULT_SIGNING_SECRET", "22" * 32)
    monkeypatch.setenv("HEALTHVAULT_ENVELOPE_SECRET", "33" * 32)

    settings = load_settings(str(path))
    assert settings.signing_secret == b"\x22" * 32
    assert settings.envelope_signing_secret == b"\x33" * 32


def test_missing_secret_fails_fast():
    with pytest.raises(RuntimeError):
        load_settings()


def test_short_secret_rejected_in_production(monkeypatch):
    monkeypatch.setattr(config, "ENV", "prod")
    monkeypatch.setenv("HEALTHVAULT_MASTER_SECRET", "00" * 8)
    monkeypatch.setenv("HEALTHVAULT_SIGNING_SECRET", "11" * 32)
    with pytest.raises(RuntimeError):
        load_settings()


def test_repr_hides_secrets():
    settings = Settings(master_secret=b"M" * 32, signing_secret=b"S" * 32)
    assert "MMMM" not in repr(settings)
    assert "SSSS" not in repr(settings)


def test_sliding_window():
    now = [1000.0]
    window = SlidingWindow(2, window_seconds=60, clock=lambda: now[0])

    assert window.hit("ip:1") is None
    assert window.hit("ip:1") is None
    assert window.hit("ip:1") == 60
    assert window.hit("ip:2") is None

    now[0] += 60
    assert window.hit("ip:1") is None


def test_limits_are_sized_from_settings():
    settings = Settings(master_secret=b"M" * 32, signing_secret=b"S" * 32,
                        issue_rpm=7, disclose_rpm=5, credential_rpm=3)
    limits = RequestLimits.from_settings(settings)
    assert (limits.issue.limit, limits.disclose.limit, limits.credential.limit) == (7, 5, 3)


def test_credential_budget_is_shared_across_clients():
    limits = RequestLimits(issue_rpm=10, disclose_rpm=10, credential_rpm=1, clock=lambda: 1000)
    limits.check_disclose("ip:a", "envelope-1")
    with pytest.raises(RateLimitError) as exc:
        limits.check_disclose("ip:b", "envelope-1")
    assert exc.value.scope == "disclose_credential"
    limits.check_disclose("ip:b", "envelope-2")

    limits.clear()
    limits.check_disclose("ip:b", "envelope-1")
