"""Tests for settings loaded from the environment."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from bitfreeze.config import ELEVATED_TIMEOUT, RECOVERY_RECORD_SIZE, Settings, load_settings

ENV_KEYS = ("BITFREEZE_RAR", "BITFREEZE_SUDO", "BITFREEZE_ELEVATED_TIMEOUT", "BITFREEZE_RECOVERY")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


class TestLoadSettings:
    def test_defaults(self) -> None:
        s = load_settings()
        assert s == Settings()
        assert s.rar == "rar"
        assert s.recovery_percent == RECOVERY_RECORD_SIZE == 10
        assert s.elevated_timeout == ELEVATED_TIMEOUT
        assert s.password_env == "RAR_PASSWORD"

    def test_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BITFREEZE_RAR", "/opt/rar/rar")
        monkeypatch.setenv("BITFREEZE_SUDO", "doas")
        monkeypatch.setenv("BITFREEZE_ELEVATED_TIMEOUT", "60")
        monkeypatch.setenv("BITFREEZE_RECOVERY", "5")
        s = load_settings()
        assert (s.rar, s.sudo, s.elevated_timeout, s.recovery_percent) == ("/opt/rar/rar", "doas", 60, 5)

    def test_empty_values_fall_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BITFREEZE_RAR", "")
        monkeypatch.setenv("BITFREEZE_RECOVERY", "")
        s = load_settings()
        assert s.rar == "rar"
        assert s.recovery_percent == 10

    @pytest.mark.parametrize("value", ["abc", "-1", "101"])
    def test_bad_recovery(self, monkeypatch: pytest.MonkeyPatch, value: str) -> None:
        monkeypatch.setenv("BITFREEZE_RECOVERY", value)
        with pytest.raises(ValidationError, match="(?i)recovery"):
            load_settings()

    def test_timeout_must_be_positive(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BITFREEZE_ELEVATED_TIMEOUT", "0")
        with pytest.raises(ValidationError):
            load_settings()

    def test_keyword_construction(self) -> None:
        assert Settings(recovery_percent=3).recovery_percent == 3

    def test_settings_are_frozen(self) -> None:
        with pytest.raises(ValidationError):
            Settings().rar = "x"  # type: ignore[misc]
