"""Tests for persisted user settings."""

import math
import os
from pathlib import Path

import pytest
import yaml

from semindex.config.user_settings import SettingsStore, UserSettings, validate_threshold
from semindex.core.errors import ErrorCode, InvalidThresholdError


class TestValidateThreshold:
    """Thresholds are numbers in [0, 100], taken literally as percents."""

    @pytest.mark.parametrize("value", [0, 0.6, 60, 99.99, 100])
    def test_accepts(self, value: float) -> None:
        assert validate_threshold(value) == float(value)

    @pytest.mark.parametrize("value", [-0.01, 100.01, math.nan, True, "60", None])
    def test_rejects(self, value: object) -> None:
        with pytest.raises(InvalidThresholdError) as exc_info:
            validate_threshold(value)
        assert exc_info.value.code == ErrorCode.INVALID_THRESHOLD


class TestSettingsStore:
    """Reading and writing settings.yaml."""

    def test_read_missing_returns_none(self, tmp_path: Path) -> None:
        assert SettingsStore(tmp_path / "settings.yaml").read() is None

    def test_set_then_read(self, tmp_path: Path) -> None:
        store = SettingsStore(tmp_path / "settings.yaml")

        written = store.set_threshold(75)

        assert written.confidence_threshold == 75.0
        assert written.updated_at is not None
        assert store.read() == written

    def test_file_has_header_and_yaml_body(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.yaml"
        SettingsStore(path).set_threshold(42.5)

        text = path.read_text()
        assert text.startswith("# SemIndex user settings")
        assert yaml.safe_load(text)["confidence_threshold"] == 42.5

    def test_rejected_value_keeps_previous(self, tmp_path: Path) -> None:
        store = SettingsStore(tmp_path / "settings.yaml")
        store.set_threshold(70)

        with pytest.raises(InvalidThresholdError):
            store.set_threshold(150)

        persisted = store.read()
        assert persisted is not None
        assert persisted.confidence_threshold == 70.0

    def test_reset_restores_default(self, tmp_path: Path) -> None:
        store = SettingsStore(tmp_path / "settings.yaml")
        store.set_threshold(10)

        reset = store.reset()

        assert reset.confidence_threshold == UserSettings().confidence_threshold == 60.0

    def test_external_edit_is_picked_up(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.yaml"
        store = SettingsStore(path)
        store.set_threshold(30)
        assert store.read() is not None

        path.write_text("confidence_threshold: 85.0\n")
        st = path.stat()
        os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000))

        persisted = store.read()
        assert persisted is not None
        assert persisted.confidence_threshold == 85.0

    def test_unparseable_file_is_treated_as_absent(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.yaml"
        path.write_text("confidence_threshold: 250\n")

        assert SettingsStore(path).read() is None

    def test_no_temp_files_left_behind(self, tmp_path: Path) -> None:
        SettingsStore(tmp_path / "settings.yaml").set_threshold(50)

        assert sorted(p.name for p in tmp_path.iterdir()) == ["settings.yaml"]
