import json
import logging
from pathlib import Path

from casebook.settings import EngineSettings, load_settings, save_settings


def test_settings_round_trip(tmp_path: Path) -> None:
    settings_path = tmp_path / "settings.json"
    original = EngineSettings(
        storage_dir="saves",
        base_completion_xp=75,
        auto_advance=False,
        min_auto_advance_ms=1500,
        log_level="debug",
    )

    saved = save_settings(original, settings_path)
    loaded = load_settings(settings_path)

    assert saved == loaded
    assert loaded.log_level == "DEBUG"
    assert loaded.auto_advance is False
    assert json.loads(settings_path.read_text(encoding="utf-8"))["min_auto_advance_ms"] == 1500


def test_missing_settings_file_uses_defaults(tmp_path: Path) -> None:
    assert load_settings(tmp_path / "absent.json") == EngineSettings()


def test_corrupt_settings_file_uses_defaults(tmp_path: Path, caplog) -> None:
    settings_path = tmp_path / "settings.json"
    settings_path.write_text("{broken", encoding="utf-8")
    with caplog.at_level(logging.WARNING, logger="casebook.settings"):
        assert load_settings(settings_path) == EngineSettings()
    assert "unreadable" in caplog.text


def test_from_dict_clamps_bad_values() -> None:
    settings = EngineSettings.from_dict(
        {
            "storage_dir": 12,
            "base_completion_xp": -10,
            "auto_advance": "off",
            "min_auto_advance_ms": "soon",
            "log_level": "chatty",
        }
    )
    assert settings.storage_dir == "progress"
    assert settings.base_completion_xp == 0
    assert settings.auto_advance is False
    assert settings.min_auto_advance_ms == 0
    assert settings.log_level == "INFO"


def test_from_dict_ignores_non_mapping() -> None:
    assert EngineSettings.from_dict(["nope"]) == EngineSettings()


def test_non_finite_numbers_in_settings_file_use_defaults(tmp_path: Path) -> None:
    settings_path = tmp_path / "settings.json"
    settings_path.write_text(
        '{"base_completion_xp": Infinity, "min_auto_advance_ms": NaN, "log_level": "WARNING"}',
        encoding="utf-8",
    )
    settings = load_settings(settings_path)
    assert settings.base_completion_xp == 50
    assert settings.min_auto_advance_ms == 0
    assert settings.log_level == "WARNING"
