"""Engine configuration persisted between sessions."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict

from .scoring import DEFAULT_BASE_XP

logger = logging.getLogger("casebook.settings")

_BASE_DIR = Path(__file__).resolve().parent.parent
SETTINGS_PATH = _BASE_DIR / "settings.json"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@dataclass
class EngineSettings:
    """Tunable engine behaviour; every field survives a malformed settings file."""

    storage_dir: str = "progress"
    base_completion_xp: int = DEFAULT_BASE_XP
    auto_advance: bool = True
    min_auto_advance_ms: int = 0
    log_level: str = "INFO"

    def clamp(self) -> "EngineSettings":
        self.storage_dir = str(self.storage_dir).strip() or "progress"
        self.base_completion_xp = max(0, int(self.base_completion_xp))
        self.auto_advance = bool(self.auto_advance)
        self.min_auto_advance_ms = max(0, int(self.min_auto_advance_ms))
        level = str(self.log_level).upper()
        if level not in LOG_LEVELS:
            level = "INFO"
        self.log_level = level
        return self

    def copy(self) -> "EngineSettings":
        return EngineSettings.from_dict(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "EngineSettings":
        if not isinstance(data, dict):
            return cls()

        def _as_int(key: str, default: int) -> int:
            value = data.get(key, default)
            if isinstance(value, bool):
                return default
            try:
                return int(value)
            except (TypeError, ValueError, OverflowError):
                return default

        def _as_bool(key: str, default: bool) -> bool:
            value = data.get(key, default)
            if isinstance(value, bool):
                return value
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in {"true", "1", "yes", "on"}:
                    return True
                if lowered in {"false", "0", "no", "off"}:
                    return False
            return bool(value) if value is not None else default

        storage_dir = data.get("storage_dir", "progress")
        settings = cls(
            storage_dir=storage_dir if isinstance(storage_dir, str) else "progress",
            base_completion_xp=_as_int("base_completion_xp", DEFAULT_BASE_XP),
            auto_advance=_as_bool("auto_advance", True),
            min_auto_advance_ms=_as_int("min_auto_advance_ms", 0),
            log_level=str(data.get("log_level", "INFO")),
        )
        return settings.clamp()

    def configure_logging(self) -> None:
        logging.basicConfig(level=getattr(logging, self.log_level), format=LOG_FORMAT)


def load_settings(path: Path | str = SETTINGS_PATH) -> EngineSettings:
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError:
        return EngineSettings()
    except (OSError, json.JSONDecodeError, TypeError):
        logger.warning("Settings file %s unreadable; using defaults.", path)
        return EngineSettings()
    return EngineSettings.from_dict(data)


def save_settings(settings: EngineSettings, path: Path | str = SETTINGS_PATH) -> EngineSettings:
    path = Path(path)
    sanitized = settings.copy().clamp()
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "w", delete=False, dir=path.parent, prefix=path.name, suffix=".tmp", encoding="utf-8"
        ) as tmp_file:
            json.dump(sanitized.to_dict(), tmp_file, indent=2)
            tmp_file.write("\n")
            tmp_path = Path(tmp_file.name)
        os.replace(str(tmp_path), str(path))
    except OSError as exc:
        logger.error("Failed to save settings: %s", exc)
        if tmp_path is not None:
            try:
                tmp_path.unlink()
            except OSError:
                pass
    return sanitized
