import os

import yaml

from settings_schema import PRSettings, validate_settings

APP_VERSION = "1.0.0"


class YamlConfig:
    """Load and save PR tracking settings to a YAML file."""

    def __init__(self, path: str | None = None) -> None:
        self.path = path or os.environ.get("PR_SETTINGS_PATH", "settings.yaml")

    def load(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} must contain a mapping")
        return data

    def save(self, data: dict) -> None:
        validate_settings(data)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(dict(data), f)

    def settings(self) -> PRSettings:
        """Return validated settings, filling in defaults for missing keys."""
        return validate_settings(self.load())


def load_settings(path: str | None = None) -> PRSettings:
    return YamlConfig(path).settings()
