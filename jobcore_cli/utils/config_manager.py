"""Configuration Management for CLI Settings"""

import os
from pathlib import Path
from typing import Any

import yaml
from rich.console import Console

console = Console()


class ConfigManager:
    """Manage CLI configuration settings"""

    def __init__(self, config_dir: Path | None = None):
        self.config_dir = config_dir or Path(
            os.getenv("JOBCORE_CONFIG_DIR", Path.home() / ".jobcore")
        )
        self.config_file = self.config_dir / "config.yaml"

    def ensure_config_dir(self):
        self.config_dir.mkdir(parents=True, exist_ok=True)

    def load_config(self) -> dict[str, Any]:
        """Load configuration from file, merged over the defaults"""
        if not self.config_file.exists():
            return self.get_default_config()

        try:
            with open(self.config_file) as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            console.print(f"[red]Error loading config: {e}[/red]")
            return self.get_default_config()

        merged = self.get_default_config()
        for section, values in loaded.items():
            if isinstance(values, dict) and isinstance(merged.get(section), dict):
                merged[section].update(values)
            else:
                merged[section] = values
        return merged

    def save_config(self, config: dict[str, Any]):
        self.ensure_config_dir()
        with open(self.config_file, "w") as f:
            yaml.dump(config, f, default_flow_style=False)

    def get_default_config(self) -> dict[str, Any]:
        return {
            "api": {
                "base_url": os.getenv("JOBCORE_API_URL", "http://localhost:8000"),
                "timeout": 30,
            },
            "display": {"jobs_per_page": 20},
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation (e.g., 'api.base_url')"""
        current: Any = self.load_config()
        for k in key.split("."):
            if isinstance(current, dict) and k in current:
                current = current[k]
            else:
                return default
        return current

    def set(self, key: str, value: Any):
        """Set configuration value using dot notation"""
        config = self.load_config()
        keys = key.split(".")

        current = config
        for k in keys[:-1]:
            current = current.setdefault(k, {})
        current[keys[-1]] = value

        self.save_config(config)

    def reset(self):
        self.save_config(self.get_default_config())


# Global config manager instance
config = ConfigManager()
