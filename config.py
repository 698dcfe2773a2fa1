"""
Configuration management for the place harvester.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, Any, List, Optional

from jsonschema import validate, ValidationError

from place_harvester.utils.errors import ConfigurationError


@dataclass
class BrowserConfig:
    """Browser launch settings."""
    headless: bool = False
    browser_type: str = "chromium"
    viewport_width: int = 1920
    viewport_height: int = 1080
    page_timeout: int = 30000  # ms
    locale: str = "en-US"
    stealth: bool = True
    user_data_dir: Optional[str] = None


@dataclass
class NavigationConfig:
    """Tab selection and settle delays."""
    target_app_pattern: str = "google.com/maps"
    home_url: str = "https://www.google.com/maps"
    settle_delays: List[float] = field(default_factory=lambda: [3.0, 5.0])


@dataclass
class OrchestratorConfig:
    """Job state machine timings and retry budget."""
    capture_timeout: float = 10.0
    max_retries: int = 3
    backoff_base: float = 2.0
    backoff_cap: float = 10.0
    stuck_after: float = 60.0
    capture_url_patterns: List[str] = field(default_factory=lambda: [
        r"google\.com/maps/preview/place",
        r"google\.com/maps/place",
    ])
    enrich: bool = False


@dataclass
class PanelConfig:
    """Driving loop timings."""
    stall_timeout: float = 15.0
    success_cooldown: float = 2.0
    failure_cooldown: float = 5.0
    recovery_delay: float = 2.0
    max_job_wait: float = 90.0
    max_retries: int = 3


@dataclass
class EnrichmentConfig:
    """Text summarization API settings."""
    api_key: Optional[str] = None
    model: str = "gpt-4o-mini"
    api_url: str = "https://api.openai.com/v1/chat/completions"
    max_tokens: int = 500
    temperature: float = 0.3
    timeout: float = 30.0
    retry_attempts: int = 2
    system_prompt: str = (
        "You are a helpful assistant that analyzes business listing descriptions. "
        "Extract key information about amenities, features, and unique selling points "
        "in a concise format."
    )


@dataclass
class StorageConfig:
    """Where state and exports go."""
    state_file: str = "data/session_state.json"
    export_dir: str = "exports"


@dataclass
class HarvesterConfig:
    """Main configuration."""
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    navigation: NavigationConfig = field(default_factory=NavigationConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    panel: PanelConfig = field(default_factory=PanelConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    log_level: str = "INFO"
    log_file: Optional[str] = None


_POSITIVE_SECONDS = {"type": "number", "minimum": 0.0, "maximum": 3600.0}

# Configuration schema for validation
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "browser": {
            "type": "object",
            "properties": {
                "headless": {"type": "boolean"},
                "browser_type": {"type": "string", "enum": ["chromium", "firefox", "webkit"]},
                "viewport_width": {"type": "integer", "minimum": 320, "maximum": 7680},
                "viewport_height": {"type": "integer", "minimum": 240, "maximum": 4320},
                "page_timeout": {"type": "integer", "minimum": 1000, "maximum": 300000},
                "locale": {"type": "string", "minLength": 2},
                "stealth": {"type": "boolean"},
                "user_data_dir": {"type": ["string", "null"]}
            },
            "additionalProperties": False
        },
        "navigation": {
            "type": "object",
            "properties": {
                "target_app_pattern": {"type": "string", "minLength": 1},
                "home_url": {"type": "string", "minLength": 1},
                "settle_delays": {"type": "array", "items": _POSITIVE_SECONDS, "maxItems": 5}
            },
            "additionalProperties": False
        },
        "orchestrator": {
            "type": "object",
            "properties": {
                "capture_timeout": _POSITIVE_SECONDS,
                "max_retries": {"type": "integer", "minimum": 0, "maximum": 10},
                "backoff_base": _POSITIVE_SECONDS,
                "backoff_cap": _POSITIVE_SECONDS,
                "stuck_after": _POSITIVE_SECONDS,
                "capture_url_patterns": {
                    "type": "array",
                    "items": {"type": "string", "minLength": 1},
                    "minItems": 1
                },
                "enrich": {"type": "boolean"}
            },
            "additionalProperties": False
        },
        "panel": {
            "type": "object",
            "properties": {
                "stall_timeout": _POSITIVE_SECONDS,
                "success_cooldown": _POSITIVE_SECONDS,
                "failure_cooldown": _POSITIVE_SECONDS,
                "recovery_delay": _POSITIVE_SECONDS,
                "max_job_wait": _POSITIVE_SECONDS,
                "max_retries": {"type": "integer", "minimum": 1, "maximum": 10}
            },
            "additionalProperties": False
        },
        "enrichment": {
            "type": "object",
            "properties": {
                "api_key": {"type": ["string", "null"]},
                "model": {"type": "string", "minLength": 1},
                "api_url": {"type": "string", "minLength": 1},
                "max_tokens": {"type": "integer", "minimum": 1, "maximum": 16000},
                "temperature": {"type": "number", "minimum": 0.0, "maximum": 2.0},
                "timeout": _POSITIVE_SECONDS,
                "retry_attempts": {"type": "integer", "minimum": 1, "maximum": 10},
                "system_prompt": {"type": "string"}
            },
            "additionalProperties": False
        },
        "storage": {
            "type": "object",
            "properties": {
                "state_file": {"type": "string", "minLength": 1},
                "export_dir": {"type": "string", "minLength": 1}
            },
            "additionalProperties": False
        },
        "log_level": {
            "type": "string",
            "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        },
        "log_file": {"type": ["string", "null"]}
    },
    "additionalProperties": False
}


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class ConfigManager:
    """Loads, validates and saves the harvester configuration."""

    def __init__(self, config_path: str = "config.json"):
        self.config_path = Path(config_path)
        self._config: Optional[HarvesterConfig] = None
        self._last_modified: Optional[float] = None
        self._lock = threading.RLock()

    def validate_config(self, config_data: Dict[str, Any]) -> None:
        """Validate configuration data against schema."""
        try:
            validate(instance=config_data, schema=CONFIG_SCHEMA)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e.message}")

    def load_config(self) -> HarvesterConfig:
        """Load configuration from file or environment variables."""
        with self._lock:
            if self.config_path.exists():
                current_modified = self.config_path.stat().st_mtime
                if self._config is None or current_modified != self._last_modified:
                    self._load_from_file()
                    self._last_modified = current_modified
            elif self._config is None:
                self._load_from_env()

            return self._config or HarvesterConfig()

    def _load_from_file(self) -> None:
        """Load configuration from JSON file with validation."""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                config_data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Failed to read config file {self.config_path}: {e}")

        self.validate_config(config_data)

        self._config = self._dict_to_config(config_data)
        self._override_with_env_vars(self._config)

        logging.info(f"Configuration loaded and validated from {self.config_path}")

    def _load_dotenv(self) -> None:
        """Load KEY=VALUE lines from ./.env into the environment."""
        env_file = Path('.env')
        if not env_file.exists():
            return
        try:
            with open(env_file, 'r', encoding='utf-8') as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith('#') and '=' in line:
                        key, value = line.split('=', 1)
                        os.environ.setdefault(key.strip(), value.strip())
            logging.info("Loaded environment variables from .env file")
        except OSError as e:
            logging.warning(f"Failed to load .env file: {e}")

    def _override_with_env_vars(self, config: HarvesterConfig) -> None:
        """Override configuration with environment variables."""
        self._load_dotenv()

        if os.getenv("OPENAI_API_KEY"):
            config.enrichment.api_key = os.getenv("OPENAI_API_KEY")

        if os.getenv("OPENAI_MODEL"):
            config.enrichment.model = os.getenv("OPENAI_MODEL")

        if os.getenv("HARVESTER_HEADLESS"):
            config.browser.headless = _env_bool(os.getenv("HARVESTER_HEADLESS"))

        if os.getenv("HARVESTER_STATE_FILE"):
            config.storage.state_file = os.getenv("HARVESTER_STATE_FILE")

        log_level = os.getenv("HARVESTER_LOG_LEVEL")
        if log_level and log_level.upper() in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            config.log_level = log_level.upper()

    def _load_from_env(self) -> None:
        """Load configuration from environment variables."""
        config = HarvesterConfig()
        self._override_with_env_vars(config)
        self._config = config
        logging.info("Configuration loaded from environment variables")

    def _dict_to_config(self, data: Dict[str, Any]) -> HarvesterConfig:
        """Convert dictionary to HarvesterConfig object."""
        config = HarvesterConfig()

        if "browser" in data:
            config.browser = BrowserConfig(**data["browser"])

        if "navigation" in data:
            config.navigation = NavigationConfig(**data["navigation"])

        if "orchestrator" in data:
            config.orchestrator = OrchestratorConfig(**data["orchestrator"])

        if "panel" in data:
            config.panel = PanelConfig(**data["panel"])

        if "enrichment" in data:
            config.enrichment = EnrichmentConfig(**data["enrichment"])

        if "storage" in data:
            config.storage = StorageConfig(**data["storage"])

        config.log_level = data.get("log_level", config.log_level)
        config.log_file = data.get("log_file", config.log_file)

        return config

    def export_config(self) -> Dict[str, Any]:
        """Export current configuration as dictionary."""
        with self._lock:
            if not self._config:
                return {}
            return asdict(self._config)

    def save_config(self, config_path: Optional[str] = None) -> None:
        """Save current configuration to file."""
        with self._lock:
            if not self._config:
                raise ConfigurationError("No configuration loaded to save")

            save_path = Path(config_path) if config_path else self.config_path
            config_dict = self.export_config()

            self.validate_config(config_dict)

            with open(save_path, 'w', encoding='utf-8') as f:
                json.dump(config_dict, f, indent=2, ensure_ascii=False)

            logging.info(f"Configuration saved to {save_path}")


# Default manager, reading config.json from the working directory
config_manager = ConfigManager()


def get_config() -> HarvesterConfig:
    """Current configuration from the default manager."""
    return config_manager.load_config()
