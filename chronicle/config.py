"""
CHRONICLE Configuration System

Unified configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (CHRONICLE_*)
    2. Runtime overrides
    3. File passed with --config
    4. User config file (~/.chronicle/config.yaml)
    5. Project config file (./chronicle.yaml, then ./config/chronicle.yaml)
    6. Default values
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

T = TypeVar("T")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[T, T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])

        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        """Drop any runtime override."""
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == Decimal:
            return Decimal(value)  # type: ignore
        else:
            return value  # type: ignore

    def on_change(self, callback: Callable[[T, T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


@dataclass
class ChainConfig:
    """Configuration for the Checkpoint Chain."""
    max_pointer_length: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=2048,
        env_var="CHRONICLE_CHAIN_MAX_POINTER",
        description="Maximum length of a ciphertext storage pointer",
        validator=lambda x: x > 0,
    ))


@dataclass
class TagConfig:
    """Configuration for the Tag Registry."""
    max_tag_length: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=128,
        env_var="CHRONICLE_TAG_MAX_LENGTH",
        description="Maximum length of a tag label",
        validator=lambda x: x > 0,
    ))


@dataclass
class EnvelopeConfig:
    """Configuration for the Key Envelope Store."""
    max_wrapped_key_bytes: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1024,
        env_var="CHRONICLE_ENVELOPE_MAX_WRAPPED_KEY",
        description="Maximum wrapped-key payload size in bytes (storage cost cap)",
        validator=lambda x: x > 0,
    ))
    max_public_key_bytes: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=256,
        env_var="CHRONICLE_ENVELOPE_MAX_PUBLIC_KEY",
        description="Maximum sender public key size in bytes",
        validator=lambda x: x > 0,
    ))


@dataclass
class RegistryConfig:
    """Configuration for the Stream Registry."""
    stream_domain: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="chronicle.stream.v1",
        env_var="CHRONICLE_STREAM_DOMAIN",
        description="Domain-separation value mixed into stream identifiers",
        validator=lambda x: bool(x),
    ))


@dataclass
class HostConfig:
    """Configuration for the execution host."""
    genesis_height: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=0,
        env_var="CHRONICLE_HOST_GENESIS_HEIGHT",
        description="Sequence marker of the first committed call",
        validator=lambda x: x >= 0,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="CHRONICLE_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="CHRONICLE_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class StoreConfig:
    """Configuration for state persistence."""
    state_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="chronicle-state.json",
        env_var="CHRONICLE_STATE_PATH",
        description="Path of the CLI state snapshot",
        validator=lambda x: bool(x),
    ))


@dataclass
class ChronicleConfig:
    """
    Root configuration for CHRONICLE.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    chain: ChainConfig = field(default_factory=ChainConfig)
    tags: TagConfig = field(default_factory=TagConfig)
    envelope: EnvelopeConfig = field(default_factory=EnvelopeConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    host: HostConfig = field(default_factory=HostConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    store: StoreConfig = field(default_factory=StoreConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.safe_dump(self.to_dict(), default_flow_style=False)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = ChronicleConfig()
        self._config_paths: List[Path] = []
        self._initialized = True

    @property
    def config(self) -> ChronicleConfig:
        """Get the current configuration."""
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if data:
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration file must contain a mapping: {path}")
            self._apply_dict(data)
            self._config_paths.append(path)

    def load_defaults(self) -> None:
        """Load the project and user configuration files that exist.

        Later files override earlier ones, so the user file wins.
        """
        default_paths = [
            Path("chronicle.yaml"),
            Path("config/chronicle.yaml"),
            Path.home() / ".chronicle" / "config.yaml",
        ]

        for path in default_paths:
            if path.exists():
                self.load_from_file(path)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {prefix}{key}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{prefix}{key}.")

        apply_to_config(self._config, data, "")

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("envelope.max_wrapped_key_bytes", 512)
        """
        attr = self._resolve(path)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("tags.max_tag_length")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def reset(self) -> None:
        """Drop every runtime override and forget loaded files."""
        self._config = ChronicleConfig()
        self._config_paths = []

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except (TypeError, ValueError, ArithmeticError) as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def get_config() -> ChronicleConfig:
    """Get the current CHRONICLE configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
