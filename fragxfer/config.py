"""
Configuration Management

Handles loading configuration from config files and environment variables.

Configuration priority (highest to lowest):
1. Environment variables (FRAGXFER_<SECTION>_<KEY>, FRAGXFER_LOG_LEVEL)
2. Config file (config.json)
3. Default values

The configuration is read once per run and is immutable afterwards.
"""

import json
import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .errors import ConfigError

ENV_PREFIX = 'FRAGXFER_'

LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


def _require(condition: bool, message: str):
    if not condition:
        raise ConfigError(message)


@dataclass(frozen=True)
class StorageConfig:
    """Which storage network the pipeline talks to."""
    backend: str = 'local'  # 'local' or 'tcp'
    data_dir: Path = Path('./fragxfer_data')
    host: str = '127.0.0.1'
    port: int = 8469
    capacity: Optional[int] = None

    def __post_init__(self):
        _require(self.backend in ('local', 'tcp'),
                 f"storage.backend must be 'local' or 'tcp', got {self.backend!r}")
        _require(0 <= self.port <= 65535, f"storage.port out of range: {self.port}")
        _require(self.capacity is None or self.capacity > 0,
                 f"storage.capacity must be positive, got {self.capacity}")


@dataclass(frozen=True)
class FileConfig:
    """Source, output and fragmentation settings."""
    input_file: Path = Path('./test_file.bin')
    output_directory: Path = Path('./output')
    fragment_size: int = 4 * 1024 * 1024  # 4MB
    number_of_parts: int = 10
    generate_test_file: bool = False
    test_file_size: int = 40 * 1024 * 1024
    allow_truncation: bool = False
    spool_to_disk: bool = True

    def __post_init__(self):
        _require(self.fragment_size > 0,
                 f"file.fragment_size must be > 0, got {self.fragment_size}")
        _require(self.number_of_parts > 0,
                 f"file.number_of_parts must be > 0, got {self.number_of_parts}")
        _require(self.test_file_size >= 0,
                 f"file.test_file_size must be >= 0, got {self.test_file_size}")


@dataclass(frozen=True)
class UploadConfig:
    """Upload coordinator settings."""
    expected_replica: int = 1
    method: str = 'min-price'
    full_trusted: bool = False
    finality_mode: str = 'finalized'  # 'packed' or 'finalized'
    max_retries: int = 3
    timeout_minutes: float = 30.0
    attempt_timeout_seconds: Optional[float] = None
    batch_size: int = 5
    batch_cooldown: float = 5.0
    concurrent: bool = False

    def __post_init__(self):
        _require(self.expected_replica >= 1,
                 f"upload.expected_replica must be >= 1, got {self.expected_replica}")
        _require(self.finality_mode in ('packed', 'finalized'),
                 f"upload.finality_mode must be 'packed' or 'finalized', "
                 f"got {self.finality_mode!r}")
        _require(self.max_retries >= 0,
                 f"upload.max_retries must be >= 0, got {self.max_retries}")
        _require(self.timeout_minutes > 0,
                 f"upload.timeout_minutes must be > 0, got {self.timeout_minutes}")
        _require(self.attempt_timeout_seconds is None or self.attempt_timeout_seconds > 0,
                 f"upload.attempt_timeout_seconds must be > 0, "
                 f"got {self.attempt_timeout_seconds}")
        _require(self.batch_size >= 1,
                 f"upload.batch_size must be >= 1, got {self.batch_size}")
        _require(self.batch_cooldown >= 0,
                 f"upload.batch_cooldown must be >= 0, got {self.batch_cooldown}")

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_minutes * 60


@dataclass(frozen=True)
class DownloadConfig:
    """Download coordinator settings."""
    verify_proof: bool = True
    timeout_minutes: float = 30.0
    parallelism: int = 1

    def __post_init__(self):
        _require(self.timeout_minutes > 0,
                 f"download.timeout_minutes must be > 0, got {self.timeout_minutes}")
        _require(self.parallelism >= 1,
                 f"download.parallelism must be >= 1, got {self.parallelism}")

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_minutes * 60


@dataclass(frozen=True)
class NodeConfig:
    """Storage node (`fragxfer serve`) settings."""
    host: str = '0.0.0.0'
    transfer_port: int = 8469
    api_port: int = 8080
    data_dir: Path = Path('./node_data')
    capacity: Optional[int] = None

    def __post_init__(self):
        _require(0 <= self.transfer_port <= 65535,
                 f"node.transfer_port out of range: {self.transfer_port}")
        _require(0 <= self.api_port <= 65535,
                 f"node.api_port out of range: {self.api_port}")


SECTIONS = {
    'storage': StorageConfig,
    'file': FileConfig,
    'upload': UploadConfig,
    'download': DownloadConfig,
    'node': NodeConfig,
}


def _coerce(section: str, f, value: Any) -> Any:
    """Convert a raw file or environment value to the field's type."""
    name = f"{section}.{f.name}"
    if value is None:
        _require(f.default is None, f"{name} may not be null")
        return None

    if f.type in (bool, int, float, str, Path):
        kind = f.type
    else:
        # Optional[int] or Optional[float]
        kind = float if 'float' in str(f.type) else int

    try:
        if kind is bool:
            if isinstance(value, str):
                lowered = value.strip().lower()
                _require(lowered in ('true', 'false', '1', '0', 'yes', 'no'),
                         f"{name}: expected a boolean, got {value!r}")
                return lowered in ('true', '1', 'yes')
            _require(isinstance(value, bool), f"{name}: expected a boolean, got {value!r}")
            return value
        if kind is int:
            _require(not isinstance(value, bool), f"{name}: expected an integer")
            if isinstance(value, float):
                _require(value.is_integer(), f"{name}: expected an integer, got {value}")
            return int(value)
        if kind is float:
            _require(not isinstance(value, bool), f"{name}: expected a number")
            return float(value)
        if kind is Path:
            return Path(value)
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name}: invalid value {value!r}: {e}", cause=e)


def _build_section(name: str, cls, data: Dict[str, Any]):
    _require(isinstance(data, dict), f"Section '{name}' must be an object")
    known = {f.name: f for f in fields(cls)}
    unknown = set(data) - set(known)
    _require(not unknown, f"Unknown keys in '{name}': {', '.join(sorted(unknown))}")

    values = {key: _coerce(name, known[key], value) for key, value in data.items()}
    return cls(**values)


@dataclass(frozen=True)
class Config:
    """Pipeline and storage node configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    file: FileConfig = field(default_factory=FileConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    download: DownloadConfig = field(default_factory=DownloadConfig)
    node: NodeConfig = field(default_factory=NodeConfig)
    log_level: str = 'INFO'

    def __post_init__(self):
        _require(self.log_level.upper() in LOG_LEVELS,
                 f"log_level must be one of {', '.join(LOG_LEVELS)}, got {self.log_level!r}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        """Build a configuration from a parsed config file."""
        _require(isinstance(data, dict), "Configuration must be a JSON object")
        unknown = set(data) - set(SECTIONS) - {'log_level'}
        _require(not unknown, f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        sections = {
            name: _build_section(name, section_cls, data.get(name, {}))
            for name, section_cls in SECTIONS.items()
        }
        return cls(log_level=str(data.get('log_level', 'INFO')).upper(), **sections)

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        return cls.from_dict(_read_file(Path(path)))

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables over the defaults."""
        return cls.from_dict(_env_overrides({}))

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        data = {}
        for name in SECTIONS:
            section = asdict(getattr(self, name))
            data[name] = {
                key: str(value) if isinstance(value, Path) else value
                for key, value in section.items()
            }
        data['log_level'] = self.log_level
        return data

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def _read_file(path: Path) -> Dict[str, Any]:
    try:
        with open(path) as f:
            return json.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}", cause=e)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}", cause=e)


def _env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay FRAGXFER_* environment variables onto raw config data."""
    load_dotenv()

    merged = {name: dict(data.get(name, {})) for name in SECTIONS}
    merged['log_level'] = data.get('log_level', 'INFO')

    for name, section_cls in SECTIONS.items():
        for f in fields(section_cls):
            raw = os.getenv(f"{ENV_PREFIX}{name}_{f.name}".upper())
            if raw is not None:
                merged[name][f.name] = raw

    merged['log_level'] = os.getenv(f"{ENV_PREFIX}LOG_LEVEL", merged['log_level'])
    return merged


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.

    Raises:
        ConfigError: the file is unreadable or a value is invalid
    """
    data: Dict[str, Any] = {}
    if config_path is not None:
        config_path = Path(config_path)
        _require(config_path.exists(), f"Config file not found: {config_path}")
        data = _read_file(config_path)
        _require(isinstance(data, dict), "Configuration must be a JSON object")

    return Config.from_dict(_env_overrides(data))


# Example config file template
EXAMPLE_CONFIG = """
{
  "storage": {
    "backend": "local",
    "data_dir": "./fragxfer_data",
    "host": "127.0.0.1",
    "port": 8469
  },
  "file": {
    "input_file": "./test_file.bin",
    "output_directory": "./output",
    "fragment_size": 4194304,
    "number_of_parts": 10,
    "generate_test_file": true,
    "test_file_size": 41943040,
    "allow_truncation": false,
    "spool_to_disk": true
  },
  "upload": {
    "expected_replica": 1,
    "method": "min-price",
    "full_trusted": false,
    "finality_mode": "finalized",
    "max_retries": 3,
    "timeout_minutes": 30,
    "batch_size": 5,
    "batch_cooldown": 5.0
  },
  "download": {
    "verify_proof": true,
    "timeout_minutes": 30,
    "parallelism": 1
  },
  "node": {
    "host": "0.0.0.0",
    "transfer_port": 8469,
    "api_port": 8080,
    "data_dir": "./node_data"
  },
  "log_level": "INFO"
}
"""
