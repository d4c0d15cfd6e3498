"""
Configuration management for the crawler.

Settings are assembled in three layers: built-in defaults, then an optional
YAML file, then keyword overrides. The merged result is validated once and
frozen into a :class:`Config` value.
"""

import copy
import logging
import os
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 13_5_2) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Safari/605.1.15"
)

DEFAULT_BROWSER_ARGS = [
    "--headless",
    "--enable-automation",
    "--disable-gpu",
    "--no-sandbox",
    "--start-maximized",
    "--disable-infobars",
    "--disk-cache-size=400000000",
    "--disable-browser-side-navigation",
    "--disable-blink-features",
    "--window-size=1080,1920",
    "--disable-popup-blocking",
    "--disable-dev-shm-usage",
]

SUPPORTED_BROWSERS = ["chrome"]
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

logger = logging.getLogger(__name__)


class ConfigValidationError(ValueError):
    """Raised when a configuration value fails validation."""
    pass


@dataclass(frozen=True)
class RobotsConfig:
    """Configuration for robots.txt handling."""
    check: bool
    snapshot_every: int
    workers: int
    user_agent: str
    timeout: float


@dataclass(frozen=True)
class SessionConfig:
    """Configuration for the fetch sessions used by workers."""
    use_browser: bool
    host: str
    port: int
    browser: str
    user_agent: str
    headers: Dict[str, str]
    args: Tuple[str, ...]
    prefs: Dict[str, Any]
    exclude_switches: Tuple[str, ...]
    snapshot_every: int
    workers: int
    timeout: float
    max_content_bytes: int


@dataclass(frozen=True)
class LoggingConfig:
    """Configuration for logging."""
    level: str
    file: Optional[str]
    format: str
    json: bool


@dataclass(frozen=True)
class MonitoringConfig:
    """Configuration for monitoring."""
    metrics_enabled: bool
    prometheus_port: int
    report_interval: float


@dataclass(frozen=True)
class Config:
    """Main configuration value."""
    project: str
    base_dir: str
    urls: Tuple[str, ...]
    robots: RobotsConfig
    session: SessionConfig
    logging: LoggingConfig
    monitoring: MonitoringConfig

    @property
    def project_dir(self) -> Path:
        return Path(self.base_dir) / self.project

    @property
    def db_file(self) -> Path:
        return self.project_dir / "results.sqlite"

    @property
    def snapshot_dir(self) -> Path:
        return self.project_dir / "snapshots"

    @property
    def progress_dir(self) -> Path:
        return self.project_dir / "progress"

    @property
    def stop_file(self) -> Path:
        return self.project_dir / f"{self.project}.stop"

    @property
    def log_file(self) -> Path:
        if self.logging.file:
            return Path(self.logging.file)
        return self.project_dir / "logs" / "crawler.log"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to plain Python types, e.g. for YAML export."""
        return _plain(asdict(self))


def default_settings() -> Dict[str, Any]:
    """Return the built-in default settings as a nested dictionary."""
    return {
        'project': 'my-project',
        'base_dir': os.getcwd(),
        'urls': [],
        'robots': {
            'check': True,
            'snapshot_every': 10,
            'workers': 1,
            'user_agent': DEFAULT_USER_AGENT,
            'timeout': 10.0,
        },
        'session': {
            'use_browser': False,
            'host': 'localhost',
            'port': 4444,
            'browser': 'chrome',
            'user_agent': DEFAULT_USER_AGENT,
            'headers': {},
            'args': list(DEFAULT_BROWSER_ARGS),
            'prefs': {'profile.default_content_settings.popups': 0},
            'exclude_switches': ['disable-popup-blocking'],
            'snapshot_every': 10,
            'workers': 1,
            'timeout': 60.0,
            'max_content_bytes': 10 * 1024 * 1024,
        },
        'logging': {
            'level': 'INFO',
            'file': None,
            'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            'json': False,
        },
        'monitoring': {
            'metrics_enabled': False,
            'prometheus_port': 8000,
            'report_interval': 30.0,
        },
    }


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    if isinstance(value, Path):
        return str(value)
    return value


def merge_settings(base: Dict[str, Any], update: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``update`` into a copy of ``base``.

    Nested mappings are merged key by key; any other value replaces the
    existing one.
    """
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = merge_settings(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


# --- field validators -------------------------------------------------------

def _req_string(value: Any, name: str, allowed: Optional[List[str]] = None,
                null_allowed: bool = False) -> Optional[str]:
    if value is None and null_allowed:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigValidationError(f"'{name}' must be a non-empty string.")
    if allowed is not None and value not in allowed:
        options = ", ".join(repr(a) for a in allowed)
        raise ConfigValidationError(f"'{name}' must be one of {options}.")
    return value


def _req_bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigValidationError(f"'{name}' must be true/false.")
    return value


def _req_int(value: Any, name: str, min_val: Optional[int] = None,
             max_val: Optional[int] = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigValidationError(f"'{name}' must be an integer.")
    if min_val is not None and value < min_val:
        raise ConfigValidationError(f"'{name}' must be >= {min_val}.")
    if max_val is not None and value > max_val:
        raise ConfigValidationError(f"'{name}' must be <= {max_val}.")
    return value


def _req_number(value: Any, name: str, min_val: float = 0.0, strict: bool = False) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigValidationError(f"'{name}' must be a number.")
    if value < min_val or (strict and value == min_val):
        op = ">" if strict else ">="
        raise ConfigValidationError(f"'{name}' must be {op} {min_val}.")
    return float(value)


def _req_str_list(value: Any, name: str) -> Tuple[str, ...]:
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise ConfigValidationError(f"'{name}' must be a list of strings.")
    return tuple(value)


def _req_mapping(value: Any, name: str) -> Dict[str, Any]:
    if not isinstance(value, Mapping):
        raise ConfigValidationError(f"'{name}' must be a mapping.")
    if not all(isinstance(k, str) and k for k in value):
        raise ConfigValidationError(f"'{name}' must only have non-empty string keys.")
    return dict(value)


def _req_dir(value: Any, name: str) -> str:
    _req_string(value, name)
    if not Path(value).is_dir():
        raise ConfigValidationError(f"'{name}' ('{value}') is not an existing directory.")
    return str(value)


def _check_keys(section: Mapping[str, Any], name: str, known: Mapping[str, Any]):
    unknown = sorted(set(section) - set(known))
    if unknown:
        raise ConfigValidationError(
            f"{', '.join(repr(k) for k in unknown)} is not a valid parameter for '{name}'."
        )


def _build_robots(data: Mapping[str, Any]) -> RobotsConfig:
    return RobotsConfig(
        check=_req_bool(data['check'], 'robots.check'),
        snapshot_every=_req_int(data['snapshot_every'], 'robots.snapshot_every', min_val=1),
        workers=_req_int(data['workers'], 'robots.workers', min_val=1),
        user_agent=_req_string(data['user_agent'], 'robots.user_agent'),
        timeout=_req_number(data['timeout'], 'robots.timeout', strict=True),
    )


def _build_session(data: Mapping[str, Any]) -> SessionConfig:
    user_agent = _req_string(data['user_agent'], 'session.user_agent')

    headers = _req_mapping(data['headers'], 'session.headers')
    if not all(isinstance(v, str) for v in headers.values()):
        raise ConfigValidationError("'session.headers' values must be strings.")
    if not any(k.lower() == 'user-agent' for k in headers):
        headers['User-Agent'] = user_agent

    args = _req_str_list(data['args'], 'session.args')
    if not any(a.startswith('--user-agent=') for a in args):
        args = args + (f"--user-agent={user_agent}",)

    return SessionConfig(
        use_browser=_req_bool(data['use_browser'], 'session.use_browser'),
        host=_req_string(data['host'], 'session.host'),
        port=_req_int(data['port'], 'session.port', min_val=1, max_val=65535),
        browser=_req_string(data['browser'], 'session.browser', allowed=SUPPORTED_BROWSERS),
        user_agent=user_agent,
        headers=headers,
        args=args,
        prefs=_req_mapping(data['prefs'], 'session.prefs'),
        exclude_switches=_req_str_list(data['exclude_switches'], 'session.exclude_switches'),
        snapshot_every=_req_int(data['snapshot_every'], 'session.snapshot_every', min_val=1),
        workers=_req_int(data['workers'], 'session.workers', min_val=1),
        timeout=_req_number(data['timeout'], 'session.timeout', strict=True),
        max_content_bytes=_req_int(data['max_content_bytes'], 'session.max_content_bytes', min_val=1),
    )


def _build_logging(data: Mapping[str, Any]) -> LoggingConfig:
    level = data['level'].upper() if isinstance(data['level'], str) else data['level']
    return LoggingConfig(
        level=_req_string(level, 'logging.level', allowed=LOG_LEVELS),
        file=_req_string(data['file'], 'logging.file', null_allowed=True),
        format=_req_string(data['format'], 'logging.format'),
        json=_req_bool(data['json'], 'logging.json'),
    )


def _build_monitoring(data: Mapping[str, Any]) -> MonitoringConfig:
    return MonitoringConfig(
        metrics_enabled=_req_bool(data['metrics_enabled'], 'monitoring.metrics_enabled'),
        prometheus_port=_req_int(data['prometheus_port'], 'monitoring.prometheus_port',
                                 min_val=1, max_val=65535),
        report_interval=_req_number(data['report_interval'], 'monitoring.report_interval'),
    )


_SECTION_BUILDERS = {
    'robots': _build_robots,
    'session': _build_session,
    'logging': _build_logging,
    'monitoring': _build_monitoring,
}


def build_config(settings: Mapping[str, Any]) -> Config:
    """Validate merged settings and freeze them into a :class:`Config`."""
    defaults = default_settings()
    _check_keys(settings, 'config', defaults)

    sections = {}
    for name, builder in _SECTION_BUILDERS.items():
        section = settings.get(name, defaults[name])
        _req_mapping(section, name)
        _check_keys(section, name, defaults[name])
        sections[name] = builder(merge_settings(defaults[name], section))

    project = _req_string(settings.get('project', defaults['project']), 'project')
    if os.sep in project or project in ('.', '..'):
        raise ConfigValidationError("'project' must be a plain directory name.")

    return Config(
        project=project,
        base_dir=_req_dir(settings.get('base_dir', defaults['base_dir']), 'base_dir'),
        urls=_req_str_list(settings.get('urls', defaults['urls']), 'urls'),
        **sections,
    )


def load_config(config_file: Optional[str] = None, **overrides: Any) -> Config:
    """
    Load configuration: defaults < YAML file < keyword overrides.

    Args:
        config_file: Optional path to a YAML configuration file
        **overrides: Top-level keys to apply last; nested sections are merged

    Returns:
        Validated, immutable Config

    Raises:
        FileNotFoundError: If ``config_file`` is given but does not exist
        ConfigValidationError: If any value is invalid
    """
    settings = default_settings()

    if config_file is not None:
        path = Path(config_file)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")
        with open(path, 'r', encoding='utf-8') as file:
            file_settings = yaml.safe_load(file) or {}
        if not isinstance(file_settings, Mapping):
            raise ConfigValidationError(f"Configuration file {path} must contain a mapping.")
        settings = merge_settings(settings, file_settings)

    settings = merge_settings(settings, overrides)
    config = build_config(settings)
    logger.debug("Configuration validation passed")
    return config


def write_config(config: Config, filename: str):
    """Export the effective configuration to a YAML file."""
    with open(filename, 'w', encoding='utf-8') as file:
        yaml.safe_dump(config.to_dict(), file, sort_keys=False)
