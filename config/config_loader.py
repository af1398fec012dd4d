import os
import re
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'

# ${NAME} or ${NAME:-fallback}
_ENV_PATTERN = re.compile(r'^\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*))?\}$')


class ConfigError(RuntimeError):
    pass


def _wrap(value: Any) -> Any:
    return SectionProxy(value) if isinstance(value, dict) else value


def expand_env(node: Any) -> Any:
    """Substitute ``${NAME}`` placeholders throughout a parsed YAML tree.

    Unset or empty variables fall back to the ``:-`` default, or None.
    """
    if isinstance(node, dict):
        return {key: expand_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [expand_env(item) for item in node]
    if not isinstance(node, str):
        return node
    match = _ENV_PATTERN.match(node.strip())
    if match is None:
        return node
    name, fallback = match.groups()
    return os.getenv(name) or fallback or None


class SectionProxy(Mapping):
    """Read-only view over one YAML section with attribute access."""

    def __init__(self, data: Optional[Dict[str, Any]]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_') or self._data.get(name) is None:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(self._data[name])

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        value = self._data.get(key)
        return default if value is None else _wrap(value)

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config:
    """YAML settings with environment overrides.

    The file is taken from ``config_path``, else ``$HUNTER_CONFIG``, else the
    bundled ``config.yaml``.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path or os.getenv('HUNTER_CONFIG') or DEFAULT_CONFIG_PATH)
        self._data = self._read()

    def _read(self) -> Dict[str, Any]:
        try:
            text = self.config_path.read_text()
        except FileNotFoundError as exc:
            raise ConfigError(f"Configuration file not found at {self.config_path}") from exc
        try:
            document = yaml.safe_load(text) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Error parsing YAML configuration: {exc}") from exc
        if not isinstance(document, dict):
            raise ConfigError(f"Configuration root in {self.config_path} must be a mapping")
        return expand_env(document)

    def reload(self) -> None:
        self._data = self._read()

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def section(self, key: str) -> SectionProxy:
        """Return a section, empty when missing, so callers can chain .get()."""
        value = self._data.get(key)
        return SectionProxy(value if isinstance(value, dict) else None)

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_') or name not in self._data:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(self._data[name])


config = Config()
