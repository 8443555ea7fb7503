"""YAML configuration file loading."""

import dataclasses
import logging
from dataclasses import dataclass
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".onionlens"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_DB_PATH = str(DEFAULT_CONFIG_DIR / "onionlens.db")
DEFAULT_DESCRIPTOR_DIR = str(DEFAULT_CONFIG_DIR / "in")


class ConfigError(Exception):
    """Raised when a configuration file is malformed or holds a bad value."""


@dataclass
class OnionlensConfig:
    """Settings shared by ``onionlens update`` and ``onionlens summary``.

    Every field has a default so that ``onionlens summary`` works against
    an existing database without a config file.

    Attributes:
        db_path: Path to the SQLite document store.
        descriptor_dir: Directory of pre-parsed snapshot documents read by
            ``onionlens update``.
        maxmind_city_db: GeoLite2-City database used for relay country codes.
        maxmind_asn_db: GeoLite2-ASN database used for relay AS numbers.
        reverse_dns: Whether to resolve relay host names during updates.
        history_workers: Threads used to update weight histories.
    """

    db_path: str = DEFAULT_DB_PATH
    descriptor_dir: str = DEFAULT_DESCRIPTOR_DIR
    maxmind_city_db: str | None = None
    maxmind_asn_db: str | None = None
    reverse_dns: bool = True
    history_workers: int = 1


def load_config(path: Path | str | None = None) -> OnionlensConfig:
    """Read an ``OnionlensConfig`` from YAML.

    Args:
        path: Config file to read.  Without one, ``~/.onionlens/config.yaml``
            is used when present and built-in defaults otherwise.

    Raises:
        FileNotFoundError: If *path* was given and does not exist.
        ConfigError: For invalid YAML, a non-mapping document or a value of
            the wrong type.
    """
    if path is not None:
        config_file = Path(path).expanduser()
        if not config_file.is_file():
            raise FileNotFoundError(f"Config file not found: {config_file}")
    else:
        config_file = DEFAULT_CONFIG_PATH.expanduser()
        if not config_file.is_file():
            logger.debug("No config file at %s; using defaults", config_file)
            return OnionlensConfig()

    logger.debug("Loading config from %s", config_file)
    try:
        raw = yaml.safe_load(config_file.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_file}: {exc}") from exc

    if raw is None:
        return OnionlensConfig()
    if not isinstance(raw, dict):
        raise ConfigError(
            f"Expected a YAML mapping at the top level in {config_file}, "
            f"got {type(raw).__name__}"
        )
    return _from_mapping(raw, config_file)


# ------------------------------------------------------------------
# Internal helpers
# ------------------------------------------------------------------

_FIELD_NAMES = frozenset(f.name for f in dataclasses.fields(OnionlensConfig))
_PATH_FIELDS = ("db_path", "descriptor_dir", "maxmind_city_db", "maxmind_asn_db")


def _from_mapping(raw: dict, source: Path) -> OnionlensConfig:
    unknown = sorted(str(key) for key in raw if key not in _FIELD_NAMES)
    if unknown:
        logger.warning(
            "Ignoring unknown config keys in %s: %s", source, ", ".join(unknown)
        )
    values = {key: value for key, value in raw.items() if key in _FIELD_NAMES}

    for name in _PATH_FIELDS:
        value = values.get(name)
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"{name} in {source} must be a path, got {value!r}")

    workers = values.get("history_workers", 1)
    # bool is an int subclass; "true" must not count as one worker.
    if isinstance(workers, bool) or not isinstance(workers, int) or workers < 1:
        raise ConfigError(
            f"history_workers in {source} must be a positive integer, got {workers!r}"
        )
    if not isinstance(values.get("reverse_dns", True), bool):
        raise ConfigError(
            f"reverse_dns in {source} must be true or false, "
            f"got {values['reverse_dns']!r}"
        )

    return OnionlensConfig(**values)
