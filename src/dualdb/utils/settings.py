import os
import json
import codecs
import logging
from pathlib import Path
from typing import Dict, Any, Optional

from dualdb.db.connection import Descriptor, EmbeddedDescriptor, NetworkDescriptor
from dualdb.errors import DatabaseConnectionError, ErrorKind

logger = logging.getLogger(__name__)

SETTINGS_FILE = "settings.json"
PROFILES_FILE = "profiles.json"

DEFAULT_SETTINGS: Dict[str, Any] = {
    "statement_timeout": 30,
    "introspection_timeout": 5,
    "row_limit": 1000,
    "context_max_tables": 50,
    "context_max_chars": 12000,
    "log_level": "INFO",
}


def get_home() -> Path:
    """Directory holding settings, profiles and logs: $DUALDB_HOME or ~/.dualdb."""
    home = os.environ.get("DUALDB_HOME")
    return Path(home) if home else Path(os.path.expanduser("~")) / ".dualdb"


def _read_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _write_json(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def load_settings() -> Dict[str, Any]:
    """Load settings.json merged over the defaults.

    Values that cannot be cast to the default's type are replaced by the default;
    a missing or unreadable file yields the defaults.
    """
    data = _read_json(get_home() / SETTINGS_FILE)
    settings = dict(DEFAULT_SETTINGS)
    for key, default in DEFAULT_SETTINGS.items():
        if key not in data:
            continue
        try:
            settings[key] = type(default)(data[key])
        except (TypeError, ValueError):
            logger.warning("Invalid value for setting %s: %r", key, data[key])
    return settings


def save_settings(settings: Dict[str, Any]) -> None:
    """Write the known settings keys to settings.json. Raises on write failures."""
    data = {key: settings.get(key, default) for key, default in DEFAULT_SETTINGS.items()}
    _write_json(get_home() / SETTINGS_FILE, data)


def load_profiles() -> Dict[str, Dict[str, Any]]:
    """Saved connection profiles by name, with passwords decoded."""
    profiles: Dict[str, Dict[str, Any]] = {}
    for name, cfg in _read_json(get_home() / PROFILES_FILE).items():
        if not isinstance(cfg, dict):
            continue
        cfg = dict(cfg)
        if isinstance(cfg.get("password"), str):
            cfg["password"] = codecs.decode(cfg["password"], "rot_13")
        profiles[name] = cfg
    return profiles


def _store_profiles(profiles: Dict[str, Dict[str, Any]]) -> None:
    # passwords are rot13-obfuscated on disk
    to_write: Dict[str, Any] = {}
    for name, cfg in profiles.items():
        cfg_copy = dict(cfg)
        if isinstance(cfg_copy.get("password"), str):
            cfg_copy["password"] = codecs.encode(cfg_copy["password"], "rot_13")
        to_write[name] = cfg_copy
    _write_json(get_home() / PROFILES_FILE, to_write)


def save_profile(name: str, profile: Dict[str, Any]) -> None:
    profiles = load_profiles()
    profiles[name] = dict(profile)
    _store_profiles(profiles)
    logger.info("Saved connection profile %s (%s)", name, profile.get("type", "postgresql"))


def remove_profile(name: str) -> bool:
    profiles = load_profiles()
    if name not in profiles:
        return False
    del profiles[name]
    _store_profiles(profiles)
    logger.info("Removed connection profile %s", name)
    return True


def profile_descriptor(profile: Dict[str, Any]) -> Descriptor:
    """Build a connection descriptor from a saved profile.

    ``type`` is ``sqlite`` (with ``path``) or ``postgresql`` (the default).
    """
    kind = str(profile.get("type") or "postgresql").lower()
    if kind in ("sqlite", "sqlite3"):
        return EmbeddedDescriptor(path=profile.get("path") or None)
    if kind not in ("postgresql", "postgres"):
        raise DatabaseConnectionError(f"Unsupported profile type: {kind!r}", kind=ErrorKind.MALFORMED)
    port: Optional[Any] = profile.get("port") or 5432
    return NetworkDescriptor(
        host=profile.get("host") or "",
        port=port,
        database=profile.get("database") or "",
        user=profile.get("user") or None,
        password=profile.get("password") or None,
        ssl_mode=profile.get("ssl_mode") or "prefer",
        schema=profile.get("schema") or None,
        connect_timeout=int(profile.get("connect_timeout") or 10),
    )
