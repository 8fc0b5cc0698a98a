from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict
import json
import logging
from pathlib import Path

# Set up logging
logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """App settings from environment (for container config)."""
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    config_dir: str = "/config"
    database_url: str = ""  # SQLite URL; empty = playlists.db in config_dir
    log_level: str = "INFO"


env_settings = Settings()

# Config file location
CONFIG_DIR = Path(env_settings.config_dir)
CONFIG_FILE = CONFIG_DIR / "settings.json"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/115.0.0.0 Safari/537.36"
)


class ImportSettings(BaseModel):
    """User-configurable playlist import and EPG mapping settings."""
    # HTTP defaults (a playlist's own user agent / SSL flag take precedence)
    user_agent: str = DEFAULT_USER_AGENT
    verify_ssl: bool = True
    # Timeouts in seconds
    fetch_timeout: int = 300  # Full playlist / stream list downloads
    metadata_timeout: int = 60  # Category lookups
    user_info_timeout: int = 30  # Xtream account info
    # Maximum number of channels imported per playlist (0 = unlimited)
    max_channels: int = 0
    # Lines longer than this are reported as parse warnings and skipped
    max_line_length: int = 2048
    # Batching
    chunk_size: int = 50  # Entries per work item
    jobs_per_stage: int = 100  # Work items applied per chain stage
    map_chunk_size: int = 50  # Matches per EPG mapping work item
    # EPG auto-match confidence threshold (0-100)
    # Similarity matches below this value are left unmapped
    epg_auto_match_threshold: int = 80
    # Where fetched playlists and uploads live (empty = CONFIG_DIR/storage)
    storage_dir: str = ""
    # How often the background engine looks for playlists due for auto sync
    sync_check_interval: int = 60
    # Auto-sync playlists whose last sync is older than this (hours)
    auto_sync_interval_hours: int = 24
    # How often recurring EPG maps are re-run (seconds)
    epg_map_interval: int = 3600
    # Backend log level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    backend_log_level: str = "INFO"

    def get_storage_dir(self) -> Path:
        return Path(self.storage_dir) if self.storage_dir else CONFIG_DIR / "storage"


# In-memory cache of settings
_cached_settings: ImportSettings | None = None


def ensure_config_dir():
    """Ensure config directory exists."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    logger.info(f"Ensured config directory exists: {CONFIG_DIR}")


def load_settings() -> ImportSettings:
    """Load settings from file or return defaults."""
    global _cached_settings

    if _cached_settings is not None:
        return _cached_settings

    logger.info(f"Loading settings from {CONFIG_FILE}")

    if CONFIG_FILE.exists():
        try:
            data = json.loads(CONFIG_FILE.read_text())
            _cached_settings = ImportSettings(**data)
            logger.info("Loaded settings successfully")
            return _cached_settings
        except Exception as e:
            logger.error(f"Failed to load settings from {CONFIG_FILE}: {e}")

    logger.info("Using default settings (no config file found or failed to parse)")
    _cached_settings = ImportSettings()
    return _cached_settings


def save_settings(settings: ImportSettings) -> None:
    """Save settings to file."""
    global _cached_settings

    ensure_config_dir()

    try:
        settings_json = json.dumps(settings.model_dump(), indent=2)
        CONFIG_FILE.write_text(settings_json)
        _cached_settings = settings
        logger.info(f"Settings saved successfully to {CONFIG_FILE}")
    except Exception as e:
        logger.error(f"Failed to save settings to {CONFIG_FILE}: {e}")
        raise


def clear_settings_cache() -> None:
    """Clear the cached settings (forces reload)."""
    global _cached_settings
    _cached_settings = None
    logger.info("Settings cache cleared")


def get_settings() -> ImportSettings:
    """Get the current import settings."""
    return load_settings()


def log_config_status():
    """Log the current configuration status for debugging."""
    logger.info(f"CONFIG_DIR: {CONFIG_DIR}")
    logger.info(f"CONFIG_FILE: {CONFIG_FILE}")
    logger.info(f"CONFIG_DIR exists: {CONFIG_DIR.exists()}")
    logger.info(f"CONFIG_FILE exists: {CONFIG_FILE.exists()}")


def get_log_level_from_env() -> str:
    """Get log level from environment variable or default to INFO."""
    return env_settings.log_level.upper()


def set_log_level(level: str) -> None:
    """Set the logging level for all loggers dynamically."""
    level_upper = level.upper()

    # Validate log level
    valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if level_upper not in valid_levels:
        logger.warning(f"Invalid log level '{level}', using INFO")
        level_upper = "INFO"

    numeric_level = getattr(logging, level_upper)
    logging.getLogger().setLevel(numeric_level)

    for logger_name in logging.root.manager.loggerDict:
        logging.getLogger(logger_name).setLevel(numeric_level)

    logger.info(f"Log level set to {level_upper}")
