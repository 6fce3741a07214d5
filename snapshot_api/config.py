import copy
import os

import yaml
from sqlmodel import Session, select

from .logger import get_logger
from .models import BackupSchedule
from .schedules import create_schedule

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"

DEFAULT_CONFIG = {
    "database_url": "sqlite:///data/snapshot_api.db",
    "source_database_url": None,
    "storage": {
        "type": "local",
        "local": {"base_path": "data"},
    },
    "encryption": {
        "key": None,
        "key_var": "BACKUP_ENCRYPTION_KEY",
        "key_id": None,
    },
    "notifications": {
        "recipients": [],
        "from_address": "backups@localhost",
        "smtp": {
            "host": None,
            "port": 587,
            "username": None,
            "password": None,
            "password_var": "SMTP_PASSWORD",
            "use_tls": True,
        },
    },
    "scheduler": {
        "poll_interval_seconds": 60,
        "cleanup_interval_hours": 24,
        "stats_window": 10,
    },
    "default_schedule": {
        "name": "Daily Backup (3 AM Eastern)",
        "description": "Automated daily backup at 3:00 AM Eastern Time with AES-256-GCM encryption",
        "cron_expression": "0 3 * * *",
        "timezone": "America/New_York",
        "retention_days": 30,
    },
    "global": {},
    "schedules": [],
}

SCHEDULE_DEFAULT_KEYS = {"timezone", "retention_days", "encryption_enabled"}


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _resolve_secrets(config: dict) -> dict:
    encryption = config["encryption"]
    key_var = encryption.get("key_var")
    if not encryption.get("key") and key_var:
        encryption["key"] = os.getenv(key_var)

    smtp = config["notifications"]["smtp"]
    password_var = smtp.get("password_var")
    if not smtp.get("password") and password_var:
        smtp["password"] = os.getenv(password_var)

    if not config.get("source_database_url"):
        config["source_database_url"] = config["database_url"]
    return config


def load_config(config_path: str = None) -> dict:
    config_path = config_path or os.getenv("SNAPSHOT_API_CONFIG", DEFAULT_CONFIG_PATH)

    yaml_config = {}
    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            try:
                yaml_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                logger.error(f"Error parsing {config_path}: {e}")
                yaml_config = {}
    else:
        logger.info(f"No {config_path} found, using default configuration.")

    config = _deep_merge(DEFAULT_CONFIG, yaml_config)
    env_database_url = os.getenv("DATABASE_URL")
    if env_database_url:
        config["database_url"] = env_database_url
    return _resolve_secrets(config)


def load_and_sync_schedules(session: Session, config_data: dict):
    """
    Creates the schedules declared in the configuration file that are not
    stored yet. Stored schedules are never overwritten from the file.
    """
    if not config_data:
        logger.info("No config data provided, skipping predefined schedules.")
        return 0

    global_config = config_data.get("global") or {}
    schedule_configs = config_data.get("schedules") or []
    logger.debug(f"Found {len(schedule_configs)} schedule configurations.")
    if not schedule_configs:
        return 0

    names = [conf.get("name") for conf in schedule_configs if conf.get("name")]
    if len(names) > len(set(names)):
        seen = set()
        duplicates = {x for x in names if x in seen or seen.add(x)}
        error_msg = f"Duplicate schedule names found in configuration: {sorted(duplicates)}. Halting sync process."
        logger.error(error_msg)
        raise ValueError(error_msg)

    created = 0
    try:
        for conf in schedule_configs:
            conf = dict(conf)
            for key, value in global_config.items():
                if key in SCHEDULE_DEFAULT_KEYS and key not in conf:
                    logger.debug(f"Applying global default '{key}={value}' to schedule config.")
                    conf[key] = value

            name = conf.get("name")
            if not name:
                logger.warning("Skipping a schedule configuration because it is missing the required 'name' field.")
                continue

            existing = session.exec(select(BackupSchedule).where(BackupSchedule.name == name)).first()
            if existing:
                logger.debug(f"Schedule '{name}' already exists, leaving it untouched.")
                continue

            try:
                create_schedule(session, conf, commit=False)
            except ValueError as e:
                logger.warning(f"Skipping schedule '{name}': {e}")
                continue
            logger.info(f"Creating schedule '{name}' from configuration.")
            created += 1

        session.commit()
    except Exception as e:
        logger.error(f"An unexpected error occurred during schedule sync: {e}")
        session.rollback()
        raise

    logger.info(f"Synced schedules from configuration, {created} created.")
    return created
