import logging
from pathlib import Path
from typing import Optional
import yaml
from vproc.config.models import AppConfig

logger = logging.getLogger(__name__)


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Loads YAML config; a missing file gives the defaults."""
    if config_path is None or not config_path.exists():
        logger.debug(f"Config file {config_path} not found, using defaults")
        return AppConfig()

    with open(config_path, "r") as f:
        data = yaml.safe_load(f) or {}

    return AppConfig(**data)
