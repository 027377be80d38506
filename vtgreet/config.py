"""
Greeter configuration.

Read from a JSON file (default /etc/vtgreet/config.json, override with
$VTGREET_CONFIG or --config). A missing file means all defaults.
"""

import json
import logging
import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from vtgreet.errors import ConfigError

log = logging.getLogger("vtgreet.config")

CONFIG_FILE = os.environ.get("VTGREET_CONFIG", "/etc/vtgreet/config.json")


class GreeterConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Account and PAM
    username: str = "user"
    pin_length: int = Field(default=4, ge=1, le=32)
    pam_service: str = "system-auth"

    # X server
    x_server: str = "/usr/bin/X"
    display: str = ":1"
    vt: str = "vt01"
    dpi: int = Field(default=96, gt=0)
    ready_poll_interval: float = Field(default=0.15, gt=0)
    ready_timeout: float = Field(default=5.0, gt=0)

    # UI timings, seconds
    short_flash: float = Field(default=0.5, ge=0)
    long_flash: float = Field(default=2.0, ge=0)
    min_validating: float = Field(default=2.0, ge=0)
    session_start_delay: float = Field(default=1.0, ge=0)

    # Session
    session_script: str = ".xinitrc"
    search_path: str = "/usr/local/sbin:/usr/local/bin:/usr/bin:/bin"
    mail_spool: str = "/var/spool/mail"


def load_config(path: str | Path | None = None) -> GreeterConfig:
    """Load the config file, falling back to defaults if it does not exist."""
    config_path = Path(path or CONFIG_FILE)
    if not config_path.exists():
        log.info(f"No config at {config_path}, using defaults")
        return GreeterConfig()

    try:
        data = json.loads(config_path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not read {config_path}: {e}") from e

    try:
        config = GreeterConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {config_path}: {e}") from e

    log.info(f"Loaded config from {config_path}")
    return config
