"""
Worklist sync configuration using Pydantic.
"""

import logging
import os
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger("mwl_sync.config")

BackendName = Literal["orthanc", "dcm4chee"]


class OrthancConfig(BaseModel):
    """Connection settings for the Orthanc REST API"""
    base_url: str = "http://localhost:8042"
    username: str = "orthanc"
    password: str = "orthanc"
    timeout: float = 10.0
    verify_tls: bool = True


class Dcm4cheeConfig(BaseModel):
    """Connection settings for the dcm4chee-arc worklist REST API"""
    base_url: str
    ae_title: str = "DCM4CHEE"
    calling_aet: str = "RIS_API"
    timeout: float = 10.0
    verify_tls: bool = True


class RisDatabaseConfig(BaseModel):
    """Connection settings for the RIS order database"""
    host: str
    port: int = 3306
    user: str
    password: str = ""
    database: str
    pool_size: int = 5


class WorklistScpConfig(BaseModel):
    """A DICOM worklist SCP used to verify published items via C-FIND"""
    host: str
    port: int
    ae_title: str
    description: str = ""


class SyncSettings(BaseModel):
    """Defaults for sync runs; CLI flags override them per run"""
    target: Literal["orthanc", "dcm4chee", "both"] = "dcm4chee"
    primary: BackendName = "dcm4chee"
    statuses: List[str] = Field(default_factory=lambda: ["IN_REQUEST", "SCHEDULED"])
    limit: int = Field(default=10, ge=1)
    concurrency: int = Field(default=4, ge=1)
    max_retries: int = Field(default=2, ge=0)
    retry_backoff: float = Field(default=0.5, ge=0)
    preferred_ae_title: Optional[str] = None
    allow_default_schedule: bool = False

    @model_validator(mode="after")
    def _primary_in_target(self):
        if self.target != "both" and self.primary != self.target:
            # A single target is always its own primary
            self.primary = self.target
        return self


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file_path: Optional[str] = None


class MwlSyncConfiguration(BaseModel):
    """Complete worklist sync configuration"""
    orthanc: Optional[OrthancConfig] = None
    dcm4chee: Optional[Dcm4cheeConfig] = None
    ris: Optional[RisDatabaseConfig] = None
    worklist_scp: Optional[WorklistScpConfig] = None
    calling_aet: str = "RIS_API"
    sync: SyncSettings = Field(default_factory=SyncSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @model_validator(mode="after")
    def _targets_configured(self):
        targets = ["orthanc", "dcm4chee"] if self.sync.target == "both" else [self.sync.target]
        missing = [name for name in targets if getattr(self, name) is None]
        if missing:
            raise ValueError(f"Sync target requires configuration for: {', '.join(missing)}")
        return self


def load_config(config_path: str) -> MwlSyncConfiguration:
    """Load the sync configuration from a YAML file.

    ``${VAR}`` references are expanded from the environment, after loading a
    ``.env`` file from the configuration directory (or the working directory).

    Args:
        config_path: Path to the configuration file

    Returns:
        Parsed MwlSyncConfiguration object

    Raises:
        FileNotFoundError: If the configuration file doesn't exist
        ValueError: If the configuration is invalid
    """
    config_dir = Path(config_path).parent
    env_file = config_dir / '.env'
    if env_file.exists():
        load_dotenv(env_file)
        logger.debug("Loaded environment variables from %s", env_file)
    elif Path('.env').exists():
        load_dotenv('.env')
        logger.debug("Loaded environment variables from .env")

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file {path} not found")

    with open(path, 'r') as f:
        content = os.path.expandvars(f.read())
        data = yaml.safe_load(content) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Invalid configuration format in {path}")

    try:
        return MwlSyncConfiguration(**data)
    except Exception as e:
        raise ValueError(f"Invalid configuration in {path}: {str(e)}")


def configure_logging(settings: LoggingSettings) -> None:
    """Install the root logging handlers described by ``settings``."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if settings.file_path:
        handlers.append(logging.FileHandler(settings.file_path))
    logging.basicConfig(
        level=getattr(logging, settings.level.upper(), logging.INFO),
        format=settings.format,
        handlers=handlers,
        force=True,
    )
