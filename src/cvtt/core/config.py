"""
Configuration management for ContentVersion Transfer Tool.
Handles saved org connections and default transfer settings.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
import json
import logging
import os
from typing import Optional, Dict

from cvtt.core.batch import BatchConfig

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "62.0"

CONFIG_DIR_ENV = "CVTT_CONFIG_DIR"


@dataclass
class OrgConfig:
    """Saved connection details for an org"""
    alias: str
    instance_url: str
    access_token: str = ""  # Left empty to fetch a fresh token from the sf CLI
    api_version: str = DEFAULT_API_VERSION


@dataclass
class TransferDefaults:
    """Default values for transfer options"""
    batch_size_mb: int = BatchConfig.MAX_BATCH_SIZE // (1024 * 1024)
    concurrency: int = BatchConfig.DEFAULT_CONCURRENCY
    timeout: float = BatchConfig.DEFAULT_TIMEOUT

    def validate(self):
        """Check every value is within the supported range"""
        if not BatchConfig.MIN_BATCH_SIZE_MB <= self.batch_size_mb <= BatchConfig.MAX_BATCH_SIZE_MB:
            raise ValueError(
                f"Batch size must be between {BatchConfig.MIN_BATCH_SIZE_MB} "
                f"and {BatchConfig.MAX_BATCH_SIZE_MB} MB"
            )
        if not BatchConfig.MIN_CONCURRENCY <= self.concurrency <= BatchConfig.MAX_CONCURRENCY:
            raise ValueError(
                f"Concurrency must be between {BatchConfig.MIN_CONCURRENCY} "
                f"and {BatchConfig.MAX_CONCURRENCY}"
            )
        if self.timeout <= 0:
            raise ValueError("Timeout must be a positive number of seconds")


@dataclass
class ToolConfig:
    """Everything stored in the config file"""
    orgs: Dict[str, OrgConfig] = field(default_factory=dict)
    default_org: Optional[str] = None
    defaults: TransferDefaults = field(default_factory=TransferDefaults)


class ConfigManager:
    """Manages cvtt configuration"""

    def __init__(self, config_dir: Optional[str] = None):
        """
        Initialize configuration manager

        Args:
            config_dir: Directory holding config.json
                (default: $CVTT_CONFIG_DIR or ~/.config/cvtt)
        """
        if config_dir is None:
            config_dir = os.environ.get(CONFIG_DIR_ENV) or str(Path.home() / ".config" / "cvtt")
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / "config.json"
        self.config = ToolConfig()
        self._load_config()

    def _load_config(self):
        """Load configuration from file"""
        if not self.config_file.exists():
            return

        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to load config %s: %s", self.config_file, e)
            return

        orgs = {}
        for alias, org_data in data.get("orgs", {}).items():
            orgs[alias] = OrgConfig(
                alias=alias,
                instance_url=org_data.get("instance_url", ""),
                access_token=org_data.get("access_token", ""),
                api_version=org_data.get("api_version", DEFAULT_API_VERSION),
            )

        try:
            defaults = TransferDefaults(**data.get("defaults", {}))
            defaults.validate()
        except (TypeError, ValueError) as e:
            logger.warning("Ignoring saved transfer defaults: %s", e)
            defaults = TransferDefaults()

        self.config = ToolConfig(
            orgs=orgs,
            default_org=data.get("default_org"),
            defaults=defaults,
        )

    def _save_config(self):
        """Save configuration to file"""
        data = {
            "orgs": {
                alias: {
                    "instance_url": org.instance_url,
                    "access_token": org.access_token,
                    "api_version": org.api_version,
                }
                for alias, org in self.config.orgs.items()
            },
            "default_org": self.config.default_org,
            "defaults": asdict(self.config.defaults),
        }

        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=4)

    @property
    def defaults(self) -> TransferDefaults:
        return self.config.defaults

    def get_org(self, alias: Optional[str] = None) -> Optional[OrgConfig]:
        """Get a saved org, or the default org when alias is None"""
        alias = alias or self.config.default_org
        if alias is None:
            return None
        return self.config.orgs.get(alias)

    def list_orgs(self) -> list[OrgConfig]:
        return sorted(self.config.orgs.values(), key=lambda o: o.alias)

    def add_org(self, org: OrgConfig):
        """Add or replace a saved org"""
        if not org.instance_url.startswith("https://"):
            raise ValueError(f"Instance URL must start with https:// (got '{org.instance_url}')")
        org.instance_url = org.instance_url.rstrip("/")
        self.config.orgs[org.alias] = org
        if self.config.default_org is None:
            self.config.default_org = org.alias
        self._save_config()

    def remove_org(self, alias: str):
        """Remove a saved org"""
        if alias not in self.config.orgs:
            raise KeyError(alias)
        del self.config.orgs[alias]
        if self.config.default_org == alias:
            self.config.default_org = None
        self._save_config()

    def set_default_org(self, alias: str):
        """Choose the org used when no --target-org is given"""
        if alias not in self.config.orgs:
            raise KeyError(alias)
        self.config.default_org = alias
        self._save_config()

    def update_defaults(self, defaults: TransferDefaults):
        """Persist new default transfer settings"""
        defaults.validate()
        self.config.defaults = defaults
        self._save_config()
