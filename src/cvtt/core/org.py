"""
Org connection module for ContentVersion Transfer Tool.
Resolves the instance URL and access token used for REST calls.
"""

from dataclasses import dataclass
import json
import logging
import os
import subprocess
from typing import Dict, Optional

from cvtt.core.config import ConfigManager, DEFAULT_API_VERSION
from cvtt.core.errors import OrgConnectionError

logger = logging.getLogger(__name__)

INSTANCE_URL_ENV = "CVTT_INSTANCE_URL"
ACCESS_TOKEN_ENV = "CVTT_ACCESS_TOKEN"


@dataclass(frozen=True)
class OrgConnection:
    """Authenticated REST endpoint of an org"""

    instance_url: str
    access_token: str
    api_version: str = DEFAULT_API_VERSION

    def __post_init__(self):
        # Validate connection information
        if not self.instance_url or not self.access_token:
            raise ValueError("Connection must have both instance URL and access token")

    @property
    def base_url(self) -> str:
        return f"{self.instance_url.rstrip('/')}/services/data/v{self.api_version}"

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def sobject_url(self, sobject: str, *parts: str) -> str:
        """URL of an sObject resource, e.g. ContentVersion/<id>/VersionData"""
        return "/".join([self.base_url, "sobjects", sobject, *parts])

    @property
    def collections_url(self) -> str:
        return f"{self.base_url}/composite/sobjects"


class OrgResolver:
    """Finds connection details for a target org"""

    def __init__(self, config_manager: Optional[ConfigManager] = None):
        self._config_manager = config_manager

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            self._config_manager = ConfigManager()
        return self._config_manager

    def _try_environment(self) -> Optional[dict]:
        """Use credentials exported in the environment if both are set"""
        instance_url = os.environ.get(INSTANCE_URL_ENV)
        access_token = os.environ.get(ACCESS_TOKEN_ENV)
        if instance_url and access_token:
            return {"instanceUrl": instance_url, "accessToken": access_token}
        return None

    def _try_saved_org(self, target_org: Optional[str]) -> Optional[dict]:
        """Use a saved org profile when it carries a token"""
        org = self.config_manager.get_org(target_org)
        if org is None or not org.access_token:
            return None
        return {
            "instanceUrl": org.instance_url,
            "accessToken": org.access_token,
            "apiVersion": org.api_version,
        }

    def _try_sf_cli(self, target_org: Optional[str]) -> Optional[dict]:
        """Ask the Salesforce CLI for a fresh token"""
        command = ["sf", "org", "display", "--json"]
        if target_org:
            command.extend(["--target-org", target_org])
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                check=True
            )
        except FileNotFoundError:
            logger.debug("sf CLI not installed")
            return None
        except subprocess.CalledProcessError as e:
            logger.debug("sf org display failed: %s", (e.stderr or e.stdout or "").strip())
            return None

        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError:
            return None
        info = payload.get("result") or {}
        if not info.get("instanceUrl") or not info.get("accessToken"):
            return None
        return info

    def resolve(self, target_org: Optional[str] = None, api_version: Optional[str] = None) -> OrgConnection:
        """
        Resolve a connection for target_org

        Sources are tried in order: environment variables, saved org profile,
        Salesforce CLI.

        Args:
            target_org: Alias or username; None means the default org
            api_version: Overrides the API version of the resolved org

        Raises:
            OrgConnectionError: If no source yields a usable connection
        """
        saved = self.config_manager.get_org(target_org)
        info = (
            self._try_environment()
            or self._try_saved_org(target_org)
            or self._try_sf_cli(target_org if saved is None else saved.alias)
        )
        if info is None:
            name = target_org or self.config_manager.config.default_org or "default org"
            raise OrgConnectionError(
                f"Could not resolve a connection for {name}. Set {INSTANCE_URL_ENV} and "
                f"{ACCESS_TOKEN_ENV}, save the org with 'cvtt orgs add', or log in with 'sf org login'."
            )

        version = (
            api_version
            or info.get("apiVersion")
            or (saved.api_version if saved else None)
            or DEFAULT_API_VERSION
        )
        connection = OrgConnection(
            instance_url=info["instanceUrl"].rstrip("/"),
            access_token=info["accessToken"],
            api_version=version,
        )
        logger.debug("Resolved org %s (API v%s)", connection.instance_url, connection.api_version)
        return connection
