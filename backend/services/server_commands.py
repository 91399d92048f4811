# services/server_commands.py
# ============================================================================
# MCNATION STORE BACKEND — MINECRAFT SERVER COMMAND CLIENT
# ============================================================================
# Purpose: Execute console commands on the game server's HTTP command API
#          (POST /execute {command} -> {success, message}, X-API-Key header).
#
# Only template-built commands are ever sent. Any value embedded in a command
# string is reduced to [A-Za-z0-9_] first, so buyer-controlled text cannot
# inject extra console syntax.
# ============================================================================

import re
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog
from pydantic import ValidationError

from pipeline.exceptions import CommandExecutionError
from pipeline.settings import Settings
from schemas.payment_definitions import CommandResponse

logger = structlog.get_logger().bind(component="server_commands")

_USERNAME_DISALLOWED = re.compile(r"[^a-zA-Z0-9_]")
_PACKAGE_DISALLOWED = re.compile(r"[^a-zA-Z0-9_ ]")


# ============================================================================
# SECTION 1: SANITIZING + COMMAND TEMPLATES
# ============================================================================

def sanitize_username(username: str) -> str:
    return _USERNAME_DISALLOWED.sub("", username or "")


def sanitize_package_name(package_name: str) -> str:
    """Lower-cased package slug: spaces become underscores, everything else non-word is dropped."""
    cleaned = _PACKAGE_DISALLOWED.sub("", package_name or "").strip()
    return re.sub(r" +", "_", cleaned).lower()


def build_grant_command(username: str, package_name: str) -> str:
    user = sanitize_username(username)
    package = sanitize_package_name(package_name)
    if not user:
        raise CommandExecutionError("Username is empty after sanitizing", {"username": username})
    if not package:
        raise CommandExecutionError("Package name is empty after sanitizing", {"package": package_name})
    return f"givepermission {user} store.package.{package}"


# ============================================================================
# SECTION 2: CONFIGURATION
# ============================================================================

@dataclass
class ServerCommandConfig:
    host: str
    port: int
    api_key: str
    timeout_seconds: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ServerCommandConfig":
        return cls(
            host=settings.mc_server_host,
            port=settings.mc_server_port,
            api_key=settings.mc_server_api_key,
            timeout_seconds=settings.mc_command_timeout,
        )

    @property
    def base_url(self) -> str:
        # A server bound to all interfaces is reached locally
        host = "localhost" if self.host == "0.0.0.0" else self.host
        return f"http://{host}:{self.port}"


# ============================================================================
# SECTION 3: CLIENT
# ============================================================================

class ServerCommandClient:
    """Async client for the game server's command endpoint."""

    def __init__(self, config: ServerCommandConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
            )
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def execute(self, command: str) -> CommandResponse:
        """Run one console command. Raises CommandExecutionError on any failure."""
        client = self._get_client()
        try:
            response = await client.post(
                "/execute",
                json={"command": command},
                headers={"X-API-Key": self.config.api_key},
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.error("server_command_timeout", command=command)
            raise CommandExecutionError("Server command timed out", {"command": command}) from e
        except httpx.HTTPStatusError as e:
            logger.error("server_command_rejected", command=command,
                         status_code=e.response.status_code)
            raise CommandExecutionError(
                f"Failed to execute command: HTTP {e.response.status_code}",
                {"command": command},
            ) from e
        except httpx.HTTPError as e:
            logger.error("server_command_unreachable", command=command, error=str(e))
            raise CommandExecutionError("Server command endpoint unreachable", {"command": command}) from e

        try:
            result = CommandResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error("server_command_bad_response", command=command, error=str(e))
            raise CommandExecutionError("Unexpected response from server command API", {"command": command}) from e

        logger.info("server_command_executed", command=command, success=result.success)
        return result

    async def grant_package(self, username: str, package_name: str) -> CommandResponse:
        command = build_grant_command(username, package_name)
        result = await self.execute(command)
        if not result.success:
            raise CommandExecutionError(
                result.message or "Server refused the grant command",
                {"command": command},
            )
        return result
