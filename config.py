"""Configuration management for the Tactus agent."""

import json
import logging
import os
import random
import string
import time
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = ("en", "zh-CN")


class AuthMode(str, Enum):
    NONE = "none"
    BEARER = "bearer"
    OAUTH = "oauth"


class RemoteProviderConfig(BaseModel):
    """Configuration for a remote (MCP over Streamable HTTP) tool provider."""

    id: str
    display_name: str
    endpoint_url: str
    auth_mode: AuthMode = AuthMode.NONE
    static_token: Optional[str] = None
    extra_headers: Dict[str, str] = Field(default_factory=dict)
    enabled: bool = True
    description: Optional[str] = None

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        # Remote tool names are "remote__{id}__{tool}"; the id must stay splittable.
        if not value or "__" in value:
            raise ValueError("provider id must be non-empty and must not contain '__'")
        return value

    @field_validator("endpoint_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("endpoint_url must be an http(s) URL")
        return value


class ChatProviderConfig(BaseModel):
    """Configuration for the OpenAI-compatible chat completion endpoint."""

    base_url: str
    api_key: str
    model: str
    timeout: float = 120.0


def generate_provider_id() -> str:
    """Generate an id like ``mcp-1718000000000-k3x9qa``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"mcp-{int(time.time() * 1000)}-{suffix}"


class HostConfig(BaseSettings):
    """Main configuration for the agent host."""

    # Chat completion endpoint
    api_base_url: str = Field(default="https://api.openai.com", alias="API_BASE_URL")
    api_key: str = Field(default="", alias="API_KEY")
    model: str = Field(default="gpt-4o-mini", alias="MODEL")
    request_timeout: float = Field(default=120.0, alias="REQUEST_TIMEOUT")

    # Agent loop
    enable_tools: bool = Field(default=True, alias="ENABLE_TOOLS")
    max_iterations: int = Field(default=3, alias="MAX_ITERATIONS")
    language: str = Field(default="en", alias="LANGUAGE")

    # Page content tool
    share_page_content: bool = Field(default=False, alias="SHARE_PAGE_CONTENT")
    page_content_limit: int = Field(default=30000, alias="PAGE_CONTENT_LIMIT")

    # OAuth for remote tool providers
    oauth_redirect_url: str = Field(
        default="http://localhost:8765/callback", alias="OAUTH_REDIRECT_URL"
    )

    # Host configuration
    config_dir: str = Field(default="~/.config/tactus", alias="CONFIG_DIR")
    host_name: str = Field(default="tactus-agent", alias="HOST_NAME")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Remote tool providers, persisted in mcp_servers.json
    remote_providers: List[RemoteProviderConfig] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="", extra="ignore"
    )

    @field_validator("max_iterations")
    @classmethod
    def _check_iterations(cls, value: int) -> int:
        if value < 1:
            raise ValueError("MAX_ITERATIONS must be at least 1")
        return value

    @field_validator("language")
    @classmethod
    def _check_language(cls, value: str) -> str:
        if value not in SUPPORTED_LANGUAGES:
            logger.warning(f"Unsupported language '{value}', falling back to English")
            return "en"
        return value

    @property
    def config_path(self) -> Path:
        return Path(os.path.expanduser(self.config_dir))

    @property
    def remote_providers_file(self) -> Path:
        return self.config_path / "mcp_servers.json"

    @property
    def credentials_file(self) -> Path:
        return self.config_path / "credentials.json"

    @property
    def persistent_config_file(self) -> Path:
        return self.config_path / "config.json"

    def get_chat_provider_config(self) -> ChatProviderConfig:
        """Get chat completion endpoint configuration."""
        if not self.api_key:
            raise ValueError("API_KEY is required")
        return ChatProviderConfig(
            base_url=self.api_base_url,
            api_key=self.api_key,
            model=self.model,
            timeout=self.request_timeout,
        )

    # ------------------------------------------------------------------
    # Remote tool providers
    # ------------------------------------------------------------------

    def load_remote_providers(self):
        """Load remote provider configurations from mcp_servers.json."""
        path = self.remote_providers_file
        if not path.exists():
            return

        try:
            with open(path, "r") as f:
                providers_data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load remote providers configuration: {e}")
            return

        providers = []
        for item in providers_data:
            try:
                providers.append(RemoteProviderConfig.model_validate(item))
            except ValueError as e:
                logger.warning(f"Skipping invalid remote provider entry: {e}")
        self.remote_providers = providers
        logger.debug(f"Loaded {len(providers)} remote providers from {path}")

    def save_remote_providers(self):
        """Save remote provider configurations to mcp_servers.json."""
        self.config_path.mkdir(parents=True, exist_ok=True)
        providers_data = [p.model_dump(mode="json") for p in self.remote_providers]
        with open(self.remote_providers_file, "w") as f:
            json.dump(providers_data, f, indent=2)

    def get_remote_provider(self, provider_id: str) -> Optional[RemoteProviderConfig]:
        for provider in self.remote_providers:
            if provider.id == provider_id:
                return provider
        return None

    def get_enabled_remote_providers(self) -> List[RemoteProviderConfig]:
        return [p for p in self.remote_providers if p.enabled]

    def add_remote_provider(self, provider: RemoteProviderConfig):
        """Add a provider, replacing any existing entry with the same id."""
        for index, existing in enumerate(self.remote_providers):
            if existing.id == provider.id:
                self.remote_providers[index] = provider
                return
        self.remote_providers.append(provider)

    def remove_remote_provider(self, provider_id: str) -> bool:
        before = len(self.remote_providers)
        self.remote_providers = [p for p in self.remote_providers if p.id != provider_id]
        return len(self.remote_providers) != before

    def toggle_remote_provider(self, provider_id: str, enabled: bool) -> bool:
        provider = self.get_remote_provider(provider_id)
        if provider is None:
            return False
        provider.enabled = enabled
        return True

    # ------------------------------------------------------------------
    # Persistent settings
    # ------------------------------------------------------------------

    def save_persistent_config(self):
        """Save the model and language selection to config.json."""
        self.config_path.mkdir(parents=True, exist_ok=True)
        persistent_config = {
            "model": self.model,
            "language": self.language,
            "last_updated": time.time(),
        }
        try:
            with open(self.persistent_config_file, "w") as f:
                json.dump(persistent_config, f, indent=2)
            logger.info(f"Configuration saved to {self.persistent_config_file}")
        except OSError as e:
            logger.warning(f"Could not save persistent configuration: {e}")

    def load_persistent_config(self):
        """Apply config.json, which only fills in values the environment left unset."""
        path = self.persistent_config_file
        if not path.exists():
            return

        try:
            with open(path, "r") as f:
                persistent_config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not load persistent configuration: {e}")
            return

        if "model" in persistent_config and "MODEL" not in os.environ:
            self.model = persistent_config["model"]
        if (
            persistent_config.get("language") in SUPPORTED_LANGUAGES
            and "LANGUAGE" not in os.environ
        ):
            self.language = persistent_config["language"]


def load_config() -> HostConfig:
    """Load configuration from environment variables, .env file, and persistent config."""
    config = HostConfig()
    config.load_remote_providers()
    config.load_persistent_config()
    return config


def create_sample_env():
    """Create a sample .env file."""
    sample_content = """# Chat completion endpoint (OpenAI-compatible)
API_BASE_URL=https://api.openai.com
API_KEY=your_api_key_here
MODEL=gpt-4o-mini
REQUEST_TIMEOUT=120

# Agent loop
ENABLE_TOOLS=true
MAX_ITERATIONS=3
LANGUAGE=en

# Page content tool
SHARE_PAGE_CONTENT=false
PAGE_CONTENT_LIMIT=30000

# OAuth for remote tool providers
OAUTH_REDIRECT_URL=http://localhost:8765/callback

# Host Configuration
CONFIG_DIR=~/.config/tactus
HOST_NAME=tactus-agent
LOG_LEVEL=INFO
"""

    if not os.path.exists(".env"):
        with open(".env", "w") as f:
            f.write(sample_content)
        print("Created sample .env file. Please update with your actual API key.")
    else:
        print(".env file already exists.")
