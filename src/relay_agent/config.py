"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant with access to tools that are executed by a "
    "connected workbook client. Use the tools for every calculation or data "
    "operation instead of guessing results. If a tool reports an error, explain "
    "it briefly and decide whether to retry. When you receive a warning that the "
    "conversation is getting long, call summarize_conversation."
)


class ProviderConfig(BaseModel):
    backend: str = "anthropic"  # "anthropic" | "openai"
    model: str = "claude-haiku-4-5"
    max_tokens: int = 4096
    temperature: float = 0.7
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    summary_model: str = ""  # empty: reuse `model`
    summary_max_tokens: int = 1024
    max_tool_rounds: int = 25


class AnthropicConfig(BaseModel):
    api_key: str
    base_url: Optional[str] = None
    max_retries: int = 3
    timeout: int = 120


class OpenAIConfig(BaseModel):
    api_key: str
    base_url: Optional[str] = None
    max_retries: int = 3
    timeout: int = 120


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 10052
    max_connections: int = 100


class BrokerConfig(BaseModel):
    timeout: float = 10.0  # seconds to wait for an executor response


class LimitsConfig(BaseModel):
    tokens: int = 20480
    messages: int = 150
    tool_executions: int = 100
    age_hours: float = 24.0
    min_messages_for_age: int = 10
    warn_ratio: float = 0.8


class PricingConfig(BaseModel):
    input_per_million: float = 3.0
    output_per_million: float = 15.0


class StorageConfig(BaseModel):
    db_path: str = "./data/relay_agent.db"


class ToolDeclaration(BaseModel):
    """A remote tool executed by connected executors."""

    name: str
    description: str
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    command: str = ""  # executor command name; defaults to `name`


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_json: bool = False
    data_dir: str = "./data"
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    anthropic: Optional[AnthropicConfig] = None
    openai: Optional[OpenAIConfig] = None
    server: ServerConfig = Field(default_factory=ServerConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    pricing: PricingConfig = Field(default_factory=PricingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    builtin_tools: bool = True
    tools: list[ToolDeclaration] = Field(default_factory=list)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        value = os.environ.get(var_name)
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    # data_dir may be referenced as ${data_dir} elsewhere in the file
    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

    interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
    data = yaml.safe_load(interpolated) or {}

    return AppConfig(**data)
