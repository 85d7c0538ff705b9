from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SystemConfig(BaseSettings):
    version: str = Field(default="1.0")
    base_dir: Path = Field(default_factory=lambda: Path(__file__).parent)
    log_dir: Path = Field(default_factory=lambda: Path(__file__).parent / "logs")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        value = (v or "INFO").upper()
        if value not in valid_levels:
            raise ValueError(f"log_level must be one of: {sorted(valid_levels)}")
        return value


class APIConfig(BaseSettings):
    api_key: str = Field(default="placeholder-key-not-set")
    base_url: str = Field(default="https://api.openai.com/v1")
    model: str = Field(default="gpt-4.1")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2000, ge=1, le=32768)
    max_tool_rounds: int = Field(default=8, ge=1, le=50)
    request_timeout_s: Optional[float] = Field(default=None, ge=1, le=600)

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: str) -> str:
        if v and v != "placeholder-key-not-set":
            v.encode("ascii")
        return v


class TurnConfig(BaseSettings):
    # Ceiling on one turn; tool calls against slow services can take minutes.
    timeout_s: float = Field(default=300.0, gt=0)
    heartbeat_interval_s: float = Field(default=15.0, gt=0)


class ServerConfig(BaseSettings):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3000, ge=1, le=65535)
    cors_origins: List[str] = Field(
        default_factory=lambda: ["http://127.0.0.1:3000", "http://localhost:3000"]
    )
    # Per-client POST budget on /api/chat and /api/sessions; 0 disables.
    rate_limit_requests: int = Field(default=120, ge=0)
    rate_limit_window_s: float = Field(default=60.0, gt=0)


class MCPServerConfig(BaseModel):
    """One local MCP server started over stdio."""
    command: str
    args: List[str] = Field(default_factory=list)
    env: Optional[Dict[str, str]] = None
    # Tool names to expose; "*" exposes everything the server lists.
    tools: List[str] = Field(default_factory=lambda: ["*"])
    timeout_s: float = Field(default=300.0, gt=0)
    enabled: bool = Field(default=True)


class MCPConfig(BaseSettings):
    enabled: bool = Field(default=True)
    servers: Dict[str, MCPServerConfig] = Field(
        default_factory=lambda: {
            "workiq": MCPServerConfig(
                command="npx", args=["-y", "@microsoft/workiq", "mcp"], timeout_s=300.0
            )
        }
    )


PROJECT_CONTEXT_TEMPLATE = (
    'The user is currently working in the project called "{project_name}". '
    "All work-item operations, queries, and discussions should default to this project "
    "unless the user explicitly specifies a different one."
)


class SystemPrompts(BaseSettings):
    project_name: str = Field(default="Parts Unlimited")
    # Replaces the generated project paragraph when set.
    project_context: Optional[str] = Field(default=None)
    system_prompt: str = Field(
        default=(
            "You are Epic Copilot, an AI assistant specialized in helping project managers, "
            "product owners, and delivery managers manage work items on Azure Boards. "
            "You ALWAYS operate within the Azure Boards context. All taxonomy assumptions "
            "(e.g. epics, features, user stories, tasks, bugs, sprints, iterations, areas, backlogs) "
            "MUST be mapped to Azure Boards work item types and categories. "
            "Be concise and action-oriented.\n\n"
            "{project_context}\n\n"
            "Tool routing rules:\n"
            "- For ALL Azure Boards operations (creating, updating, querying, linking, and managing "
            "work items, iterations, sprints, backlogs, areas, and any other Azure Boards category) "
            "ALWAYS use the Azure DevOps CLI (az boards / az devops commands). "
            "Never fall back to other tools for these operations.\n"
            "- For general discussion, chat questions, information retrieval about emails, meetings, "
            "files, calendar, and other Microsoft 365 data, ALWAYS use the Work IQ MCP server.\n\n"
            "When the user asks you to do something, use the appropriate tool to accomplish it."
        )
    )
    console_prompt: str = Field(
        default=(
            "You are Epic Copilot, an AI assistant specialized in helping project managers, "
            "product owners, and delivery managers manage work items on Azure Boards. "
            "You help with creating epics, user stories, tasks, bugs, managing sprints, "
            "querying work items, and generating reports. Be concise and action-oriented. "
            "When the user asks you to do something, use the appropriate tool to accomplish it."
        )
    )

    def gateway_prompt(self) -> str:
        """`system_prompt` with the `{project_context}` placeholder filled in."""
        context = self.project_context or PROJECT_CONTEXT_TEMPLATE.format(
            project_name=self.project_name
        )
        return self.system_prompt.replace("{project_context}", context)


class GatewayConfig(BaseSettings):
    system: SystemConfig = Field(default_factory=SystemConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    turn: TurnConfig = Field(default_factory=TurnConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    mcp: MCPConfig = Field(default_factory=MCPConfig)
    prompts: SystemPrompts = Field(default_factory=SystemPrompts)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )


def _deep_merge(target: dict, source: dict) -> dict:
    for k, v in source.items():
        if isinstance(v, dict) and isinstance(target.get(k), dict):
            _deep_merge(target[k], v)
        else:
            target[k] = v
    return target


def load_config(config_path: Optional[Path] = None) -> GatewayConfig:
    base_from_env = GatewayConfig()
    merged_data = base_from_env.model_dump()

    config_path = config_path or Path("config/default.json")
    if config_path.exists():
        try:
            with config_path.open("r", encoding="utf-8") as f:
                file_data = json.load(f)
            _deep_merge(merged_data, file_data)
        except Exception as e:
            print(f"Warning: failed to load {config_path}: {e}")

    # Sensitive values stay sourced from env/.env.
    merged_data.setdefault("api", {})["api_key"] = base_from_env.api.api_key

    cfg = GatewayConfig(**merged_data)

    if not cfg.api.api_key or cfg.api.api_key == "placeholder-key-not-set":
        print("Warning: API key is not configured")
        print("Set API__API_KEY in .env before running chat")

    return cfg


config = load_config()
AI_NAME = "Epic Copilot"
