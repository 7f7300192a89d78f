"""Pydantic v2 models for codecall.yaml configuration."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from codecall.agent.process import PROTOCOL_FLAGS
from codecall.constants import DEFAULT_WATCHDOG_TIMEOUT


class OrchestratorConfig(BaseModel):
    """Top-level codecall.yaml configuration."""

    model_config = ConfigDict(extra="forbid")

    agent_path: str | None = Field(
        default=None,
        description="Explicit path to the agent CLI (skips discovery)",
    )
    api_key: str | None = Field(
        default=None,
        description="API key passed to the CLI via CURSOR_API_KEY",
    )
    working_directory: str | None = Field(
        default=None,
        description="Directory the agent processes run in (defaults to cwd)",
    )
    watchdog_timeout: float = Field(
        default=DEFAULT_WATCHDOG_TIMEOUT,
        gt=0,
        description="Seconds without any output before an agent is reported stuck",
    )
    summary_instruction: bool = Field(
        default=True,
        description="Ask every new agent to end with a SUMMARY: line",
    )
    extra_args: list[str] = Field(
        default_factory=list,
        description="Additional CLI flags inserted before the prompt",
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Extra environment variables for agent processes",
    )
    require_api_key: bool = Field(
        default=False,
        description="Fail at load time when no API key is available",
    )
    sessions_dir: str = Field(
        default="sessions",
        description="Directory for JSONL session recordings",
    )
    record: bool = Field(
        default=False,
        description="Whether to record sessions",
    )

    @model_validator(mode="after")
    def _validate_extra_args(self) -> OrchestratorConfig:
        clashes = sorted(set(self.extra_args) & set(PROTOCOL_FLAGS))
        if clashes:
            joined = ", ".join(f"'{a}'" for a in clashes)
            msg = f"extra_args must not repeat protocol flags: {joined}"
            raise ValueError(msg)
        if self.require_api_key and not self.api_key:
            msg = (
                "require_api_key is set but no API key was provided "
                "(set api_key or CURSOR_API_KEY)"
            )
            raise ValueError(msg)
        return self
