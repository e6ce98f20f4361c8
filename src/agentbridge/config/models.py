"""Pydantic v2 models for agentbridge.yaml configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator

from agentbridge.models import ApprovalDecision, Backend


class CodexSettings(BaseModel):
    """Settings for the Codex app-server backend."""

    model_config = ConfigDict(extra="forbid")

    binary_path: str | None = Field(
        default=None,
        description="Explicit path to the codex binary (highest precedence)",
    )
    model: str | None = Field(
        default=None,
        description="Model passed to thread/start (server default when unset)",
    )
    approval_policy: str = Field(
        default="on-request",
        description="Approval policy passed to thread/start",
    )
    sandbox: str = Field(
        default="workspaceWrite",
        description="Sandbox mode passed to thread/start",
    )
    initialize_timeout: float = Field(default=60.0, gt=0)
    request_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Seconds to wait for a response to thread/turn requests",
    )
    turn_timeout: float = Field(
        default=900.0,
        gt=0,
        description="Seconds to wait for turn/completed after turn/start",
    )
    unknown_request_decision: ApprovalDecision = Field(
        default=ApprovalDecision.APPROVED,
        description=(
            "Decision sent for server requests of unrecognised kinds. "
            "'approved' keeps the agent from stalling; 'denied' favours safety."
        ),
    )
    unattended_command_decision: ApprovalDecision = Field(
        default=ApprovalDecision.DENIED,
        description="Decision sent for command approvals when no handler is attached",
    )


class TraeSettings(BaseModel):
    """Settings for the Trae agent backend (tool server + CLI fallback)."""

    model_config = ConfigDict(extra="forbid")

    agent_dir: str | None = Field(
        default=None,
        description="Root of the trae-agent checkout (holds .venv, config, server)",
    )
    cli_path: str | None = Field(default=None, description="Explicit trae-cli path")
    python_path: str | None = Field(
        default=None,
        description="Interpreter that runs the tool server (default: agent venv)",
    )
    server_script: str | None = Field(
        default=None,
        description="Tool server entry point (default: <agent_dir>/mcp_server.py)",
    )
    config_file: str | None = Field(
        default=None,
        description="trae-cli config file (default: <agent_dir>/trae_config.yaml)",
    )
    trajectory_dir: str | None = Field(
        default=None,
        description="Where trace files are written (default: <agent_dir>/trajectories)",
    )
    use_tool_server: bool = Field(default=True)
    run_tool: str = Field(default="run_trae_agent")
    info_tool: str = Field(default="get_trae_config")
    status_tool: str = Field(default="get_session_status")
    start_tool: str = Field(default="start_session")
    observation_tool: str = Field(default="submit_observation")
    connect_timeout: float = Field(default=60.0, gt=0)
    call_timeout: float = Field(default=900.0, gt=0)
    inactivity_timeout: float = Field(default=300.0, gt=0)
    overall_timeout: float = Field(default=900.0, gt=0)
    trust_trace_success: bool = Field(
        default=False,
        description="Let a trace marked successful override a non-zero exit code",
    )

    @model_validator(mode="after")
    def _validate_timeouts(self) -> TraeSettings:
        if self.inactivity_timeout > self.overall_timeout:
            msg = (
                f"inactivity_timeout ({self.inactivity_timeout}) must not exceed "
                f"overall_timeout ({self.overall_timeout})"
            )
            raise ValueError(msg)
        return self

    @property
    def root(self) -> Path:
        return Path(self.agent_dir) if self.agent_dir else Path.cwd()

    @property
    def resolved_config_file(self) -> Path:
        return Path(self.config_file) if self.config_file else self.root / "trae_config.yaml"

    @property
    def resolved_server_script(self) -> Path:
        if self.server_script:
            return Path(self.server_script)
        return self.root / "mcp_server.py"

    @property
    def resolved_trajectory_dir(self) -> Path:
        if self.trajectory_dir:
            return Path(self.trajectory_dir)
        return self.root / "trajectories"


class BridgeConfig(BaseModel):
    """Top-level agentbridge.yaml configuration."""

    model_config = ConfigDict(extra="forbid")

    backend: Backend = Field(default=Backend.CODEX, description="Preferred backend")
    fallback: bool = Field(
        default=True,
        description="Try the other backend when the preferred one is unavailable",
    )
    workspace_root: str | None = Field(
        default=None,
        description="Directory the long-lived Codex process is started in",
    )
    record: bool = Field(default=False, description="Record events to JSONL")
    sessions_dir: str = Field(default="sessions")
    codex: CodexSettings = Field(default_factory=CodexSettings)
    trae: TraeSettings = Field(default_factory=TraeSettings)

    @property
    def backend_order(self) -> list[Backend]:
        if self.fallback:
            return [self.backend, self.backend.other]
        return [self.backend]
