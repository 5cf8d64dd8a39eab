"""Agent transcript models consumed by output-field extraction."""

from typing import Any

from pydantic import BaseModel, Field


class ToolState(BaseModel):
    """Execution state of a tool invocation inside a message."""

    status: str | None = None
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None


class MessagePart(BaseModel):
    """One segment of an agent message: text, a tool call, or something else."""

    type: str
    text: str | None = None
    tool: str | None = None
    state: ToolState | None = None


class MessageInfo(BaseModel):
    role: str


class AgentMessage(BaseModel):
    """A single message of an agent session transcript."""

    info: MessageInfo
    parts: list[MessagePart] = Field(default_factory=list)

    @property
    def role(self) -> str:
        return self.info.role
