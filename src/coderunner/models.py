"""Pydantic models for request, response and terminal event bodies.

Batch results use camelCase on the wire (``executionId``, ``exitCode``,
``errorKind``) to match what existing browser clients send and expect.
Terminal events travel as JSON objects discriminated by ``type``.
"""

from __future__ import annotations

from typing import Annotated, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from .executor.base import ExecutionResult


class ExecuteRequest(BaseModel):
    """Request body for a batch execution."""

    language: str = Field(..., description="Language id, e.g. 'python' or 'java'.")
    code: str = Field(
        ...,
        description="Source code to execute.",
        validation_alias=AliasChoices("code", "sourceCode", "source_code"),
    )
    stdin: Optional[str] = Field(
        default=None,
        description="Standard input to pass to the program.",
        validation_alias=AliasChoices("stdin", "input"),
    )
    timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Wall-clock limit; capped by the server's maximum.",
        validation_alias=AliasChoices("timeout_seconds", "timeoutSeconds", "timeout"),
    )


class ExecuteResponse(BaseModel):
    """Response body for a batch execution."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    execution_id: str
    status: Literal["success", "error"]
    output: str
    exit_code: Optional[int] = None
    error_kind: Optional[str] = None
    simulated: bool = False
    duration_ms: int = 0

    @classmethod
    def from_result(cls, result: ExecutionResult) -> "ExecuteResponse":
        return cls(
            execution_id=result.id,
            status=result.status,
            output=result.output,
            exit_code=result.exit_code,
            error_kind=result.error_kind,
            simulated=result.simulated,
            duration_ms=result.duration_ms,
        )


class LanguageInfo(BaseModel):
    id: str
    image: str
    filename: str
    compiles: bool


class LanguageList(BaseModel):
    languages: List[LanguageInfo] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[str] = None


# ---- terminal events: client -> server ----


class CreateEvent(BaseModel):
    type: Literal["create"] = "create"
    language: str = Field(default="bash", description="Language whose image hosts the shell.")


class InputEvent(BaseModel):
    type: Literal["input"] = "input"
    session_id: str = Field(..., validation_alias=AliasChoices("session_id", "sessionId"))
    data: str


class ResizeEvent(BaseModel):
    type: Literal["resize"] = "resize"
    session_id: str = Field(..., validation_alias=AliasChoices("session_id", "sessionId"))
    cols: int = Field(..., gt=0, le=1000)
    rows: int = Field(..., gt=0, le=1000)


class CloseEvent(BaseModel):
    type: Literal["close"] = "close"
    session_id: str = Field(..., validation_alias=AliasChoices("session_id", "sessionId"))


ClientEvent = Annotated[
    Union[CreateEvent, InputEvent, ResizeEvent, CloseEvent],
    Field(discriminator="type"),
]
SessionEvent = Union[InputEvent, ResizeEvent, CloseEvent]

client_event_adapter: TypeAdapter[ClientEvent] = TypeAdapter(ClientEvent)


# ---- terminal events: server -> client ----


class CreatedEvent(BaseModel):
    type: Literal["created"] = "created"
    session_id: str
    language: str


class OutputEvent(BaseModel):
    type: Literal["output"] = "output"
    session_id: str
    data: str


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    session_id: Optional[str] = None
    message: str
    error_kind: Optional[str] = None


ServerEvent = Union[CreatedEvent, OutputEvent, ErrorEvent]
