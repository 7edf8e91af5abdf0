"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    """A message from a channel that is not WhatsApp (web widget, tests)."""

    message: str = Field(..., min_length=1, max_length=2000, description="The patient's message")
    phone: str = Field(
        ...,
        min_length=5,
        max_length=32,
        description="Contact phone number; identifies the conversation",
    )
    name: str | None = Field(None, max_length=100, description="Display name, used for new leads")
    tenant_id: str | None = Field(None, max_length=100, description="Clinic id; defaults to the configured tenant")


class ToolCallSummary(BaseModel):
    name: str
    success: bool


class ChatResponse(BaseModel):
    """Response from the agent."""

    reply: str = Field(..., description="The assistant's reply")
    phone: str = Field(..., description="The phone number the conversation belongs to")
    tool_calls: list[ToolCallSummary] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "luxe-dental-agent"
