# /lingoflow/models/api.py

from pydantic import BaseModel, Field
from typing import Any, Dict, Literal, Optional
from datetime import datetime, timezone

# This file contains Pydantic models that define the structure of data for
# API requests and responses, ensuring type safety and validation.


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str


class AIConfig(BaseModel):
    provider: Optional[str] = Field(default=None, pattern="^(deepseek|openai|anthropic|custom)$")
    api_key: Optional[str] = Field(default=None, repr=False)
    api_url: Optional[str] = None
    model: Optional[str] = None


class ContextOverrides(BaseModel):
    user_language: Optional[str] = None
    learning_language: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class FlowExecutionRequest(BaseModel):
    flow_id: str = Field(..., min_length=1)
    input: Any = None
    context: ContextOverrides = Field(default_factory=ContextOverrides)
    session_id: Optional[str] = None
    start_index: Optional[int] = Field(default=None, ge=0)
    partial_state: Optional[Dict[str, Any]] = None
    continue_on_failure: bool = False
    ai_config: Optional[AIConfig] = None


class FlowControlRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    action: Literal["pause", "resume", "confirm", "reject", "retry", "skip", "extend", "restart"]
    user_text: Optional[str] = Field(default=None, max_length=4000)
    operation: Optional[str] = None
