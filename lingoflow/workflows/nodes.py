# /lingoflow/workflows/nodes.py

"""
Flow steps ("nodes").

Two kinds share one contract, ``await node.execute(context) -> NodeResult``:

- TransformNode: synchronous shaping/validation of ``context.input``, no I/O
- CallNode: one outbound text-generation request built from a compiled prompt

``execute`` never raises. A failure is a NodeResult with ``success=False``,
``error`` set and ``output`` still holding the input the node received, so a
caller that ignores the flag never works on a missing value. Both kinds are
safe to re-invoke with the same context; retries and extend operations rely
on that.
"""

import json
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from lingoflow.config.settings import settings
from lingoflow.models.flow import NodeContext, NodeKind, NodeResult
from lingoflow.services.llm_service import LLMRequest, ProviderCredentials, llm_service
from lingoflow.utils.security import redact_secrets
from lingoflow.workflows.errors import CredentialError
from lingoflow.workflows.prompts import parse_response, prepare_messages
from lingoflow.workflows.registry import HandlerRegistry, registry as default_registry
from lingoflow.workflows.templates import Template, compile_template

logger = logging.getLogger(__name__)


class BaseNode(ABC):
    kind: NodeKind

    def __init__(self, id: str, name: str, description: Optional[str] = None):
        self._id = id
        self._name = name
        self._description = description

    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> Optional[str]:
        return self._description

    @abstractmethod
    async def execute(self, context: NodeContext, credentials: Optional[ProviderCredentials] = None) -> NodeResult:
        ...

    def _failure(self, context: NodeContext, error: str, **metadata: Any) -> NodeResult:
        return NodeResult(
            success=False,
            output=context.input,
            error=error,
            metadata={"node_type": self.kind.value, "node_id": self.id, **metadata},
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id!r}>"


# ==================== TRANSFORM ====================

class TransformOperation(str, Enum):
    FORMAT = "format"
    SUMMARIZE = "summarize"
    ORGANIZE = "organize"
    TRANSFORM_MESSAGE = "transform-message"
    VALIDATE_INPUT = "validate-input"
    VALIDATE_AND_TRANSFORM = "validate-and-transform"


class ValidationRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    required: bool = False
    type: Optional[str] = Field(default=None, pattern="^(string|number|array|object)$")
    validator: Optional[str] = None


class TransformConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    operation: TransformOperation
    max_length: int = 1000
    format: Optional[str] = Field(default=None, pattern="^(json|markdown|text|structured)$")
    target_structure: Optional[Dict[str, Any]] = None
    validation_rules: List[ValidationRule] = Field(default_factory=list)


class InputValidationError(ValueError):
    pass


def _check_type(value: Any, expected: str) -> bool:
    if expected == "string":
        return isinstance(value, str)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "array":
        return isinstance(value, list)
    if expected == "object":
        return isinstance(value, dict)
    return True


class TransformNode(BaseNode):
    kind = NodeKind.TRANSFORM

    def __init__(
        self,
        id: str,
        name: str,
        config: TransformConfig,
        description: Optional[str] = None,
        handlers: Optional[HandlerRegistry] = None,
    ):
        super().__init__(id, name, description)
        self._config = config
        self._handlers = handlers

    @property
    def config(self) -> TransformConfig:
        return self._config

    async def execute(self, context: NodeContext, credentials: Optional[ProviderCredentials] = None) -> NodeResult:
        try:
            output = self.apply(context.input)
        except InputValidationError as e:
            return self._failure(context, str(e))
        except Exception as e:
            logger.warning(f"Transform node '{self.id}' failed: {e}")
            return self._failure(context, str(e) or type(e).__name__)
        return NodeResult(success=True, output=output, metadata={"node_type": self.kind.value, "node_id": self.id})

    def apply(self, value: Any) -> Any:
        operation = self._config.operation
        if operation == TransformOperation.FORMAT:
            return self._format(value)
        if operation == TransformOperation.SUMMARIZE:
            return self._summarize(value)
        if operation == TransformOperation.ORGANIZE:
            return self._organize(value)
        if operation == TransformOperation.TRANSFORM_MESSAGE:
            return self._transform(value)
        if operation == TransformOperation.VALIDATE_INPUT:
            self._validate(value)
            return value
        if operation == TransformOperation.VALIDATE_AND_TRANSFORM:
            self._validate(value)
            return self._transform(value)
        return value

    def _format(self, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        fmt = self._config.format
        if fmt == "json":
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return {"text": value}
        if fmt == "text":
            return value.strip()
        if fmt == "structured":
            return {"content": value, "structured": False}
        return value

    def _summarize(self, value: Any) -> Any:
        if not isinstance(value, str) or len(value) <= self._config.max_length:
            return value
        return value[: self._config.max_length] + "..."

    def _organize(self, value: Any) -> Any:
        if self._config.format == "json" and isinstance(value, (dict, list)):
            return json.dumps(value, indent=2, ensure_ascii=False)
        return value

    def _transform(self, value: Any) -> Any:
        target = self._config.target_structure
        if not target or not isinstance(value, dict):
            return value
        return {key: value.get(key) if value.get(key) is not None else default for key, default in target.items()}

    def _validate(self, value: Any):
        if not isinstance(value, dict):
            raise InputValidationError("Input must be an object")

        for rule in self._config.validation_rules:
            field_value = value.get(rule.field)
            if rule.required and field_value is None:
                raise InputValidationError(f"Field {rule.field} is required")
            if field_value is None:
                continue
            if rule.type and not _check_type(field_value, rule.type):
                raise InputValidationError(f"Field {rule.field} must be of type {rule.type}")
            if rule.validator:
                check = (self._handlers or default_registry).get_field_validator(rule.validator)
                if not check(field_value):
                    raise InputValidationError(f"Field {rule.field} failed validation")


# ==================== CALL ====================

class CallConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: Optional[str] = None
    model: Optional[str] = None
    api_url: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    system_prompt: Optional[str] = None
    user_prompt_template: Optional[str] = None
    response_format: str = Field(default="text", pattern="^(json|text|markdown)$")


class CallNode(BaseNode):
    kind = NodeKind.CALL

    def __init__(self, id: str, name: str, config: CallConfig, description: Optional[str] = None):
        super().__init__(id, name, description)
        self._config = config
        # Compile once; a bad template fails at definition time, not mid-flow.
        self._system_prompt: Optional[Template] = (
            compile_template(config.system_prompt) if config.system_prompt else None
        )
        self._user_prompt: Optional[Template] = (
            compile_template(config.user_prompt_template) if config.user_prompt_template else None
        )

    @property
    def config(self) -> CallConfig:
        return self._config

    def build_request(self, context: NodeContext, credentials: Optional[ProviderCredentials] = None) -> LLMRequest:
        """Resolves provider settings and renders the prompt for one invocation."""
        credentials = credentials or ProviderCredentials()
        provider = credentials.provider or self._config.provider or settings.default_provider
        api_key = credentials.api_key or settings.provider_api_key(provider)
        if not api_key and provider != "custom":
            raise CredentialError(f"API key required for provider '{provider}' but none was provided")

        return LLMRequest(
            provider=provider,
            api_key=api_key,
            api_url=credentials.api_url or self._config.api_url,
            model=credentials.model or self._config.model,
            messages=prepare_messages(
                context, self._system_prompt, self._user_prompt, self._config.response_format
            ),
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
            response_format=self._config.response_format,
        )

    async def stream(
        self, context: NodeContext, credentials: Optional[ProviderCredentials] = None
    ) -> AsyncIterator[Union[str, NodeResult]]:
        """
        Yields each text fragment as the provider emits it, then exactly one
        NodeResult carrying the assembled (and, for JSON, parsed) output.
        """
        secret = credentials.api_key if credentials else None
        try:
            request = self.build_request(context, credentials)
            secret = request.api_key
            parts: List[str] = []
            async for fragment in llm_service.stream_chat(request):
                parts.append(fragment)
                yield fragment
        except Exception as e:
            yield self._failure(context, redact_secrets(str(e), [secret]) or "Unknown error")
            return

        yield NodeResult(
            success=True,
            output=parse_response("".join(parts), self._config.response_format),
            metadata={
                "node_type": self.kind.value,
                "node_id": self.id,
                "provider": request.provider,
                "model": request.model,
            },
        )

    async def execute(self, context: NodeContext, credentials: Optional[ProviderCredentials] = None) -> NodeResult:
        result: Optional[NodeResult] = None
        async for item in self.stream(context, credentials):
            if isinstance(item, NodeResult):
                result = item
        return result
