# tests/unit/test_nodes.py
import pytest

from lingoflow.models.flow import NodeContext
from lingoflow.services.llm_service import LLMServiceError, ProviderCredentials
from lingoflow.workflows.nodes import (
    CallConfig,
    CallNode,
    TransformConfig,
    TransformNode,
    TransformOperation,
    ValidationRule,
)
from lingoflow.workflows.templates import TemplateSyntaxError

DIALOG_RULES = [
    ValidationRule(field="situation", required=True, type="string", validator="non-empty"),
    ValidationRule(field="characterA", type="string"),
]
DIALOG_SHAPE = {"situation": "", "characterA": "Character A", "characterB": "Character B"}


def transform(operation, **config):
    return TransformNode("t", "Transform", TransformConfig(operation=operation, **config))


# --- Transform steps ---

@pytest.mark.asyncio
async def test_validate_and_transform_fills_defaults():
    node = transform(TransformOperation.VALIDATE_AND_TRANSFORM, validation_rules=DIALOG_RULES,
                     target_structure=DIALOG_SHAPE)

    result = await node.execute(NodeContext(input={"situation": "At a cafe", "characterB": None, "extra": 1}))

    assert result.success is True
    assert result.output == {"situation": "At a cafe", "characterA": "Character A", "characterB": "Character B"}
    assert result.metadata == {"node_type": "transform", "node_id": "t"}


@pytest.mark.asyncio
@pytest.mark.parametrize("value,error", [
    ("just text", "Input must be an object"),
    ({}, "Field situation is required"),
    ({"situation": 42}, "Field situation must be of type string"),
    ({"situation": "   "}, "Field situation failed validation"),
])
async def test_invalid_input_fails_and_keeps_input(value, error):
    node = transform(TransformOperation.VALIDATE_INPUT, validation_rules=DIALOG_RULES)

    result = await node.execute(NodeContext(input=value))

    assert result.success is False
    assert result.error == error
    assert result.output == value


@pytest.mark.asyncio
async def test_format_summarize_and_organize():
    as_json = await transform(TransformOperation.FORMAT, format="json").execute(NodeContext(input='{"a": 1}'))
    not_json = await transform(TransformOperation.FORMAT, format="json").execute(NodeContext(input="plain"))
    structured = await transform(TransformOperation.FORMAT, format="structured").execute(NodeContext(input="w"))
    summary = await transform(TransformOperation.SUMMARIZE, max_length=5).execute(NodeContext(input="abcdefgh"))
    organized = await transform(TransformOperation.ORGANIZE, format="json").execute(NodeContext(input={"a": 1}))

    assert as_json.output == {"a": 1}
    assert not_json.output == {"text": "plain"}
    assert structured.output == {"content": "w", "structured": False}
    assert summary.output == "abcde..."
    assert organized.output == '{\n  "a": 1\n}'


# --- Call steps ---

def call_node(**config):
    config.setdefault("user_prompt_template", "{{input}}")
    return CallNode("c", "Call", CallConfig(**config))


@pytest.mark.asyncio
async def test_call_streams_fragments_then_result(fake_llm, credentials):
    fake_llm.queue(["Hello", ", ", "world"])

    items = [item async for item in call_node().stream(NodeContext(input="hi"), credentials)]

    assert items[:3] == ["Hello", ", ", "world"]
    result = items[3]
    assert result.success is True
    assert result.output == "Hello, world"
    assert result.metadata["provider"] == "openai"


@pytest.mark.asyncio
async def test_call_parses_json_output(fake_llm, credentials):
    fake_llm.queue(['{"is_valid": ', 'true}'])

    result = await call_node(response_format="json").execute(NodeContext(input="check"), credentials)

    assert result.output == {"is_valid": True}
    request = fake_llm.requests[0]
    assert request.response_format == "json"
    assert request.messages[-1]["content"].endswith("Please respond in JSON format.")


@pytest.mark.asyncio
async def test_request_overrides_come_from_credentials(fake_llm):
    credentials = ProviderCredentials(provider="deepseek", api_key="key-1234", model="deepseek-reasoner",
                                      api_url="https://proxy.example/v1")

    await call_node(provider="openai", model="gpt-4", temperature=0.2).execute(NodeContext(input="x"), credentials)

    request = fake_llm.requests[0]
    assert (request.provider, request.model, request.api_url) == ("deepseek", "deepseek-reasoner",
                                                                  "https://proxy.example/v1")
    assert request.temperature == 0.2


@pytest.mark.asyncio
async def test_missing_key_is_a_step_failure(fake_llm):
    result = await call_node(provider="openai").execute(NodeContext(input="x"))

    assert result.success is False
    assert "API key required for provider 'openai'" in result.error
    assert result.output == "x"
    assert fake_llm.requests == []


@pytest.mark.asyncio
async def test_provider_error_is_redacted(fake_llm):
    secret = "sk-live0123456789abcdefghijklmnop"
    fake_llm.queue(LLMServiceError(f"401 Unauthorized for key {secret}"))

    result = await call_node().execute(NodeContext(input="x"), ProviderCredentials(provider="openai", api_key=secret))

    assert result.success is False
    assert secret not in result.error
    assert "[API_KEY_HIDDEN]" in result.error


def test_bad_template_fails_when_the_node_is_built():
    with pytest.raises(TemplateSyntaxError):
        call_node(user_prompt_template="{{#if x}}never closed")
