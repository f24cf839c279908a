# /lingoflow/workflows/definitions.py

"""
Predefined flow definitions.

Each factory builds a fresh FlowDefinition; nodes are immutable, but a Flow
may add, remove or replace steps, so flows never share a definition object.

- simulate-dialog:   validate input -> analyze -> generate -> check -> prepare audio
- extend-vocabulary: format -> analyze -> check -> relationships -> check
- chat:              a single free-form text call
"""

from typing import Callable, Dict, Optional

from lingoflow.config.settings import settings
from lingoflow.models.flow import NodeOperation
from lingoflow.workflows.builder import FlowBuilder, FlowDefinition
from lingoflow.workflows.nodes import (
    CallConfig,
    CallNode,
    TransformConfig,
    TransformNode,
    TransformOperation,
    ValidationRule,
)

ASSISTANT = "You are a language learning assistant."

DIALOG_GENERATION_PROMPT = """{{#if previousDialog}}Here is the existing dialog:
{{previousDialog}}

Extend it according to this request: {{extensionRequest}}
{{else}}Based on the analysis: {{input}}
{{/if}}
{{dialogFormatInstructions}}

Generate a natural dialog conversation. The output MUST be in JSON format with:
- "characters": ["characterAName", "characterBName"]
- "dialog": [
    {
      "character": "characterAName",
      "use_text": "...",
      "learn_text": "..."
    },
    ...
  ]

Make the dialog natural, relevant to the situation, and appropriate for language learning."""

DIALOG_CHECK_PROMPT = """Validate this generated dialog.

Generated Dialog:
{{input}}

{{validationInstructions}}

Check if the dialog is:
1. Valid (properly formatted with characters and dialog array)
2. Relevant to the original scenario
3. Appropriate for language learning
4. Natural and coherent

Return JSON with:
- "is_valid": true/false
- "reasons": ["reason1", "reason2", ...] if not valid
- "dialog": the dialog that was checked"""


def _call(node_id: str, name: str, system_prompt: str, user_prompt: str, description: str,
          response_format: str = "json") -> CallNode:
    return CallNode(
        node_id,
        name,
        CallConfig(
            system_prompt=f"{ASSISTANT} {system_prompt}",
            user_prompt_template=user_prompt,
            response_format=response_format,
        ),
        description=description,
    )


def simulate_dialog_flow(continue_on_failure: bool = False) -> FlowDefinition:
    validate_input = TransformNode(
        "validate-and-transform-dialog-input",
        "Validate and Transform Dialog Input",
        TransformConfig(
            operation=TransformOperation.VALIDATE_AND_TRANSFORM,
            validation_rules=[
                ValidationRule(field="situation", required=True, type="string", validator="non-empty"),
                ValidationRule(field="characterA", type="string"),
                ValidationRule(field="characterB", type="string"),
            ],
            target_structure={
                "situation": "",
                "characterA": "Character A",
                "characterB": "Character B",
                "notes": "",
            },
        ),
    )

    return (
        FlowBuilder("simulate-dialog", "Simulate Dialog")
        .describe("Generate and validate dialog scenarios")
        .add_node(validate_input)
        .add_node(_call(
            "dialog-analysis",
            "Dialog Analysis",
            "Analyze dialog scenarios and extract key information.",
            "Analyze this dialog scenario: {{input}}\n\nProvide analysis in JSON format with: "
            "number_of_characters, situation_description, and target_language.",
            "Analyze dialog scenario to understand characters and situation",
        ))
        .add_node(_call(
            "dialog-generation",
            "Dialog Generation",
            "Generate natural dialog conversations based on the scenario and analysis.",
            DIALOG_GENERATION_PROMPT,
            "Generate dialog conversation with both user and learning language",
        ))
        .add_node(_call(
            "dialog-check",
            "Dialog Check",
            "Validate dialog content for correctness, relevance, and quality.",
            DIALOG_CHECK_PROMPT,
            "Validate generated dialog correctness and relevance",
        ))
        .add_node(_call(
            "dialog-audio",
            "Dialog Audio",
            "Prepare dialog content for audio generation.",
            "Prepare this dialog for audio generation: {{input}}",
            "Prepare dialog for audio generation",
        ))
        .add_validation("dialog-check", "output-is-valid", max_retries=settings.default_max_retries,
                        retry_target_node_id="dialog-generation")
        .add_operations(
            "dialog-check",
            NodeOperation(action="confirm", label="Continue"),
            NodeOperation(
                action="extend",
                label="Extend dialog",
                target_node_id="dialog-generation",
                source_node_id="dialog-generation",
                reference_node_ids=["dialog-analysis"],
                handler="extend-dialog",
            ),
        )
        .continue_on_failure(continue_on_failure)
        .build()
    )


def extend_vocabulary_flow(continue_on_failure: bool = False) -> FlowDefinition:
    return (
        FlowBuilder("extend-vocabulary", "Extend Vocabulary")
        .describe("Analyze and extend vocabulary with relationships")
        .add_node(TransformNode(
            "format-vocab-input",
            "Format Vocabulary Input",
            TransformConfig(operation=TransformOperation.FORMAT, format="structured"),
        ))
        .add_node(_call(
            "extension-analysis",
            "Extension Analysis",
            "Analyze vocabulary extension requests.",
            "Analyze this vocabulary extension request: {{input}}\n\nDetermine: vocabulary category "
            "(family, work, shopping, daily, etc.), number of words needed, and target language. "
            "Return JSON with \"category\", \"count\" and \"words\" "
            "(each with \"word\", \"translation\" and \"phonetic\" in {{phoneticFormat}}).",
            "Analyze vocabulary extension requirements",
        ))
        .add_node(_call(
            "extension-check",
            "Extension Check",
            "Validate vocabulary lists for correctness.",
            "Check if these vocabularies are correct and related to the analysis: {{input}}\n\n"
            "Return JSON with \"is_valid\" (true/false), \"reasons\" and the checked \"words\".",
            "Validate vocabulary correctness",
        ))
        .add_node(_call(
            "extension-relationship-analysis",
            "Extension Relationship Analysis",
            "Analyze relationships between vocabulary words.",
            "Define relationships for these words (collocations, synonyms, related words, antonyms, etc.): {{input}}",
            "Analyze vocabulary relationships",
        ))
        .add_node(_call(
            "extension-relationship-check",
            "Extension Relationship Check",
            "Validate vocabulary relationships.",
            "Check if these relationships are correct: {{input}}",
            "Validate vocabulary relationships",
        ))
        .add_validation(
            "extension-check", "output-is-valid", max_retries=settings.default_max_retries,
            retry_target_node_id="extension-analysis",
        )
        .continue_on_failure(continue_on_failure)
        .build()
    )


def chat_flow(continue_on_failure: bool = False) -> FlowDefinition:
    return (
        FlowBuilder("chat", "Chat")
        .describe("Free-form conversation with the assistant")
        .add_node(_call(
            "chat-response",
            "Chat Response",
            "Answer the user's questions about the language they are learning.",
            "{{input}}",
            "Answer a chat message",
            response_format="text",
        ))
        .continue_on_failure(continue_on_failure)
        .build()
    )


FLOWS: Dict[str, Callable[..., FlowDefinition]] = {
    "simulate-dialog": simulate_dialog_flow,
    "extend-vocabulary": extend_vocabulary_flow,
    "chat": chat_flow,
}


def get_flow_definition(flow_id: str, continue_on_failure: Optional[bool] = None) -> Optional[FlowDefinition]:
    factory = FLOWS.get(flow_id)
    if factory is None:
        return None
    return factory(continue_on_failure=bool(continue_on_failure))
