# /lingoflow/workflows/prompts.py

"""
Prompt assembly for call steps.

Language hints are prepended to every system and user prompt so that all
providers answer in the user's language while generating learning content in
the learning language. Everything here is a pure function of the NodeContext.
"""

import json
from typing import Any, Dict, List, Optional

from lingoflow.config.languages import LANGUAGE_NAMES, PHONETIC_FORMATS, DEFAULT_PHONETIC_FORMAT
from lingoflow.models.flow import NodeContext
from lingoflow.workflows.templates import Template

JSON_REMINDER = "Please respond in JSON format."


def language_names(context: Optional[NodeContext]) -> Dict[str, str]:
    user_language = (context.user_language if context else None) or "en"
    learning_language = (context.learning_language if context else None) or "english"
    return {
        "user_language": user_language,
        "learning_language": learning_language,
        "user_language_name": LANGUAGE_NAMES.get(user_language, user_language),
        "learning_language_name": LANGUAGE_NAMES.get(learning_language, learning_language),
    }


def system_language_instruction(context: Optional[NodeContext]) -> str:
    names = language_names(context)
    return (
        "IMPORTANT LANGUAGE RULES:\n"
        f"- You MUST respond in {names['user_language_name']} (user's language: {names['user_language']})\n"
        f"- The learning language is {names['learning_language_name']} ({names['learning_language']})\n"
        f"- All your responses, explanations, and analysis must be in {names['user_language_name']}\n"
        f"- Generated content for learning should be in {names['learning_language_name']}"
    )


def user_language_context(context: Optional[NodeContext]) -> str:
    names = language_names(context)
    return (
        "Language Context:\n"
        f"- User Language: {names['user_language_name']} ({names['user_language']}) - Use this for all responses\n"
        f"- Learning Language: {names['learning_language_name']} ({names['learning_language']}) - "
        "Use this for generated learning content"
    )


def dialog_format_instructions(context: Optional[NodeContext]) -> str:
    names = language_names(context)
    return (
        "CRITICAL FORMAT REQUIREMENTS:\n"
        "Each dialog entry MUST have both fields:\n"
        f"- \"use_text\": Text in {names['user_language_name']} ({names['user_language']}) - what the user understands\n"
        f"- \"learn_text\": Text in {names['learning_language_name']} ({names['learning_language']}) - what the user is learning\n"
        "\n"
        "Example format:\n"
        "{\n"
        "  \"character\": \"CharacterName\",\n"
        f"  \"use_text\": \"text in {names['user_language_name']}\",\n"
        f"  \"learn_text\": \"text in {names['learning_language_name']}\"\n"
        "}"
    )


def dialog_validation_instructions(context: Optional[NodeContext]) -> str:
    names = language_names(context)
    return (
        "Validation Requirements:\n"
        "1. Each dialog entry must have both \"use_text\" and \"learn_text\"\n"
        f"2. \"use_text\" must be in {names['user_language_name']} ({names['user_language']})\n"
        f"3. \"learn_text\" must be in {names['learning_language_name']} ({names['learning_language']})\n"
        "4. Dialog must be natural, relevant, and appropriate for language learning"
    )


def phonetic_format_instruction(context: Optional[NodeContext]) -> str:
    learning_language = (context.learning_language if context else None) or "english"
    return PHONETIC_FORMATS.get(learning_language, DEFAULT_PHONETIC_FORMAT)


def slot_resolver(context: NodeContext):
    """Builds the slot lookup used to render templates against `context`."""
    builtins = {
        "input": lambda: context.input,
        "previousOutput": lambda: context.previous_output,
        "userLanguage": lambda: context.user_language or "en",
        "learningLanguage": lambda: context.learning_language or "english",
        "dialogFormatInstructions": lambda: dialog_format_instructions(context),
        "validationInstructions": lambda: dialog_validation_instructions(context),
        "phoneticFormat": lambda: phonetic_format_instruction(context),
    }

    def resolve(name: str) -> Any:
        if name in builtins:
            return builtins[name]()
        if isinstance(context.input, dict) and name in context.input:
            return context.input[name]
        return context.metadata.get(name)

    return resolve


def prepare_messages(
    context: NodeContext,
    system_prompt: Optional[Template] = None,
    user_prompt: Optional[Template] = None,
    response_format: Optional[str] = None,
) -> List[Dict[str, str]]:
    """
    Builds the chat messages for one call step invocation.

    Args:
        context: The live flow context
        system_prompt: Compiled system prompt, if any
        user_prompt: Compiled user prompt template, if any
        response_format: "json", "text" or "markdown"

    Returns:
        A list of {"role", "content"} messages
    """
    resolve = slot_resolver(context)
    messages: List[Dict[str, str]] = []

    if system_prompt is not None:
        content = f"{system_language_instruction(context)}\n\n{system_prompt.render(resolve)}"
        messages.append({"role": "system", "content": content})

    if user_prompt is not None:
        user_content = f"{user_language_context(context)}\n\n{user_prompt.render(resolve)}"
    elif isinstance(context.input, str):
        user_content = context.input
    else:
        user_content = json.dumps(context.input, indent=2, ensure_ascii=False, default=str)

    # OpenAI-compatible JSON mode rejects prompts that never mention JSON.
    if response_format == "json" and "json" not in user_content.lower():
        user_content += f"\n\n{JSON_REMINDER}"

    messages.append({"role": "user", "content": user_content})
    return messages


def parse_response(text: Any, response_format: Optional[str] = None) -> Any:
    if not isinstance(text, str):
        return text
    if response_format == "json":
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return {"content": text}
    return text
