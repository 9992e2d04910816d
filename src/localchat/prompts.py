"""Prompt builders."""
from __future__ import annotations

from typing import Any, Iterable


DEFAULT_SYSTEM = "You are a helpful assistant."


def build_context(history: Iterable[Any], system_prompt: str | None = DEFAULT_SYSTEM) -> list[dict[str, str]]:
    """Turn transcript messages into role/content dicts for the engine."""
    messages: list[dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for message in history:
        messages.append({"role": str(message.role.value), "content": message.content})
    return messages


def render_prompt(tokenizer: Any, messages: list[dict[str, str]]) -> str:
    if getattr(tokenizer, "chat_template", None) and hasattr(tokenizer, "apply_chat_template"):
        return tokenizer.apply_chat_template(messages, tokenize=False, add_generation_prompt=True)
    lines = []
    for msg in messages:
        role = msg.get("role", "user").capitalize()
        lines.append(f"{role}: {msg.get('content', '')}")
    lines.append("Assistant:")
    return "\n".join(lines)
