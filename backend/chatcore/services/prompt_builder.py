from __future__ import annotations

from typing import Iterable, List

from chatcore.conversation.types import Message

LANGUAGE_RULE = (
    "Reply in the same language as the user's latest message unless they ask "
    "for a different one."
)


class PromptBuilder:
    """Compose the message list sent to the chat model."""

    def __init__(self, max_history: int = 40) -> None:
        self._max_history = max(1, max_history)

    def build_system_prompt(
        self,
        user_system_prompt: str = "",
        tools_block: str = "",
        memory_block: str = "",
    ) -> str:
        """Hard language rule, then the user's prompt, tool instructions and memories."""

        sections = [LANGUAGE_RULE]
        for section in (user_system_prompt, tools_block, memory_block):
            text = (section or "").strip()
            if text:
                sections.append(text)
        return "\n\n".join(sections)

    def history_messages(self, messages: Iterable[Message]) -> List[dict]:
        """Trailing finished history as ``{role, content}`` dicts."""

        rows = [
            {"role": message.role, "content": message.content}
            for message in messages
            if message.content and (message.role == "user" or message.is_done)
        ]
        return rows[-self._max_history :]

    def build_messages(
        self,
        history: Iterable[Message],
        user_system_prompt: str = "",
        tools_block: str = "",
        memory_block: str = "",
    ) -> List[dict]:
        """Create the message list for the chat adapter."""

        system_prompt = self.build_system_prompt(user_system_prompt, tools_block, memory_block)
        return [{"role": "system", "content": system_prompt}, *self.history_messages(history)]
