"""OpenAI Chat Completions executor."""

import json
import logging

from app.executors.tool_loop import ModelTurn, ToolCall, ToolLoopExecutor
from app.executors.tools import TOOL_DECLARATIONS

logger = logging.getLogger(__name__)

OPENAI_API_URL = "https://api.openai.com/v1/chat/completions"

OPENAI_TOOLS = [{"type": "function", "function": tool} for tool in TOOL_DECLARATIONS]


class OpenAIExecutor(ToolLoopExecutor):
    """Executes tasks with OpenAI function calling."""

    name = "OpenAI"
    api_key_env = "OPENAI_API_KEY"
    instruction_files = ["CLAUDE.md", "ASTRID.md", "CODEX.md"]
    api_url = OPENAI_API_URL

    def _start_conversation(self, system_prompt: str, user_prompt: str) -> list[dict]:
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

    def _complete(self, conversation: list[dict], system_prompt: str, model: str) -> dict:
        return self.post_with_retry(
            self.api_url,
            {
                "model": model,
                "messages": conversation,
                "tools": OPENAI_TOOLS,
                "tool_choice": "auto",
                "max_tokens": 8192,
                "temperature": 0.2,
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

    def _parse_turn(self, response: dict) -> ModelTurn | None:
        choices = response.get("choices") or []
        if not choices:
            return None

        choice = choices[0]
        message = choice.get("message") or {}
        calls = []
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            try:
                arguments = json.loads(function.get("arguments") or "{}")
            except json.JSONDecodeError:
                logger.warning(f"Unparseable arguments for tool {function.get('name')}")
                arguments = {}
            calls.append(
                ToolCall(name=function.get("name", ""), arguments=arguments, id=call.get("id"))
            )

        return ModelTurn(
            text=message.get("content"),
            tool_calls=calls,
            stopped=choice.get("finish_reason") == "stop",
        )

    def _append_model_turn(self, conversation: list[dict], response: dict) -> None:
        message = response["choices"][0]["message"]
        conversation.append(
            {key: value for key, value in message.items() if value is not None}
        )

    def _append_tool_results(
        self, conversation: list[dict], results: list[tuple[ToolCall, str]]
    ) -> None:
        for call, result in results:
            conversation.append(
                {"role": "tool", "tool_call_id": call.id, "content": result}
            )

    def _append_user_text(self, conversation: list[dict], text: str) -> None:
        conversation.append({"role": "user", "content": text})
