"""Google Gemini generateContent executor."""

import logging

from app.executors.tool_loop import ModelTurn, ToolCall, ToolLoopExecutor
from app.executors.tools import TOOL_DECLARATIONS

logger = logging.getLogger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"


class GeminiExecutor(ToolLoopExecutor):
    """Executes tasks with Gemini function calling."""

    name = "Gemini"
    api_key_env = "GEMINI_API_KEY"
    instruction_files = ["CLAUDE.md", "ASTRID.md", "GEMINI.md"]
    api_base = GEMINI_API_BASE

    def _start_conversation(self, system_prompt: str, user_prompt: str) -> list[dict]:
        return [{"role": "user", "parts": [{"text": user_prompt}]}]

    def _complete(self, conversation: list[dict], system_prompt: str, model: str) -> dict:
        return self.post_with_retry(
            f"{self.api_base}/{model}:generateContent",
            {
                "systemInstruction": {"parts": [{"text": system_prompt}]},
                "contents": conversation,
                "tools": [{"functionDeclarations": TOOL_DECLARATIONS}],
                "toolConfig": {"functionCallingConfig": {"mode": "AUTO"}},
                "generationConfig": {"maxOutputTokens": 8192, "temperature": 0.2},
            },
            headers={"x-goog-api-key": self.api_key},
        )

    def _parse_turn(self, response: dict) -> ModelTurn | None:
        candidates = response.get("candidates") or []
        if not candidates:
            return None

        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = next((part["text"] for part in parts if part.get("text")), None)
        calls = [
            ToolCall(
                name=part["functionCall"].get("name", ""),
                arguments=part["functionCall"].get("args") or {},
            )
            for part in parts
            if part.get("functionCall")
        ]
        return ModelTurn(
            text=text,
            tool_calls=calls,
            stopped=candidate.get("finishReason") == "STOP",
        )

    def _append_model_turn(self, conversation: list[dict], response: dict) -> None:
        parts = (response["candidates"][0].get("content") or {}).get("parts") or []
        conversation.append({"role": "model", "parts": parts})

    def _append_tool_results(
        self, conversation: list[dict], results: list[tuple[ToolCall, str]]
    ) -> None:
        conversation.append(
            {
                "role": "user",
                "parts": [
                    {"functionResponse": {"name": call.name, "response": {"result": result}}}
                    for call, result in results
                ],
            }
        )

    def _append_user_text(self, conversation: list[dict], text: str) -> None:
        conversation.append({"role": "user", "parts": [{"text": text}]})
