from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import openai
from langchain_core.messages import BaseMessage
from langchain_openai import ChatOpenAI

from hvac_owl.config import get_settings

logger = logging.getLogger(__name__)


class CompletionError(RuntimeError):
    """Raised when the completion API call fails."""

    transient = False


class CompletionRateLimitError(CompletionError):
    """The completion API rejected the call because of rate limiting."""

    transient = True


class CompletionConnectionError(CompletionError):
    """The completion API could not be reached or timed out."""

    transient = True


class CompletionRequestError(CompletionError):
    """The completion API refused the request (bad input, auth, quota)."""


def extract_json(text: str) -> str:
    """Return the first balanced JSON object or array found in ``text``.

    Markdown fences are stripped. If nothing balanced is found the stripped
    text is returned unchanged so callers can still attempt ``json.loads``.
    """
    t = (text or "").strip()

    # Remove markdown fences if present
    if t.startswith("```"):
        lines = t.splitlines()
        # drop first fence line
        if lines:
            lines = lines[1:]
        # drop last fence line if present
        if lines and lines[-1].strip().startswith("```"):
            lines = lines[:-1]
        t = "\n".join(lines).strip()

    def first_balanced(s: str, open_ch: str, close_ch: str) -> Optional[str]:
        start = s.find(open_ch)
        if start == -1:
            return None
        depth = 0
        in_str = False
        esc = False
        for i in range(start, len(s)):
            ch = s[i]
            if in_str:
                if esc:
                    esc = False
                elif ch == "\\":
                    esc = True
                elif ch == '"':
                    in_str = False
            else:
                if ch == '"':
                    in_str = True
                elif ch == open_ch:
                    depth += 1
                elif ch == close_ch:
                    depth -= 1
                    if depth == 0:
                        return s[start : i + 1]
        return None

    # Whichever bracket opens first wins, so an array of objects stays whole.
    candidates = []
    for open_ch, close_ch in (("{", "}"), ("[", "]")):
        found = first_balanced(t, open_ch, close_ch)
        if found is not None:
            candidates.append((t.find(open_ch), found))
    if candidates:
        candidates.sort(key=lambda c: c[0])
        return candidates[0][1].strip()
    return t


def load_json(text: str) -> Any:
    """Parse JSON out of model text. Raises ``ValueError`` when impossible."""
    cleaned = extract_json(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ValueError(f"Model did not return valid JSON: {e}. Raw: {text[:500]}") from e


class CompletionClient:
    """Thin async wrapper over ``ChatOpenAI`` that returns raw text."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout_s: Optional[float] = None,
        max_retries: int = 0,
    ):
        """Initialize the client.

        Args:
            api_key: OpenAI API key. Defaults to config value.
            timeout_s: Per-call timeout in seconds. Defaults to config value.
            max_retries: SDK-level retries. Rate limits surface to the caller by default.
        """
        settings = get_settings()
        self.api_key = api_key or settings.openai_api_key
        self.timeout_s = timeout_s or settings.completion_timeout_s
        self.max_retries = max_retries
        self._models: Dict[Tuple[str, Optional[int], Optional[float]], ChatOpenAI] = {}

    def _chat_model(
        self, model: str, max_tokens: Optional[int], temperature: Optional[float]
    ) -> ChatOpenAI:
        key = (model, max_tokens, temperature)
        if key not in self._models:
            if not self.api_key:
                raise CompletionRequestError("Missing OPENAI_API_KEY environment variable.")
            kwargs: Dict[str, Any] = {
                "model": model,
                "openai_api_key": self.api_key,
                "timeout": self.timeout_s,
                "max_retries": self.max_retries,
            }
            if max_tokens is not None:
                kwargs["max_tokens"] = max_tokens
            # Reasoning models reject temperature, so it is only sent when set.
            if temperature is not None:
                kwargs["temperature"] = temperature
            self._models[key] = ChatOpenAI(**kwargs)
        return self._models[key]

    async def complete(
        self,
        messages: Sequence[BaseMessage],
        *,
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Send ``messages`` to ``model`` and return the reply text.

        Raises:
            CompletionRateLimitError: The API rate limited the call.
            CompletionConnectionError: Network failure or timeout.
            CompletionRequestError: The API rejected the request.
        """
        llm = self._chat_model(model, max_tokens, temperature)
        logger.info(f"Calling completion model {model} with {len(messages)} messages")

        try:
            response = await llm.ainvoke(list(messages))
        except openai.RateLimitError as e:
            raise CompletionRateLimitError(f"Completion API rate limited: {e}") from e
        except openai.APIConnectionError as e:
            # Also covers APITimeoutError
            raise CompletionConnectionError(f"Completion API unreachable: {e}") from e
        except openai.APIStatusError as e:
            raise CompletionRequestError(
                f"Completion API error {e.status_code}: {e.message}"
            ) from e

        return content_to_text(response.content)


def content_to_text(content: Any) -> str:
    """Flatten a LangChain message content (str or list of parts) into text."""
    if isinstance(content, str):
        return content
    parts: List[str] = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("text"):
            parts.append(part["text"])
    return "\n".join(parts)
