from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from google import genai
from google.genai import types as genai_types
from openai import OpenAI

import settings
from ai_usage import TokenUsage


@dataclass
class Completion:
    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""


def _split_messages_for_gemini(
    messages: List[Dict[str, str]],
) -> Tuple[Optional[str], List[genai_types.Content]]:
    """
    Chat messages -> (system_instruction, contents) for ``generate_content``.

    Gemini has no "system" or "assistant" turns: system text moves into the
    config and assistant turns become "model" turns. Empty messages are dropped.
    """
    instructions: List[str] = []
    contents: List[genai_types.Content] = []

    for m in messages:
        content = (m.get("content") or "").strip()
        if not content:
            continue
        role = m.get("role", "user")
        if role == "system":
            instructions.append(content)
            continue
        contents.append(
            genai_types.Content(
                role="model" if role == "assistant" else "user",
                parts=[genai_types.Part(text=content)],
            )
        )

    return ("\n\n".join(instructions) or None), contents


def _gemini_text(response) -> str:
    text = getattr(response, "text", None)
    if isinstance(text, str) and text:
        return text

    # Assemble from parts when .text is empty (e.g. multi-part candidates)
    parts = []
    for cand in getattr(response, "candidates", None) or []:
        content = getattr(cand, "content", None)
        if not content:
            continue
        for part in getattr(content, "parts", None) or []:
            t = getattr(part, "text", None)
            if isinstance(t, str):
                parts.append(t)
    return "\n".join(parts)


class LLMClient:
    """
    Chat completion client for one provider.

    Built once per process (see ``main.lifespan``) and handed to request
    handlers through ``Depends(get_llm)``. Nothing is created lazily, so
    concurrent requests never race to initialise it.
    """

    def __init__(self, provider: str, model: str, api_key: Optional[str] = None):
        self.provider = provider.lower()
        self.model = model

        if self.provider == "openai":
            # Falls back to the OPENAI_API_KEY env var the SDK reads itself
            self._client = OpenAI(api_key=api_key) if api_key else OpenAI()
        elif self.provider == "gemini":
            if not api_key:
                raise RuntimeError(
                    "GEMINI_API_KEY (or GOOGLE_API_KEY) is not set, "
                    "but provider='gemini' was requested."
                )
            self._client = genai.Client(api_key=api_key)
        else:
            raise ValueError(f"Unsupported LLM provider: {provider}")

    @classmethod
    def from_settings(cls) -> "LLMClient":
        if settings.LLM_PROVIDER == "gemini":
            return cls("gemini", settings.GEMINI_MODEL, settings.GEMINI_API_KEY)
        return cls(settings.LLM_PROVIDER, settings.LLM_MODEL, settings.OPENAI_API_KEY)

    def close(self) -> None:
        close = getattr(self._client, "close", None)
        if callable(close):
            close()

    def complete(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.7,
        json_mode: bool = False,
    ) -> Completion:
        """Run one chat completion; ``json_mode`` asks the provider for a JSON body."""
        if self.provider == "openai":
            return self._call_openai(messages, temperature, json_mode)
        return self._call_gemini(messages, temperature, json_mode)

    def _call_openai(
        self,
        messages: List[Dict[str, str]],
        temperature: float,
        json_mode: bool,
    ) -> Completion:
        kwargs: Dict[str, object] = {"model": self.model, "messages": messages}
        # gpt-5 models only accept the default temperature
        if not self.model.startswith("gpt-5"):
            kwargs["temperature"] = temperature
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        resp = self._client.chat.completions.create(**kwargs)
        content = resp.choices[0].message.content or ""

        usage = TokenUsage()
        if resp.usage is not None:
            usage = TokenUsage(
                input_tokens=resp.usage.prompt_tokens or 0,
                output_tokens=resp.usage.completion_tokens or 0,
                total_tokens=resp.usage.total_tokens or 0,
            )
        return Completion(text=content, usage=usage, model=self.model)

    def _call_gemini(
        self,
        messages: List[Dict[str, str]],
        temperature: float,
        json_mode: bool,
    ) -> Completion:
        system_instruction, contents = _split_messages_for_gemini(messages)
        config = genai_types.GenerateContentConfig(
            temperature=float(temperature),
            system_instruction=system_instruction,
            response_mime_type="application/json" if json_mode else None,
        )

        response = self._client.models.generate_content(
            model=self.model,
            contents=contents,
            config=config,
        )

        meta = getattr(response, "usage_metadata", None)
        usage = TokenUsage()
        if meta is not None:
            usage = TokenUsage(
                input_tokens=meta.prompt_token_count or 0,
                output_tokens=meta.candidates_token_count or 0,
                total_tokens=meta.total_token_count or 0,
            )
        return Completion(text=_gemini_text(response), usage=usage, model=self.model)
