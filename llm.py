import asyncio
import logging
from typing import Any, Dict, Optional

import httpx
from azure.ai.inference import ChatCompletionsClient
from azure.ai.inference.models import SystemMessage, UserMessage
from azure.core.credentials import AzureKeyCredential
from azure.core.exceptions import AzureError

from config import GEMINI_PROVIDER, GITHUB_PROVIDER, Settings
from errors import AIProviderError, ConfigurationError

logger = logging.getLogger(__name__)


def extract_gemini_text(payload: Any) -> str:
    """Text at candidates[0].content.parts[0].text, or "" when the path is absent."""
    try:
        text = payload["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return ""
    return text if isinstance(text, str) else ""


# --------- Gemini ---------
class GeminiAgent:
    def __init__(self, api_key: str, model: str = "gemini-2.5-flash",
                 base_url: str = "https://generativelanguage.googleapis.com/v1beta",
                 timeout: float = 60.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        if not api_key:
            raise ConfigurationError("GEMINI_API_KEY is not set in environment variables")
        self.api_key = api_key
        self.model_name = model
        self.url = f"{base_url.rstrip('/')}/models/{model}:generateContent"
        self.timeout = timeout
        self._transport = transport

    def build_body(self, system_prompt: str, user_prompt: str) -> Dict[str, Any]:
        prompt = "\n".join(part for part in (system_prompt, user_prompt) if part)
        return {"contents": [{"parts": [{"text": prompt}]}]}

    async def chat_completion(self, system_prompt: str, user_prompt: str) -> str:
        body = self.build_body(system_prompt, user_prompt)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, params={"key": self.api_key}, json=body)
        except httpx.HTTPError as exc:
            logger.warning("Gemini request failed: %s", exc)
            raise AIProviderError(f"Gemini API request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise AIProviderError(f"Gemini API error: {response.status_code} {response.text}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise AIProviderError("Gemini API returned a non-JSON body") from exc
        return extract_gemini_text(payload)


# --------- GPTAgent Wrapper (GitHub Models) ---------
class GPTAgent:
    def __init__(self, github_token: str, endpoint: str = "https://models.github.ai/inference",
                 model: str = "openai/gpt-4.1", client: Optional[ChatCompletionsClient] = None):
        if not github_token:
            raise ConfigurationError("Missing GITHUB_TOKEN env variable")

        self.client = client or ChatCompletionsClient(
            endpoint=endpoint,
            credential=AzureKeyCredential(github_token)
        )
        self.model_name = model

    def _complete(self, system_prompt: str, user_prompt: str) -> str:
        messages = [
            SystemMessage(content=system_prompt),
            UserMessage(content=user_prompt)
        ]

        response = self.client.complete(
            messages=messages,
            model=self.model_name,
            temperature=0.7,
            top_p=1.0,
            max_tokens=1000
        )

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def chat_completion(self, system_prompt: str, user_prompt: str) -> str:
        try:
            return await asyncio.to_thread(self._complete, system_prompt, user_prompt)
        except AzureError as exc:
            logger.warning("GitHub Models request failed: %s", exc)
            raise AIProviderError(f"GitHub Models request failed: {exc}") from exc


def create_agent(settings: Settings):
    """Provider selected by AI_PROVIDER; raises ConfigurationError when its key is missing."""
    api_key = settings.api_key()
    if settings.ai_provider == GEMINI_PROVIDER:
        return GeminiAgent(
            api_key,
            model=settings.gemini_model,
            base_url=settings.gemini_api_url,
            timeout=settings.ai_timeout,
        )
    if settings.ai_provider == GITHUB_PROVIDER:
        return GPTAgent(api_key, endpoint=settings.github_endpoint, model=settings.github_model)
    raise ConfigurationError(f"Unknown AI_PROVIDER: {settings.ai_provider!r}")
