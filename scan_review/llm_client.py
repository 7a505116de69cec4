"""
Vision LLM Client
=================

Supports:
- Google Gemini (native generateContent, inline image data)
- OpenRouter (OpenAI-compatible chat completions, image_url data URIs)

One call = one image + one prompt, JSON response requested.
Failures are returned as LLMCallResult(success=False), never raised.
"""

import base64
import json
import hashlib
import logging
from typing import Optional, Dict, Any, Tuple
from dataclasses import dataclass

import httpx

from .config import Settings, get_settings
from .schemas import LLMMode

logger = logging.getLogger(__name__)


# =============================================================================
# Robust JSON Parser
# =============================================================================

def _strip_code_fence(content: str) -> str:
    for fence in ("```json", "```"):
        if fence in content:
            start = content.find(fence) + len(fence)
            end = content.find("```", start)
            if end > start:
                return content[start:end].strip()
    return content


def _brace_blocks(content: str):
    """Top-level {...} spans, in order of appearance"""
    depth = 0
    start_idx = None
    for i, char in enumerate(content):
        if char == '{':
            if depth == 0:
                start_idx = i
            depth += 1
        elif char == '}' and depth > 0:
            depth -= 1
            if depth == 0 and start_idx is not None:
                yield content[start_idx:i + 1]
                start_idx = None


def parse_json_robust(content: str) -> Tuple[Optional[Dict], bool, str]:
    """
    Parse a JSON object out of raw model output.

    Handles markdown code fences, prose before/after the object and
    multiple objects (the largest parseable one wins).

    Returns:
        Tuple of (parsed_dict, success, error_message)
    """
    if not content or not content.strip():
        return None, False, "Empty content"

    content = _strip_code_fence(content.strip())

    try:
        data = json.loads(content)
        if isinstance(data, dict):
            return data, True, ""
        return None, False, f"Expected JSON object, got {type(data).__name__}"
    except json.JSONDecodeError as e:
        last_error = str(e)

    for block in sorted(_brace_blocks(content), key=len, reverse=True):
        try:
            return json.loads(block), True, ""
        except json.JSONDecodeError:
            continue

    return None, False, last_error


def safe_log_content(content: str, max_chars: int = 120) -> str:
    """
    Log-safe representation of model output: length, short hash, preview.
    """
    if not content:
        return "(empty)"

    content_hash = hashlib.sha256(content.encode()).hexdigest()[:12]
    preview = content[:max_chars].replace('\n', ' ')

    return f"len={len(content)} hash={content_hash} preview='{preview}...'"


def encode_image(data: bytes) -> str:
    """Base64 payload for inline image transport"""
    return base64.b64encode(data).decode("ascii")


@dataclass
class LLMCallResult:
    """Result from one inference call"""
    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    raw_response: Optional[Dict] = None
    success: bool = True
    error: Optional[str] = None


class VisionLLMClient:
    """
    Unified vision client for Gemini and OpenRouter.

    Usage:
        client = VisionLLMClient()
        result = await client.generate(prompt, image_bytes, "image/png")
        if result.success:
            data, ok, err = parse_json_robust(result.content)
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def model(self) -> str:
        if self.settings.llm_mode == LLMMode.OPENROUTER:
            return self.settings.openrouter_model
        return self.settings.gemini_model

    def is_configured(self) -> bool:
        return bool(self.settings.inference_api_key())

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.settings.llm_timeout)
        return self._http_client

    async def close(self):
        """Close HTTP client"""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def generate(
        self,
        prompt: str,
        image_data: bytes,
        mime_type: str,
        temperature: float = 0.2,
        max_tokens: Optional[int] = None
    ) -> LLMCallResult:
        """
        Send one image and a prompt, request a JSON response.

        Args:
            prompt: Instruction text (embeds clinical context and sequence label)
            image_data: Raw image bytes
            mime_type: Image MIME type
            temperature: Sampling temperature
            max_tokens: Maximum response tokens (settings default when None)

        Returns:
            LLMCallResult with content or error
        """
        mode = self.settings.llm_mode
        max_tokens = max_tokens or self.settings.max_tokens

        if mode == LLMMode.NONE:
            return LLMCallResult(content="", model="", success=False, error="LLM mode is none")

        if not self.is_configured():
            return LLMCallResult(content="", model=self.model, success=False, error="API key not configured")

        payload_image = encode_image(image_data)

        try:
            if mode == LLMMode.GEMINI:
                return await self._generate_gemini(prompt, payload_image, mime_type, temperature, max_tokens)
            return await self._generate_openrouter(prompt, payload_image, mime_type, temperature, max_tokens)
        except httpx.HTTPStatusError as e:
            logger.error(f"{mode.value} API error: {e.response.status_code}")
            return LLMCallResult(
                content="",
                model=self.model,
                success=False,
                error=f"HTTP {e.response.status_code}: {e.response.text[:200]}"
            )
        except Exception as e:
            logger.error(f"{mode.value} request failed: {e}")
            return LLMCallResult(
                content="",
                model=self.model,
                success=False,
                error=str(e) or e.__class__.__name__
            )

    async def _generate_gemini(
        self,
        prompt: str,
        image_b64: str,
        mime_type: str,
        temperature: float,
        max_tokens: int
    ) -> LLMCallResult:
        """Generate via Google Gemini API"""
        client = await self._get_client()

        payload = {
            "contents": [
                {
                    "parts": [
                        {"inlineData": {"mimeType": mime_type, "data": image_b64}},
                        {"text": prompt},
                    ]
                }
            ],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
                "responseMimeType": "application/json",
            }
        }

        url = f"{self.settings.gemini_base_url}/models/{self.settings.gemini_model}:generateContent"

        response = await client.post(
            url,
            json=payload,
            params={"key": self.settings.gemini_api_key}
        )
        response.raise_for_status()
        data = response.json()

        # Blocked/filtered responses have no candidates
        try:
            content = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            logger.error(f"Gemini response missing content: {e}")
            return LLMCallResult(
                content="",
                model=self.settings.gemini_model,
                success=False,
                error=f"Response missing content: {e}",
                raw_response=data
            )

        usage_metadata = data.get("usageMetadata", {})

        return LLMCallResult(
            content=content or "",
            model=self.settings.gemini_model,
            input_tokens=usage_metadata.get("promptTokenCount", 0),
            output_tokens=usage_metadata.get("candidatesTokenCount", 0),
            raw_response=data
        )

    async def _generate_openrouter(
        self,
        prompt: str,
        image_b64: str,
        mime_type: str,
        temperature: float,
        max_tokens: int
    ) -> LLMCallResult:
        """Generate via OpenRouter API"""
        client = await self._get_client()

        payload = {
            "model": self.settings.openrouter_model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{image_b64}"}},
                    ],
                }
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
        }

        headers = {
            "Authorization": f"Bearer {self.settings.openrouter_api_key}",
            "Content-Type": "application/json",
            "X-Title": "Scan Review Service"
        }

        response = await client.post(
            f"{self.settings.openrouter_base_url}/chat/completions",
            json=payload,
            headers=headers
        )
        response.raise_for_status()
        data = response.json()

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            logger.error(f"OpenRouter response missing content: {e}")
            return LLMCallResult(
                content="",
                model=self.settings.openrouter_model,
                success=False,
                error=f"Response missing content: {e}",
                raw_response=data
            )

        usage = data.get("usage", {})

        return LLMCallResult(
            content=content or "",
            model=self.settings.openrouter_model,
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            raw_response=data
        )
