"""
Gemini REST client for LLM interactions.
"""
import json
import logging
from typing import Optional, Dict, Any, List

import requests

from ...config import GEMINI_BASE_URL, MODEL_NAME, LLM_TIMEOUT, MAX_OUTPUT_TOKENS
from ...errors import NetworkFailure, MalformedResponse

logger = logging.getLogger("llm_client")


def text_part(text: str) -> Dict[str, Any]:
    return {"text": text}


def inline_part(mime_type: str, b64_data: str) -> Dict[str, Any]:
    """Build a multimodal part carrying base64 media (e.g. recorded speech)."""
    return {"inline_data": {"mime_type": mime_type, "data": b64_data}}


class GeminiRestClient:
    """REST-based client for the Gemini generateContent API."""

    def __init__(self,
                 api_key: str,
                 model: str = MODEL_NAME,
                 base_url: str = GEMINI_BASE_URL,
                 timeout: int = LLM_TIMEOUT):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    def generate_content(
        self,
        prompt_text: Optional[str] = None,
        parts: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.7,
        max_output_tokens: int = MAX_OUTPUT_TOKENS,
        json_mode: bool = False,
        system_instruction: Optional[str] = None,
    ) -> str:
        """
        Generate content using the Gemini REST API.

        Args:
            prompt_text: Plain text prompt, prepended to ``parts``
            parts: Extra request parts (text or inline media)
            temperature: Sampling temperature
            max_output_tokens: Output token ceiling
            json_mode: Ask the model for an ``application/json`` response
            system_instruction: Optional system prompt

        Returns:
            The text of the first candidate

        Raises:
            NetworkFailure: On transport errors or HTTP status >= 400
            MalformedResponse: If the response carries no candidate text
        """
        request_parts: List[Dict[str, Any]] = []
        if prompt_text:
            request_parts.append(text_part(prompt_text))
        if parts:
            request_parts.extend(parts)
        if not request_parts:
            raise ValueError("generate_content needs prompt_text or parts")

        body: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": request_parts}],
            "generationConfig": {
                "temperature": float(temperature),
                "maxOutputTokens": int(max_output_tokens),
            },
        }
        if json_mode:
            body["generationConfig"]["responseMimeType"] = "application/json"
        if system_instruction:
            body["systemInstruction"] = {"parts": [text_part(system_instruction)]}

        headers = {
            "x-goog-api-key": self.api_key,
            "Content-Type": "application/json",
        }

        try:
            resp = requests.post(self.endpoint, headers=headers, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error("Gemini request failed: %s", e)
            raise NetworkFailure(f"Gemini request failed: {e}") from e

        if resp.status_code >= 400:
            logger.error("Gemini REST error %s: %s", resp.status_code, resp.text[:500])
            raise NetworkFailure(f"Gemini REST error {resp.status_code}")

        try:
            payload = resp.json()
        except ValueError as e:
            raise MalformedResponse(f"Gemini returned non-JSON body: {e}") from e

        return self._parse_response_text(payload)

    def _parse_response_text(self, resp_json: Dict[str, Any]) -> str:
        """Extract candidates[0].content.parts[*].text."""
        cands = resp_json.get("candidates") or []
        if cands:
            content = cands[0].get("content") or {}
            texts = [
                p["text"] for p in content.get("parts") or []
                if isinstance(p, dict) and isinstance(p.get("text"), str)
            ]
            if texts:
                return "".join(texts)

        feedback = resp_json.get("promptFeedback")
        if feedback:
            logger.warning("Gemini blocked the prompt: %s", feedback)
        raise MalformedResponse(f"Gemini response has no text: {json.dumps(resp_json)[:300]}")

    def generate_json(self, prompt: str, parts: Optional[List[Dict[str, Any]]] = None,
                      temperature: float = 0.7) -> Dict[str, Any]:
        """
        Generate a JSON object from the LLM.

        JSON response mode is requested; a substring parse between the outer
        braces covers models that wrap the object in prose or code fences.

        Raises:
            MalformedResponse: If no JSON object can be recovered
        """
        logger.debug("Sending JSON prompt to LLM...")
        text = self.generate_content(prompt, parts=parts, temperature=temperature, json_mode=True)
        logger.debug("Raw LLM output: %s", repr(text))

        try:
            parsed = json.loads(text)
        except ValueError as e:
            logger.warning("json.loads failed: %s", e)
            start = text.find("{")
            end = text.rfind("}")
            if start == -1 or end <= start:
                raise MalformedResponse(f"LLM did not return valid JSON: {text[:200]}") from e
            try:
                parsed = json.loads(text[start:end + 1])
            except ValueError as e2:
                raise MalformedResponse(f"LLM did not return valid JSON: {text[:200]}") from e2

        if not isinstance(parsed, dict):
            raise MalformedResponse(f"Expected a JSON object, got {type(parsed).__name__}")
        return parsed
