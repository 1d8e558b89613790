"""
Hosted inference binding.

Every backend exposes one call, ``run(model, inputs)``, where ``inputs`` is a
Workers AI style payload: either ``{"prompt": ...}`` or ``{"messages": [...]}``
with optional ``temperature`` and ``max_tokens``. The raw result is handed back
untouched; callers tag it with ``to_result`` and read it with ``result_text``.
"""
import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import unquote_to_bytes

import requests
from google import genai
from google.genai import types

from config import GEMINI, OCR_MODEL, SOLVER_MODEL, WORKERS_AI, Settings

logger = logging.getLogger(__name__)

DATA_URL_PATTERN = re.compile(r'^data:(?P<mime>[^;,]*)(?P<params>(?:;[^;,]*)*),(?P<data>.*)$', re.DOTALL)


class InferenceError(Exception):
    """Raised when the hosted model rejects a call or returns an unusable reply."""


@dataclass(frozen=True)
class TextResult:
    text: str


@dataclass(frozen=True)
class OpaqueResult:
    payload: Any


InferenceResult = Union[TextResult, OpaqueResult]


def to_result(raw: Any) -> InferenceResult:
    """Tag a raw model reply: a string ``response`` field is text, anything else is opaque."""
    if isinstance(raw, Mapping) and isinstance(raw.get('response'), str):
        return TextResult(raw['response'])
    return OpaqueResult(raw)


def result_text(result: InferenceResult) -> str:
    """
    Best-effort text of a model reply.
    Text replies are trimmed; opaque replies are serialized as compact JSON,
    and a missing reply reads as empty.
    """
    if isinstance(result, TextResult):
        return result.text.strip()
    if result.payload is None:
        return ""
    return json.dumps(result.payload, ensure_ascii=False, separators=(',', ':'), default=str)


class InferenceBinding:
    """Base class for hosted model backends."""

    def run(self, model: str, inputs: Dict[str, Any]) -> Any:
        raise NotImplementedError


def run_vision_ocr(binding: InferenceBinding, model: str, prompt: str, image_data_url: str,
                   temperature: float, max_tokens: int) -> InferenceResult:
    raw = binding.run(model, {
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": image_data_url}}
                ]
            }
        ],
        "temperature": temperature,
        "max_tokens": max_tokens
    })
    return to_result(raw)


def run_text_completion(binding: InferenceBinding, model: str, prompt: str,
                        temperature: float, max_tokens: int) -> InferenceResult:
    raw = binding.run(model, {
        "messages": [{"role": "user", "content": prompt}],
        "temperature": temperature,
        "max_tokens": max_tokens
    })
    return to_result(raw)


class WorkersAIClient(InferenceBinding):
    """Cloudflare Workers AI over its REST API."""

    def __init__(self, account_id: str, api_token: str,
                 api_base: str = "https://api.cloudflare.com/client/v4",
                 timeout: Optional[float] = 120.0,
                 session: Optional[requests.Session] = None):
        self.account_id = account_id
        self.api_base = api_base.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({'Authorization': f'Bearer {api_token}'})

    def url_for(self, model: str) -> str:
        return f"{self.api_base}/accounts/{self.account_id}/ai/run/{model}"

    def run(self, model: str, inputs: Dict[str, Any]) -> Any:
        response = self.session.post(self.url_for(model), json=inputs, timeout=self.timeout)
        try:
            envelope = response.json()
        except ValueError:
            envelope = None

        if not response.ok or not isinstance(envelope, dict) or envelope.get('success') is False:
            raise InferenceError(self._error_message(response, envelope))
        return envelope.get('result')

    @staticmethod
    def _error_message(response: requests.Response, envelope: Any) -> str:
        messages = []
        if isinstance(envelope, dict):
            for error in envelope.get('errors') or []:
                if isinstance(error, dict):
                    code = error.get('code')
                    text = error.get('message', '')
                    messages.append(f"{code}: {text}" if code is not None else text)
                else:
                    messages.append(str(error))
        if messages:
            return "; ".join(messages)
        return f"{response.status_code} {response.reason}".strip()


def parse_data_url(data_url: str) -> Tuple[str, bytes]:
    """
    Split a data URL into its MIME type and payload bytes.
    Args:
        data_url: e.g. ``data:image/png;base64,iVBOR...``
    Returns:
        (mime_type, data)
    """
    match = DATA_URL_PATTERN.match(data_url)
    if not match:
        raise InferenceError("Image must be a data URL")

    mime_type = match.group('mime') or 'text/plain'
    params = match.group('params').lower().split(';')
    payload = match.group('data')
    if 'base64' in params:
        try:
            return mime_type, base64.b64decode(payload, validate=False)
        except (binascii.Error, ValueError) as e:
            raise InferenceError(f"Invalid base64 image data: {str(e)}")
    return mime_type, unquote_to_bytes(payload)


class GeminiClient(InferenceBinding):
    """
    Google Gemini through google-genai.
    Workers AI model ids are mapped onto Gemini models with ``model_map``;
    unmapped ids are sent as they are.
    """

    def __init__(self, api_key: str, model_map: Optional[Dict[str, str]] = None,
                 timeout: Optional[float] = None, client: Optional[genai.Client] = None):
        if client is None:
            http_options = types.HttpOptions(timeout=int(timeout * 1000)) if timeout else None
            client = genai.Client(api_key=api_key, http_options=http_options)
        self.client = client
        self.model_map = dict(model_map or {})

    def run(self, model: str, inputs: Dict[str, Any]) -> Any:
        contents, system_instruction = self._contents(inputs)
        config = types.GenerateContentConfig(
            temperature=inputs.get('temperature'),
            max_output_tokens=inputs.get('max_tokens'),
            system_instruction=system_instruction
        )
        response = self.client.models.generate_content(
            model=self.model_map.get(model, model),
            contents=contents,
            config=config
        )

        if response.text is not None:
            return {"response": response.text}
        return response.model_dump(mode='json', exclude_none=True)

    def _contents(self, inputs: Dict[str, Any]) -> Tuple[List[types.Content], Optional[str]]:
        if 'messages' not in inputs:
            prompt = inputs.get('prompt', '')
            return [types.Content(role='user', parts=[types.Part.from_text(text=prompt)])], None

        contents = []
        system_parts = []
        for message in inputs['messages']:
            role = message.get('role', 'user')
            parts = self._parts(message.get('content', ''))
            if role == 'system':
                system_parts.extend(part.text for part in parts if part.text)
                continue
            contents.append(types.Content(role='model' if role == 'assistant' else 'user', parts=parts))

        return contents, "\n".join(system_parts) or None

    @staticmethod
    def _parts(content: Any) -> List[types.Part]:
        if isinstance(content, str):
            return [types.Part.from_text(text=content)]

        parts = []
        for item in content:
            kind = item.get('type')
            if kind == 'text':
                parts.append(types.Part.from_text(text=item.get('text', '')))
            elif kind == 'image_url':
                mime_type, data = parse_data_url(item['image_url']['url'])
                parts.append(types.Part.from_bytes(data=data, mime_type=mime_type))
            else:
                raise InferenceError(f"Unsupported message part type: {kind}")
        return parts


def build_binding(settings: Settings) -> InferenceBinding:
    """Create the backend selected by ``settings.provider``."""
    settings.validate()
    if settings.provider == WORKERS_AI:
        logger.info("Using Cloudflare Workers AI backend")
        return WorkersAIClient(
            account_id=settings.cloudflare_account_id,
            api_token=settings.cloudflare_api_token,
            api_base=settings.cloudflare_api_base,
            timeout=settings.inference_timeout
        )
    if settings.provider == GEMINI:
        logger.info("Using Google Gemini backend")
        return GeminiClient(
            api_key=settings.google_api_key,
            model_map={
                OCR_MODEL: settings.gemini_ocr_model,
                SOLVER_MODEL: settings.gemini_solver_model
            },
            timeout=settings.inference_timeout
        )
    raise ValueError(f"Unknown INFERENCE_PROVIDER {settings.provider!r}")
