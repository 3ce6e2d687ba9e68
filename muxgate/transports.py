"""
Default upstream transport.

``UpstreamTransport`` is the ``call_upstream(provider_type, native_request,
credential, stream)`` the router uses unless another callable is supplied.
It speaks each provider's native format:

- OpenAI Chat / Responses through ``openai.AsyncOpenAI``
- Claude through ``anthropic.AsyncAnthropic``
- Gemini through ``google-genai`` for API keys, or the Cloud Code Assist
  endpoint over ``httpx`` for OAuth credentials
- Kiro (CodeWhisperer) over ``httpx``

Every SDK or HTTP failure leaves here as UpstreamError or AuthError.
"""
import codecs
import json
import re
import uuid
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

import anthropic
import httpx
import openai
from google import genai
from google.genai import errors as genai_errors
from loguru import logger

from .config import GatewayConfig
from .converters.kiro import aggregate_events
from .errors import AuthError, UnknownProviderError, UpstreamError
from .log import mask_secret
from .pool import ProviderCredential
from .types import (
    CLAUDE_CUSTOM, GEMINI_CLI_OAUTH, KIRO_OAUTH, OPENAI_CUSTOM, OPENAI_RESPONSES_CUSTOM,
    normalize_provider_type,
)

CLOUDCODE_BASE_URL = "https://cloudcode-pa.googleapis.com"
KIRO_URL_TEMPLATE = "https://codewhisperer.{region}.amazonaws.com/generateAssistantResponse"
DEFAULT_KIRO_REGION = "us-east-1"
DEFAULT_TIMEOUT = 600.0

NativeResult = Union[Dict[str, Any], AsyncIterator[Dict[str, Any]]]


# ==========================================================================
# Credential helpers
# ==========================================================================

def auth_value(auth: Dict[str, Any], *keys: str) -> Optional[Any]:
    """
    First non-empty value among ``keys`` in a credential's auth material.
    """
    for key in keys:
        value = auth.get(key)
        if value:
            return value
    return None


def load_creds_file(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Read an OAuth credentials file kept fresh by an external refresher.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise AuthError(f"Cannot read OAuth credentials file {path}: {e}") from e


def _oauth_material(auth: Dict[str, Any], file_key: str) -> Dict[str, Any]:
    material = dict(auth)
    path = auth.get(file_key)
    if path:
        material.update(load_creds_file(path))
    return material


# ==========================================================================
# Error translation
# ==========================================================================

def upstream_error(
    status_code: Optional[int],
    message: str,
    provider_type: str,
) -> UpstreamError:
    if status_code in (401, 403):
        return AuthError(message, status_code, provider_type=provider_type)
    return UpstreamError(message, status_code, provider_type=provider_type)


def translate_exception(exc: Exception, provider_type: str) -> Exception:
    """
    Map SDK and httpx exceptions onto the gateway error taxonomy.

    Exceptions that are not recognised are returned unchanged.
    """
    if isinstance(exc, UpstreamError):
        return exc
    if isinstance(exc, (openai.APIStatusError, anthropic.APIStatusError)):
        return upstream_error(exc.status_code, f"{provider_type} returned {exc.status_code}: {exc.message}", provider_type)
    if isinstance(exc, (openai.APIConnectionError, anthropic.APIConnectionError)):
        # Also covers APITimeoutError
        return UpstreamError(f"{provider_type} connection failed: {exc}", None, retryable=True, provider_type=provider_type)
    if isinstance(exc, genai_errors.APIError):
        return upstream_error(exc.code, f"{provider_type} returned {exc.code}: {exc.message}", provider_type)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return upstream_error(status, f"{provider_type} returned {status}", provider_type)
    if isinstance(exc, httpx.TimeoutException):
        return UpstreamError(f"{provider_type} timed out: {exc}", None, retryable=True, provider_type=provider_type)
    if isinstance(exc, httpx.TransportError):
        return UpstreamError(f"{provider_type} network error: {exc}", None, retryable=True, provider_type=provider_type)
    return exc


async def _check_status(response: httpx.Response, provider_type: str) -> None:
    if 200 <= response.status_code < 300:
        return
    detail = (await response.aread()).decode("utf-8", errors="ignore").strip()
    if len(detail) > 500:
        detail = detail[:500] + "..."
    raise upstream_error(
        response.status_code, f"{provider_type} returned {response.status_code}: {detail}", provider_type,
    )


# ==========================================================================
# Kiro event stream scanning
# ==========================================================================

KIRO_EVENT_PATTERN = re.compile(
    r'\{"(?:content|name|input|stop|followupPrompt|usage|contextUsagePercentage|toolUseId)":'
)


def find_matching_brace(text: str, start: int) -> int:
    """
    Index of the brace closing the JSON object opened at ``start``, or -1.

    Example:
        >>> find_matching_brace('{"a": "{}"}', 0)
        10
    """
    if start >= len(text) or text[start] != "{":
        return -1
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        char = text[i]
        if escaped:
            escaped = False
            continue
        if char == "\\" and in_string:
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return i
    return -1


class KiroEventScanner:
    """
    Pull JSON event payloads out of Kiro's binary AWS event stream.

    Frames carry binary headers around JSON payloads; the scanner looks for
    the known payload prefixes and yields each complete JSON object.

    Example:
        >>> scanner = KiroEventScanner()
        >>> scanner.feed(b'...:event-type...{"content":"Hi"}...')
        [{'content': 'Hi'}]
    """

    def __init__(self):
        self.buffer = ""
        # Multi-byte characters may be split across network reads
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="ignore")

    def feed(self, chunk: bytes) -> List[Dict[str, Any]]:
        self.buffer += self._decoder.decode(chunk)
        events = []
        while True:
            match = KIRO_EVENT_PATTERN.search(self.buffer)
            if not match:
                # Keep a tail in case a prefix is split across chunks
                self.buffer = self.buffer[-64:]
                break
            start = match.start()
            end = find_matching_brace(self.buffer, start)
            if end == -1:
                self.buffer = self.buffer[start:]
                break
            payload = self.buffer[start:end + 1]
            self.buffer = self.buffer[end + 1:]
            try:
                events.append(json.loads(payload))
            except json.JSONDecodeError:
                logger.warning(f"Skipping malformed Kiro event: {payload[:100]}")
        return events


# ==========================================================================
# Transport
# ==========================================================================

class UpstreamTransport:
    """
    SDK-backed ``call_upstream`` implementation.

    Clients are cached per credential and proxy; call ``aclose()`` on
    shutdown to release connections.

    Args:
        config (GatewayConfig, optional): Supplies the proxy settings.
        timeout (float): Per-request timeout in seconds.
    """

    def __init__(self, config: Optional[GatewayConfig] = None, timeout: float = DEFAULT_TIMEOUT):
        self.config = config or GatewayConfig()
        self.timeout = timeout
        self._http_clients: Dict[Optional[str], httpx.AsyncClient] = {}
        self._sdk_clients: Dict[Tuple[Any, ...], Any] = {}

    async def __call__(
        self,
        provider_type: str,
        native: Dict[str, Any],
        credential: ProviderCredential,
        stream: bool,
    ) -> NativeResult:
        provider_type = normalize_provider_type(provider_type)
        handlers = {
            OPENAI_CUSTOM: self._call_openai_chat,
            OPENAI_RESPONSES_CUSTOM: self._call_openai_responses,
            CLAUDE_CUSTOM: self._call_claude,
            GEMINI_CLI_OAUTH: self._call_gemini,
            KIRO_OAUTH: self._call_kiro,
        }
        handler = handlers.get(provider_type)
        if handler is None:
            raise UnknownProviderError(provider_type)

        logger.debug(f"Calling {provider_type} credential={credential.id} stream={stream}")
        try:
            result = await handler(native, credential, stream)
        except Exception as exc:
            translated = translate_exception(exc, provider_type)
            if translated is exc:
                raise
            raise translated from exc
        if stream:
            return self._translating(result, provider_type)
        return result

    async def _translating(self, source: AsyncIterator[Dict[str, Any]], provider_type: str) -> AsyncIterator[Dict[str, Any]]:
        try:
            async for item in source:
                yield item
        except Exception as exc:
            translated = translate_exception(exc, provider_type)
            if translated is exc:
                raise
            raise translated from exc
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()

    async def aclose(self) -> None:
        # OpenAI and Anthropic clients share the pooled httpx clients
        for client in self._http_clients.values():
            await client.aclose()
        self._http_clients.clear()
        self._sdk_clients.clear()

    def http_client(self, provider_type: str) -> httpx.AsyncClient:
        proxy = self.config.proxy_for(provider_type)
        client = self._http_clients.get(proxy)
        if client is None:
            if proxy:
                logger.info(f"Using proxy for {provider_type}")
            client = httpx.AsyncClient(proxy=proxy, timeout=self.timeout)
            self._http_clients[proxy] = client
        return client

    # ==========================================================================
    # OpenAI
    # ==========================================================================

    def _openai_client(self, provider_type: str, credential: ProviderCredential) -> openai.AsyncOpenAI:
        api_key = auth_value(credential.auth, "OPENAI_API_KEY", "apiKey", "api_key")
        if not api_key:
            raise AuthError(f"Credential {credential.id} has no OpenAI API key", provider_type=provider_type)
        base_url = auth_value(credential.auth, "OPENAI_BASE_URL", "baseUrl", "base_url")
        key = ("openai", credential.id, api_key, base_url)
        client = self._sdk_clients.get(key)
        if client is None:
            logger.debug(f"Creating OpenAI client for {credential.id} key={mask_secret(api_key)}")
            client = openai.AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                http_client=self.http_client(provider_type),
                max_retries=0,
            )
            self._sdk_clients[key] = client
        return client

    async def _call_openai_chat(self, native: Dict[str, Any], credential: ProviderCredential, stream: bool) -> NativeResult:
        client = self._openai_client(OPENAI_CUSTOM, credential)
        params = dict(native)
        params["stream"] = stream
        if not stream:
            params.pop("stream_options", None)
        response = await client.chat.completions.create(**params)
        if stream:
            return _dump_stream(response)
        return response.model_dump(exclude_none=True)

    async def _call_openai_responses(self, native: Dict[str, Any], credential: ProviderCredential, stream: bool) -> NativeResult:
        client = self._openai_client(OPENAI_RESPONSES_CUSTOM, credential)
        params = dict(native)
        params["stream"] = stream
        response = await client.responses.create(**params)
        if stream:
            return _dump_stream(response)
        return response.model_dump(exclude_none=True)

    # ==========================================================================
    # Claude
    # ==========================================================================

    async def _call_claude(self, native: Dict[str, Any], credential: ProviderCredential, stream: bool) -> NativeResult:
        api_key = auth_value(credential.auth, "CLAUDE_API_KEY", "apiKey", "api_key")
        if not api_key:
            raise AuthError(f"Credential {credential.id} has no Claude API key", provider_type=CLAUDE_CUSTOM)
        base_url = auth_value(credential.auth, "CLAUDE_BASE_URL", "baseUrl", "base_url")
        key = ("anthropic", credential.id, api_key, base_url)
        client = self._sdk_clients.get(key)
        if client is None:
            client = anthropic.AsyncAnthropic(
                api_key=api_key,
                base_url=base_url,
                http_client=self.http_client(CLAUDE_CUSTOM),
                max_retries=0,
            )
            self._sdk_clients[key] = client

        params = dict(native)
        params["stream"] = stream
        response = await client.messages.create(**params)
        if stream:
            return _dump_stream(response)
        return response.model_dump(exclude_none=True)

    # ==========================================================================
    # Gemini
    # ==========================================================================

    async def _call_gemini(self, native: Dict[str, Any], credential: ProviderCredential, stream: bool) -> NativeResult:
        api_key = auth_value(credential.auth, "GEMINI_API_KEY", "GOOGLE_API_KEY", "apiKey", "api_key")
        if api_key:
            return await self._call_gemini_sdk(native, credential, api_key, stream)
        return await self._call_cloudcode(native, credential, stream)

    async def _call_gemini_sdk(
        self, native: Dict[str, Any], credential: ProviderCredential, api_key: str, stream: bool,
    ) -> NativeResult:
        key = ("genai", credential.id, api_key)
        client = self._sdk_clients.get(key)
        if client is None:
            client = genai.Client(api_key=api_key)
            self._sdk_clients[key] = client

        request = dict(native)
        model = request.pop("model")
        contents = request.pop("contents")
        # GenerateContentConfig accepts the camelCase wire names
        config: Dict[str, Any] = dict(request.pop("generationConfig", None) or {})
        for wire_key in ("systemInstruction", "tools", "toolConfig", "safetySettings"):
            if wire_key in request:
                config[wire_key] = request.pop(wire_key)

        if stream:
            response = await client.aio.models.generate_content_stream(model=model, contents=contents, config=config)
            return _dump_stream(response, by_alias=True)
        response = await client.aio.models.generate_content(model=model, contents=contents, config=config)
        return response.model_dump(mode="json", by_alias=True, exclude_none=True)

    def _cloudcode_payload(self, native: Dict[str, Any], credential: ProviderCredential) -> Tuple[Dict[str, Any], str]:
        material = _oauth_material(credential.auth, "GEMINI_OAUTH_CREDS_FILE_PATH")
        token = auth_value(material, "access_token", "accessToken")
        if not token:
            raise AuthError(f"Credential {credential.id} has no Gemini access token", provider_type=GEMINI_CLI_OAUTH)
        request = dict(native)
        model = request.pop("model")
        payload = {"model": model, "request": request}
        project = auth_value(material, "PROJECT_ID", "project_id", "projectId")
        if project:
            payload["project"] = project
        return payload, token

    @staticmethod
    def _cloudcode_headers(token: str, stream: bool) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "User-Agent": "google-api-nodejs-client/9.15.1",
            "X-Goog-Api-Client": "gl-node/22.17.0",
            "Accept": "text/event-stream" if stream else "application/json",
        }

    async def _call_cloudcode(self, native: Dict[str, Any], credential: ProviderCredential, stream: bool) -> NativeResult:
        payload, token = self._cloudcode_payload(native, credential)
        client = self.http_client(GEMINI_CLI_OAUTH)
        headers = self._cloudcode_headers(token, stream)
        if not stream:
            response = await client.post(f"{CLOUDCODE_BASE_URL}/v1internal:generateContent", json=payload, headers=headers)
            await _check_status(response, GEMINI_CLI_OAUTH)
            return response.json()

        request = client.build_request(
            "POST", f"{CLOUDCODE_BASE_URL}/v1internal:streamGenerateContent?alt=sse", json=payload, headers=headers,
        )
        response = await client.send(request, stream=True)
        try:
            await _check_status(response, GEMINI_CLI_OAUTH)
        except BaseException:
            await response.aclose()
            raise
        return _sse_events(response)

    # ==========================================================================
    # Kiro
    # ==========================================================================

    async def _call_kiro(self, native: Dict[str, Any], credential: ProviderCredential, stream: bool) -> NativeResult:
        material = _oauth_material(credential.auth, "KIRO_OAUTH_CREDS_FILE_PATH")
        token = auth_value(material, "accessToken", "access_token")
        if not token:
            raise AuthError(f"Credential {credential.id} has no Kiro access token", provider_type=KIRO_OAUTH)
        region = auth_value(material, "region") or DEFAULT_KIRO_REGION

        payload = dict(native)
        profile_arn = auth_value(material, "profileArn")
        if profile_arn:
            payload.setdefault("profileArn", profile_arn)
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "x-amzn-codewhisperer-optout": "true",
            "x-amzn-kiro-agent-mode": "vibe",
            "amz-sdk-invocation-id": str(uuid.uuid4()),
            "amz-sdk-request": "attempt=1; max=1",
        }
        client = self.http_client(KIRO_OAUTH)
        request = client.build_request("POST", KIRO_URL_TEMPLATE.format(region=region), json=payload, headers=headers)
        response = await client.send(request, stream=True)
        try:
            await _check_status(response, KIRO_OAUTH)
        except BaseException:
            await response.aclose()
            raise

        events = _kiro_events(response)
        if stream:
            return events
        collected = [event async for event in events]
        conversation_id = native.get("conversationState", {}).get("conversationId")
        return aggregate_events(collected, conversation_id)


async def _dump_stream(stream: Any, by_alias: bool = False) -> AsyncIterator[Dict[str, Any]]:
    try:
        async for item in stream:
            if by_alias:
                yield item.model_dump(mode="json", by_alias=True, exclude_none=True)
            else:
                yield item.model_dump(exclude_none=True)
    finally:
        close = getattr(stream, "close", None) or getattr(stream, "aclose", None)
        if close is not None:
            await close()


async def _sse_events(response: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
    try:
        async for line in response.aiter_lines():
            line = line.strip()
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if not data:
                continue
            if data == "[DONE]":
                break
            try:
                event = json.loads(data)
            except json.JSONDecodeError:
                logger.warning(f"Skipping malformed SSE event: {data[:100]}")
                continue
            if isinstance(event, dict):
                yield event
    finally:
        await response.aclose()


async def _kiro_events(response: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
    scanner = KiroEventScanner()
    try:
        async for chunk in response.aiter_bytes():
            for event in scanner.feed(chunk):
                yield event
    finally:
        await response.aclose()
