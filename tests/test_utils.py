import pytest
from loguru import logger

from muxgate import utils
from muxgate.config import GatewayConfig
from muxgate.errors import (
    AuthError, ConversionError, PoolExhaustedError, AttemptRecord, UpstreamError, is_retryable_status,
)
from muxgate.log import configure_logging, mask_secret
from muxgate.types import normalize_provider_type


class TestProviderTypes:

    def test_aliases_resolve(self):
        assert normalize_provider_type("openai") == "openai-custom"
        assert normalize_provider_type("Gemini") == "gemini-cli-oauth"
        assert normalize_provider_type("kiro") == "claude-kiro-oauth"
        assert normalize_provider_type("anthropic") == "claude-custom"
        assert normalize_provider_type("responses") == "openaiResponses-custom"

    def test_canonical_names_pass_through(self):
        assert normalize_provider_type("claude-kiro-oauth") == "claude-kiro-oauth"

    def test_unknown_names_unchanged(self):
        assert normalize_provider_type(" mystery ") == "mystery"


class TestImageHelpers:

    def test_normalize_mime_type(self):
        assert utils.normalize_mime_type("image/jpg") == "image/jpeg"
        assert utils.normalize_mime_type("IMAGE/PNG; charset=binary") == "image/png"
        assert utils.normalize_mime_type(None) == "image/jpeg"

    def test_parse_data_uri(self):
        data, mime = utils.parse_data_uri("data:image/jpg;base64,SGVsbG8=")
        assert data == "SGVsbG8="
        assert mime == "image/jpeg"

    def test_parse_data_uri_rejects_urls(self):
        with pytest.raises(ConversionError):
            utils.parse_data_uri("https://example.com/cat.png")

    def test_build_data_uri(self):
        assert utils.build_data_uri("SGVsbG8=", "image/png") == "data:image/png;base64,SGVsbG8="

    def test_image_part_guesses_mime_from_url(self):
        part = utils.image_part("https://example.com/cat.PNG?size=large")
        assert part == {"type": "image", "reference": "https://example.com/cat.PNG?size=large", "mime_type": "image/png"}


class TestContentHelpers:

    def test_load_arguments_keeps_invalid_json(self):
        assert utils.load_arguments('{"a": 1}') == {"a": 1}
        assert utils.load_arguments("") == {}
        assert utils.load_arguments("not json") == {"_raw": "not json"}

    def test_stringify_output(self):
        assert utils.stringify_output("plain") == "plain"
        assert utils.stringify_output([{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]) == "ab"
        assert utils.stringify_output({"temp": 21}) == '{"temp": 21}'

    def test_require(self):
        assert utils.require({"a": 1}, "a", "test") == 1
        with pytest.raises(ConversionError, match="missing required field 'b'"):
            utils.require({"a": 1}, "b", "test")
        with pytest.raises(ConversionError):
            utils.require("nope", "a", "test")

    def test_normalize_usage_derives_completion(self):
        assert utils.normalize_usage(10, None, 25) == {"prompt_tokens": 10, "completion_tokens": 15}
        assert utils.normalize_usage() == {"prompt_tokens": 0, "completion_tokens": 0}

    def test_merge_usage_takes_maximum(self):
        merged = utils.merge_usage(
            {"prompt_tokens": 10, "completion_tokens": 2},
            {"prompt_tokens": 0, "completion_tokens": 7},
        )
        assert merged == {"prompt_tokens": 10, "completion_tokens": 7}
        assert utils.merge_usage(None, None) is None


class TestErrors:

    @pytest.mark.parametrize("status,retryable", [
        (None, True), (408, True), (429, True), (500, True), (503, True), (529, True),
        (400, False), (404, False), (422, False),
    ])
    def test_retryable_statuses(self, status, retryable):
        assert is_retryable_status(status) is retryable
        assert UpstreamError("boom", status).retryable is retryable

    def test_upstream_http_status(self):
        assert UpstreamError("boom", 429).http_status == 429
        assert UpstreamError("boom").http_status == 502

    def test_auth_error_is_retryable(self):
        error = AuthError("denied", 403)
        assert error.retryable is True
        assert error.http_status == 401

    def test_pool_exhausted_body_lists_attempts(self):
        attempt = AttemptRecord("openai-custom", "gpt-4", "openai-1", "upstream", True, "overloaded", 529)
        body = PoolExhaustedError("all failed", [attempt]).to_dict()
        assert body["error"]["type"] == "pool_exhausted"
        assert body["error"]["attempts"][0]["credential"] == "openai-1"
        assert body["error"]["attempts"][0]["status_code"] == 529


class TestLogging:

    def test_mask_secret(self):
        assert mask_secret("sk-1234567890abcd") == "sk-1...abcd"
        assert mask_secret("short") == "***"
        assert mask_secret("") == "***"

    def test_configure_logging_swaps_its_sink(self):
        level = GatewayConfig(LOG_LEVEL="debug").log_level
        first = configure_logging(level, colorize=False)
        second = configure_logging("info", colorize=False)
        assert first != second
        with pytest.raises(ValueError):
            logger.remove(first)
