import base64
import json

import pytest

from ingest.core.security import (
    DEFAULT_APP_ID,
    DEFAULT_REGION,
    SimpleToken,
    StructuredToken,
    TokenError,
    encode_api_token,
    parse_api_token,
    validate_api_key,
)


def _b64(payload: dict) -> str:
    return base64.b64encode(json.dumps(payload).encode()).decode()


def test_simple_token():
    token = parse_api_token("sk_live_abc-123")
    assert token == SimpleToken(api_key="sk_live_abc-123")
    assert token.app_id == DEFAULT_APP_ID
    assert token.regions == (DEFAULT_REGION,)


def test_structured_token():
    raw = _b64({"appId": "myapp", "apiKey": "sk_live_x", "regions": ["eu-1"]})
    token = parse_api_token(raw)
    assert isinstance(token, StructuredToken)
    assert token.api_key == "sk_live_x"
    assert token.app_id == "myapp"
    # Only a single string region is honoured; lists fall back to the default.
    assert token.regions == (DEFAULT_REGION,)


def test_structured_token_with_string_region_and_missing_padding():
    raw = _b64({"apiKey": "k", "regions": "us-west"}).rstrip("=")
    token = parse_api_token(raw)
    assert isinstance(token, StructuredToken)
    assert token.app_id == DEFAULT_APP_ID
    assert token.regions == ("us-west",)


def test_encode_round_trips_through_parse():
    token = parse_api_token(encode_api_token("sk_live_y", app_id="app2"))
    assert token == StructuredToken(api_key="sk_live_y", app_id="app2", regions=(DEFAULT_REGION,))


@pytest.mark.parametrize(
    "raw",
    [
        "not-base64-!!!",
        "header.payload.signature",
        _b64({"appId": "no-key"}),
        _b64({"apiKey": 42}),
        "",
    ],
)
def test_invalid_tokens(raw):
    with pytest.raises(TokenError):
        parse_api_token(raw)


def test_validate_api_key():
    assert validate_api_key("sk_live_abc", "sk_live_abc")
    assert not validate_api_key("sk_live_abd", "sk_live_abc")
    assert not validate_api_key("", "sk_live_abc")
