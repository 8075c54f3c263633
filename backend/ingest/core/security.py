import base64
import binascii
import hmac
import json
import re
from dataclasses import dataclass

DEFAULT_APP_ID = "fkapp"
DEFAULT_REGION = "fukusu-server"

_SIMPLE_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class TokenError(Exception):
    """Raised when an API token cannot be decoded."""


@dataclass(frozen=True)
class SimpleToken:
    """A bare secret; application id and regions are fixed."""

    api_key: str

    @property
    def app_id(self) -> str:
        return DEFAULT_APP_ID

    @property
    def regions(self) -> tuple[str, ...]:
        return (DEFAULT_REGION,)


@dataclass(frozen=True)
class StructuredToken:
    """Base64-encoded JSON carrying ``appId``, ``apiKey`` and ``regions``."""

    api_key: str
    app_id: str = DEFAULT_APP_ID
    regions: tuple[str, ...] = (DEFAULT_REGION,)


UploadToken = SimpleToken | StructuredToken


def _decode_structured(raw: str) -> StructuredToken | None:
    padded = raw + "=" * (-len(raw) % 4)
    try:
        decoded = base64.b64decode(padded, validate=True).decode("utf-8")
        parsed = json.loads(decoded)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None

    if not isinstance(parsed, dict) or not isinstance(parsed.get("apiKey"), str):
        return None

    app_id = parsed.get("appId")
    regions = parsed.get("regions")
    return StructuredToken(
        api_key=parsed["apiKey"],
        app_id=app_id if isinstance(app_id, str) else DEFAULT_APP_ID,
        regions=(regions,) if isinstance(regions, str) else (DEFAULT_REGION,),
    )


def parse_api_token(raw: str) -> UploadToken:
    """Decode the token carried in ``x-uploadthing-api-key``.

    The structured form is tried first, so a short base64 token without dots
    is not mistaken for a bare secret. Anything that is neither is rejected.
    """
    structured = _decode_structured(raw)
    if structured is not None:
        return structured
    if "." not in raw and _SIMPLE_TOKEN_RE.match(raw):
        return SimpleToken(api_key=raw)
    raise TokenError("Invalid API token format")


def encode_api_token(
    api_key: str,
    app_id: str = DEFAULT_APP_ID,
    regions: list[str] | None = None,
) -> str:
    payload = {
        "appId": app_id,
        "apiKey": api_key,
        "regions": regions or [DEFAULT_REGION],
    }
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def validate_api_key(api_key: str, secret: str) -> bool:
    return hmac.compare_digest(api_key.encode("utf-8"), secret.encode("utf-8"))
