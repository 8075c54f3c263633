"""HMAC-SHA256 signing for presigned URLs and webhook payloads.

Presigned URLs are signed over their own string form with the ``signature``
query parameter removed. Builder and verifier both go through
:func:`canonicalize_url`, so a URL produced here always re-canonicalizes to
the exact bytes that were signed.
"""

import hashlib
import hmac
import logging
import secrets
import string
import time
from urllib.parse import parse_qsl, quote, quote_plus, urlencode, urlsplit, urlunsplit

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "hmac-sha256="
SIGNATURE_PARAM = "signature"
EXPIRES_PARAM = "expires"

_FILE_KEY_ALPHABET = string.ascii_letters + string.digits
_FILE_KEY_LENGTH = 24


def _form_quote(
    value: str, safe: str = "", encoding: str | None = None, errors: str | None = None
) -> str:
    # WHATWG form encoding: "*" stays literal, "~" is escaped.
    return quote_plus(value, safe="*", encoding=encoding, errors=errors).replace("~", "%7E")


def _form_encode(pairs: list[tuple[str, str]]) -> str:
    return urlencode(pairs, quote_via=_form_quote)


def _as_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def compute_signature(payload: str | bytes, secret: str | bytes) -> str:
    """Return the lowercase hex HMAC-SHA256 digest of ``payload``."""
    return hmac.new(_as_bytes(secret), _as_bytes(payload), hashlib.sha256).hexdigest()


def sign_payload(payload: str | bytes, secret: str | bytes) -> str:
    """Return the digest in its wire form, ``hmac-sha256=<hex>``."""
    return f"{SIGNATURE_PREFIX}{compute_signature(payload, secret)}"


def verify_signature(
    payload: str | bytes, secret: str | bytes, signature: str | None
) -> bool:
    """Check ``signature`` against ``payload``; never raises.

    Both the prefixed wire form and a bare hex digest are accepted.
    """
    if not signature:
        return False
    candidate = signature.removeprefix(SIGNATURE_PREFIX)
    try:
        provided = bytes.fromhex(candidate)
    except ValueError:
        return False
    expected = hmac.new(_as_bytes(secret), _as_bytes(payload), hashlib.sha256).digest()
    return hmac.compare_digest(expected, provided)


def canonicalize_url(url: str) -> tuple[str, str | None]:
    """Split ``url`` into its signable form and its signature value.

    Every ``signature`` parameter is dropped; the remaining parameters keep
    the order they were received in and are re-encoded the way a browser
    serializes URLSearchParams.
    """
    parts = urlsplit(url)
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    signature = next((value for name, value in pairs if name == SIGNATURE_PARAM), None)
    remaining = [(name, value) for name, value in pairs if name != SIGNATURE_PARAM]
    canonical = urlunsplit(
        (parts.scheme, parts.netloc, parts.path, _form_encode(remaining), "")
    )
    return canonical, signature


def now_ms() -> int:
    return int(time.time() * 1000)


def build_signed_url(
    base_url: str,
    key: str,
    params: dict[str, str],
    expires_in: int,
    secret: str | bytes,
    *,
    now: int | None = None,
) -> str:
    """Build a presigned ingest URL for ``key``.

    ``expires`` is written first as an absolute millisecond timestamp, then
    every entry of ``params`` except ``key``; ``signature`` always comes last.
    """
    issued_at = now_ms() if now is None else now
    query: dict[str, str] = {EXPIRES_PARAM: str(issued_at + expires_in * 1000)}
    for name, value in params.items():
        if name != "key":
            query[name] = value

    unsigned_url = f"{base_url.rstrip('/')}/{quote(key)}?{_form_encode(list(query.items()))}"
    canonical, _ = canonicalize_url(unsigned_url)
    signature = sign_payload(canonical, secret)
    separator = "&" if urlsplit(canonical).query else "?"
    return f"{canonical}{separator}{_form_encode([(SIGNATURE_PARAM, signature)])}"


def verify_signed_url(url: str, secret: str | bytes, *, now: int | None = None) -> bool:
    """Verify a presigned URL as received; fails closed.

    A URL is rejected when its signature is missing or wrong, or when its
    ``expires`` timestamp has passed.
    """
    canonical, signature = canonicalize_url(url)
    if signature is None or not verify_signature(canonical, secret, signature):
        return False

    expires = dict(parse_qsl(urlsplit(canonical).query, keep_blank_values=True)).get(
        EXPIRES_PARAM
    )
    if expires is None:
        return True
    try:
        expires_at = int(expires)
    except ValueError:
        return False
    current = now_ms() if now is None else now
    if current > expires_at:
        logger.info("Presigned URL expired at %s", expires_at)
        return False
    return True


def generate_file_key() -> str:
    return "".join(secrets.choice(_FILE_KEY_ALPHABET) for _ in range(_FILE_KEY_LENGTH))
