"""HMAC-SHA256 signing for provider dispatches and callbacks.

The signed message is the decimal Unix timestamp followed by the raw body.
Both directions use the same secret and the same freshness window.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass

from app.jobs.errors import SignatureExpiredError, SignatureInvalidError

SIGNATURE_TTL_SECONDS = 120
SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"
NONCE_HEADER = "X-Nonce"


@dataclass(frozen=True)
class SignedPayload:
  signature: str
  timestamp: int


@dataclass(frozen=True)
class SignatureCheck:
  valid: bool
  reason: str | None = None


def _as_bytes(payload: str | bytes) -> bytes:
  if isinstance(payload, bytes):
    return payload
  return payload.encode("utf-8")


def _digest(payload: bytes, secret: str, timestamp: int) -> str:
  message = str(timestamp).encode("ascii") + payload
  return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign(payload: str | bytes, secret: str, *, timestamp: int | None = None) -> SignedPayload:
  """Sign a body with the shared secret at the given (or current) second."""
  if not secret:
    raise ValueError("Webhook secret must not be empty.")
  ts = int(time.time()) if timestamp is None else int(timestamp)
  return SignedPayload(signature=_digest(_as_bytes(payload), secret, ts), timestamp=ts)


def verify(payload: str | bytes, signature: str | None, timestamp: str | int | None, secret: str, *, now: float | None = None) -> SignatureCheck:
  """Check a signature without raising."""
  if not signature or timestamp is None or timestamp == "":
    return SignatureCheck(valid=False, reason="missing signature headers")

  try:
    ts = int(timestamp)
  except (TypeError, ValueError):
    return SignatureCheck(valid=False, reason="malformed timestamp")

  # Freshness is checked before any HMAC work.
  current = int(time.time() if now is None else now)
  age = current - ts
  if age < 0:
    return SignatureCheck(valid=False, reason="timestamp in the future")
  if age > SIGNATURE_TTL_SECONDS:
    return SignatureCheck(valid=False, reason="signature expired")

  expected = _digest(_as_bytes(payload), secret, ts).encode("ascii")
  # Header values arrive latin-1 decoded; compare bytes so any character is safe.
  provided = signature.strip().lower().encode("utf-8")
  if len(provided) != len(expected):
    return SignatureCheck(valid=False, reason="signature length mismatch")
  if not hmac.compare_digest(provided, expected):
    return SignatureCheck(valid=False, reason="signature mismatch")
  return SignatureCheck(valid=True)


def require_valid_signature(payload: str | bytes, signature: str | None, timestamp: str | int | None, secret: str, *, now: float | None = None) -> None:
  """Raise when the signature is not valid for the payload."""
  check = verify(payload, signature, timestamp, secret, now=now)
  if check.valid:
    return
  if check.reason in {"signature expired", "timestamp in the future"}:
    raise SignatureExpiredError(check.reason)
  raise SignatureInvalidError(check.reason or "invalid signature")


def signature_headers(payload: str | bytes, secret: str, *, timestamp: int | None = None) -> dict[str, str]:
  """Build the outbound signature headers for a body."""
  signed = sign(payload, secret, timestamp=timestamp)
  return {SIGNATURE_HEADER: signed.signature, TIMESTAMP_HEADER: str(signed.timestamp)}
