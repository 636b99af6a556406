"""HMAC signing and freshness window."""

from __future__ import annotations

import pytest

from app.jobs.errors import SignatureExpiredError, SignatureInvalidError
from app.webhooks.signing import SIGNATURE_HEADER, SIGNATURE_TTL_SECONDS, TIMESTAMP_HEADER, require_valid_signature, sign, signature_headers, verify

SECRET = "shared-secret"
BODY = b'{"jobId":"job-1","status":"completed"}'
SIGNED_AT = 1_760_000_000


def test_sign_is_deterministic_for_timestamp() -> None:
  first = sign(BODY, SECRET, timestamp=SIGNED_AT)
  second = sign(BODY.decode(), SECRET, timestamp=SIGNED_AT)
  assert first == second
  assert len(first.signature) == 64
  assert first.timestamp == SIGNED_AT


def test_sign_rejects_empty_secret() -> None:
  with pytest.raises(ValueError):
    sign(BODY, "", timestamp=SIGNED_AT)


def test_signature_accepted_at_119_seconds() -> None:
  signed = sign(BODY, SECRET, timestamp=SIGNED_AT)
  check = verify(BODY, signed.signature, str(signed.timestamp), SECRET, now=SIGNED_AT + 119)
  assert check.valid is True
  require_valid_signature(BODY, signed.signature, signed.timestamp, SECRET, now=SIGNED_AT + 119)


def test_signature_accepted_at_exact_ttl() -> None:
  signed = sign(BODY, SECRET, timestamp=SIGNED_AT)
  assert verify(BODY, signed.signature, signed.timestamp, SECRET, now=SIGNED_AT + SIGNATURE_TTL_SECONDS).valid is True


def test_signature_rejected_at_121_seconds() -> None:
  signed = sign(BODY, SECRET, timestamp=SIGNED_AT)
  check = verify(BODY, signed.signature, signed.timestamp, SECRET, now=SIGNED_AT + 121)
  assert check.valid is False
  assert check.reason == "signature expired"
  with pytest.raises(SignatureExpiredError):
    require_valid_signature(BODY, signed.signature, signed.timestamp, SECRET, now=SIGNED_AT + 121)


def test_future_timestamp_is_rejected() -> None:
  signed = sign(BODY, SECRET, timestamp=SIGNED_AT)
  check = verify(BODY, signed.signature, signed.timestamp, SECRET, now=SIGNED_AT - 5)
  assert check.reason == "timestamp in the future"
  with pytest.raises(SignatureExpiredError):
    require_valid_signature(BODY, signed.signature, signed.timestamp, SECRET, now=SIGNED_AT - 5)


def test_length_mismatch_is_rejected() -> None:
  signed = sign(BODY, SECRET, timestamp=SIGNED_AT)
  check = verify(BODY, signed.signature[:-2], signed.timestamp, SECRET, now=SIGNED_AT)
  assert check.valid is False
  assert check.reason == "signature length mismatch"


def test_tampered_body_is_rejected() -> None:
  signed = sign(BODY, SECRET, timestamp=SIGNED_AT)
  tampered = BODY.replace(b"completed", b"failed")
  with pytest.raises(SignatureInvalidError):
    require_valid_signature(tampered, signed.signature, signed.timestamp, SECRET, now=SIGNED_AT)


def test_wrong_secret_is_rejected() -> None:
  signed = sign(BODY, "other-secret", timestamp=SIGNED_AT)
  assert verify(BODY, signed.signature, signed.timestamp, SECRET, now=SIGNED_AT).reason == "signature mismatch"


def test_timestamp_is_part_of_the_signed_message() -> None:
  signed = sign(BODY, SECRET, timestamp=SIGNED_AT)
  # Replaying the signature with a refreshed timestamp must fail.
  assert verify(BODY, signed.signature, SIGNED_AT + 10, SECRET, now=SIGNED_AT + 10).valid is False


@pytest.mark.parametrize(("signature", "timestamp", "reason"), [(None, "1", "missing signature headers"), ("abc", None, "missing signature headers"), ("abc", "", "missing signature headers"), ("abc", "soon", "malformed timestamp")])
def test_malformed_headers(signature: str | None, timestamp: str | None, reason: str) -> None:
  check = verify(BODY, signature, timestamp, SECRET, now=SIGNED_AT)
  assert check.valid is False
  assert check.reason == reason


def test_uppercase_hex_signature_is_accepted() -> None:
  signed = sign(BODY, SECRET, timestamp=SIGNED_AT)
  assert verify(BODY, signed.signature.upper(), signed.timestamp, SECRET, now=SIGNED_AT).valid is True


def test_signature_headers_round_trip() -> None:
  headers = signature_headers(BODY, SECRET, timestamp=SIGNED_AT)
  assert set(headers) == {SIGNATURE_HEADER, TIMESTAMP_HEADER}
  assert verify(BODY, headers[SIGNATURE_HEADER], headers[TIMESTAMP_HEADER], SECRET, now=SIGNED_AT + 1).valid is True


def test_non_ascii_signature_is_rejected_not_raised() -> None:
  # Same length as a hex digest, but latin-1 characters only.
  check = verify(BODY, "\xe9" * 64, SIGNED_AT, SECRET, now=SIGNED_AT)
  assert check.valid is False
  with pytest.raises(SignatureInvalidError):
    require_valid_signature(BODY, "\xe9" * 64, SIGNED_AT, SECRET, now=SIGNED_AT)
