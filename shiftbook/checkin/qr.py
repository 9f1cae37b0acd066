"""Signed job QR codes for check-in.

Payload (version 2), serialized as compact JSON:

    {"job_id", "owner_id", "secret_key", "created_at", "signature", "version": 2}

``signature`` is HMAC-SHA256 (hex) under the server secret over the compact
JSON of the first four fields in that order. ``secret_key`` is 16 random
bytes (hex) stored with the job; issuing a new QR replaces it, so older
codes stop validating once the caller passes the stored key.
"""

import base64
import hashlib
import hmac
import io
import json
import logging
import secrets
from datetime import datetime, timezone
from typing import Any

import qrcode
from pydantic import ValidationError
from qrcode.constants import ERROR_CORRECT_M
from qrcode.image.pil import PilImage

from shiftbook.core.config import CheckinConfig
from shiftbook.core.errors import ConfigurationError
from shiftbook.core.schemas import ErrorCode, GeneratedQR, JobQRPayload, QRValidationResult

logger = logging.getLogger(__name__)

PAYLOAD_VERSION = 2
SECRET_KEY_BYTES = 16
MIN_SECRET_LENGTH = 16

DEV_SECRET = "shiftbook-dev-only-qr-secret"

# Values that must never sign production QR codes.
_PLACEHOLDER_SECRETS = frozenset({
    "changeme",
    "secret",
    "default-secret-change-in-production",
    DEV_SECRET,
})


def resolve_signing_secret(config: CheckinConfig) -> str:
    """Pick the HMAC secret for QR signing.

    Raises:
        ConfigurationError: in production when the secret is missing, too
            short, or a known placeholder.
    """
    secret = (config.qr_secret or "").strip()
    if config.environment == "production":
        if not secret:
            msg = "QR signing secret is not configured (set SHIFTBOOK_QR_SECRET)"
            raise ConfigurationError(msg)
        if secret.lower() in _PLACEHOLDER_SECRETS:
            msg = "QR signing secret is a placeholder value; configure a real secret"
            raise ConfigurationError(msg)
        if len(secret) < MIN_SECRET_LENGTH:
            msg = f"QR signing secret must be at least {MIN_SECRET_LENGTH} characters"
            raise ConfigurationError(msg)
        return secret
    if not secret:
        logger.warning(
            "No QR signing secret configured; using the development secret (%s environment)",
            config.environment,
        )
        return DEV_SECRET
    return secret


def canonical_json(fields: dict[str, Any]) -> str:
    return json.dumps(fields, separators=(",", ":"), ensure_ascii=False)


def compute_signature(secret: str, fields: dict[str, str]) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        canonical_json(fields).encode("utf-8", "surrogatepass"),
        hashlib.sha256,
    ).hexdigest()


def _timestamp(now: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a ``Z`` suffix."""
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def render_qr_png(data: str) -> bytes:
    qr = qrcode.QRCode(
        error_correction=ERROR_CORRECT_M,
        box_size=10,
        border=2,
        image_factory=PilImage,
    )
    qr.add_data(data)
    qr.make(fit=True)
    image = qr.make_image(fill_color="#1e293b", back_color="#ffffff")
    buf = io.BytesIO()
    image.save(buf)
    return buf.getvalue()


def png_data_url(png: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


def _invalid(error: str, code: ErrorCode) -> QRValidationResult:
    return QRValidationResult(valid=False, error=error, error_code=code)


class QRSigner:
    """Issues and verifies signed job QR payloads."""

    def __init__(self, secret: str) -> None:
        if not secret:
            msg = "QR signer needs a non-empty secret"
            raise ConfigurationError(msg)
        self._secret = secret

    @classmethod
    def from_config(cls, config: CheckinConfig) -> "QRSigner":
        return cls(resolve_signing_secret(config))

    def build_payload(
        self,
        job_id: str,
        owner_id: str,
        secret_key: str | None = None,
        now: datetime | None = None,
    ) -> JobQRPayload:
        fields = {
            "job_id": job_id,
            "owner_id": owner_id,
            "secret_key": secret_key or secrets.token_hex(SECRET_KEY_BYTES),
            "created_at": _timestamp(now or datetime.now(timezone.utc)),
        }
        return JobQRPayload(
            **fields,
            signature=compute_signature(self._secret, fields),
            version=PAYLOAD_VERSION,
        )

    def generate_job_qr(
        self,
        job_id: str,
        owner_id: str,
        now: datetime | None = None,
    ) -> GeneratedQR:
        """Create a fresh secret, sign the payload and render it as a PNG data URL."""
        payload = self.build_payload(job_id, owner_id, now=now)
        qr_data = canonical_json(payload.model_dump())
        return GeneratedQR(
            qr_data_url=png_data_url(render_qr_png(qr_data)),
            qr_data=qr_data,
            secret_key=payload.secret_key,
        )

    def validate_job_qr(
        self,
        qr_string: str,
        expected_secret_key: str | None = None,
    ) -> QRValidationResult:
        """Check a scanned QR string.

        Every signature or secret-key mismatch is reported as
        INVALID_SIGNATURE; unreadable or incomplete payloads as
        INVALID_FORMAT.
        """
        if not qr_string:
            return _invalid("Invalid QR code format", ErrorCode.INVALID_FORMAT)
        try:
            raw = json.loads(qr_string)
        except (json.JSONDecodeError, TypeError):
            return _invalid("Invalid QR code format", ErrorCode.INVALID_FORMAT)
        if not isinstance(raw, dict):
            return _invalid("Invalid QR code format", ErrorCode.INVALID_FORMAT)
        if raw.get("version") != PAYLOAD_VERSION or isinstance(raw.get("version"), bool):
            return _invalid(
                "Outdated QR format; ask the restaurant to issue a new code",
                ErrorCode.INVALID_FORMAT,
            )
        try:
            payload = JobQRPayload.model_validate(raw)
        except ValidationError:
            return _invalid("Invalid QR code format", ErrorCode.INVALID_FORMAT)

        expected = compute_signature(self._secret, payload.signed_fields())
        presented = payload.signature.encode("utf-8", "surrogatepass")
        if not hmac.compare_digest(expected.encode("ascii"), presented):
            logger.warning("QR signature mismatch for job '%s'", payload.job_id)
            return _invalid(
                "Invalid signature - QR code may be tampered",
                ErrorCode.INVALID_SIGNATURE,
            )
        if expected_secret_key is not None and not hmac.compare_digest(
            expected_secret_key.encode("utf-8"),
            payload.secret_key.encode("utf-8", "surrogatepass"),
        ):
            logger.warning("Superseded QR secret presented for job '%s'", payload.job_id)
            return _invalid(
                "Invalid signature - QR code may be tampered",
                ErrorCode.INVALID_SIGNATURE,
            )
        return QRValidationResult(valid=True, job_id=payload.job_id, owner_id=payload.owner_id)
