from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from boilerhub.config import Settings
from boilerhub.logging import get_logger
from boilerhub.storage.models import User

logger = get_logger(__name__)

CLAIMS_VERSION = 1

ClaimsT = TypeVar("ClaimsT", bound="_BaseClaims")


class _BaseClaims(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, strict=True)

    ver: Literal[1]
    iss: str
    aud: str
    sub: str
    sid: str
    jti: str
    iat: int
    exp: int


class AccessClaims(_BaseClaims):
    token_type: Literal["access"]
    email: str
    role: str


class RefreshClaims(_BaseClaims):
    token_type: Literal["refresh"]


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str
    access_expires_at: datetime
    refresh_expires_at: datetime


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


def _encode_jwt(payload: dict[str, Any], secret: str) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_sign(secret, signing_input)}"


def _decode_jwt(token: str, secret: str) -> Optional[dict[str, Any]]:
    """Return the payload of an HS256 token signed with ``secret``, else None.

    Only the header algorithm and the signature are checked here; claim
    validation happens against the typed claim models.
    """
    if not token or token.count(".") != 2:
        return None
    header_b64, payload_b64, sig_b64 = token.split(".")

    # Pin the algorithm to block alg=none and algorithm confusion
    try:
        header = json.loads(_decode_segment(header_b64))
    except (ValueError, binascii.Error):
        logger.warning("jwt_header_decode_failed")
        return None
    if not isinstance(header, dict) or header.get("alg") != "HS256":
        logger.warning("jwt_invalid_algorithm")
        return None

    expected_sig = _sign(secret, f"{header_b64}.{payload_b64}")
    if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
        return None
    try:
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, binascii.Error) as exc:
        logger.warning("jwt_payload_decode_failed", error=str(exc))
        return None
    return payload if isinstance(payload, dict) else None


class TokenIssuer:
    """Mints and verifies access/refresh token pairs.

    Access and refresh tokens are signed with different secrets, so neither
    can be replayed as the other even before the ``token_type`` check.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
        leeway_seconds: int = 0,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self._leeway = leeway_seconds

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    @property
    def refresh_ttl_seconds(self) -> int:
        return self.settings.refresh_token_ttl_minutes * 60

    def issue(self, user: User) -> TokenPair:
        now = int(self._clock())
        session_id = str(uuid.uuid4())
        access = AccessClaims(
            ver=CLAIMS_VERSION,
            token_type="access",
            iss=self.settings.jwt_issuer,
            aud=self.settings.jwt_audience,
            sub=user.id,
            email=user.email,
            role=user.role,
            sid=session_id,
            jti=str(uuid.uuid4()),
            iat=now,
            exp=now + self.access_ttl_seconds,
        )
        refresh = RefreshClaims(
            ver=CLAIMS_VERSION,
            token_type="refresh",
            iss=self.settings.jwt_issuer,
            aud=self.settings.jwt_audience,
            sub=user.id,
            sid=session_id,
            jti=str(uuid.uuid4()),
            iat=now,
            exp=now + self.refresh_ttl_seconds,
        )
        return TokenPair(
            access_token=_encode_jwt(access.model_dump(), self.settings.jwt_secret),
            refresh_token=_encode_jwt(refresh.model_dump(), self.settings.jwt_refresh_secret),
            session_id=session_id,
            access_expires_at=datetime.fromtimestamp(access.exp, tz=timezone.utc),
            refresh_expires_at=datetime.fromtimestamp(refresh.exp, tz=timezone.utc),
        )

    def decode_access(self, token: str) -> Optional[AccessClaims]:
        return self._decode(token, self.settings.jwt_secret, AccessClaims)

    def decode_refresh(self, token: str) -> Optional[RefreshClaims]:
        return self._decode(token, self.settings.jwt_refresh_secret, RefreshClaims)

    def _decode(
        self, token: str, secret: str, model: Type[ClaimsT]
    ) -> Optional[ClaimsT]:
        payload = _decode_jwt(token, secret)
        if payload is None:
            return None
        try:
            claims = model.model_validate(payload)
        except PydanticValidationError:
            logger.warning("jwt_claims_rejected", model=model.__name__)
            return None
        if claims.iss != self.settings.jwt_issuer or claims.aud != self.settings.jwt_audience:
            return None
        if claims.exp <= self._clock() - self._leeway:
            return None
        return claims
