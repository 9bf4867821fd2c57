from __future__ import annotations

import logging

import jwt
from fastapi import Header, HTTPException, status

from ..config import allow_unverified_tokens, get_clerk_jwt_key, load_webhook_config
from ..services.signature_verifier import SignatureVerifier


logger = logging.getLogger(__name__)


def get_current_clerk_id(token: str | None = Header(default=None)) -> str:
    """token 헤더의 Clerk 세션 JWT 에서 호출자의 clerk_id 를 꺼낸다.

    - CLERK_JWT_KEY(PEM 공개키)가 있으면 RS256 서명을 검증한다.
    - 없으면 CLERK_ALLOW_UNVERIFIED_TOKENS 가 켜진 경우에만 서명 검증 없이 디코드한다.
      둘 다 없으면 모든 토큰을 거부한다.
    """

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authorized. Please login again",
        )

    key = get_clerk_jwt_key()
    if key is None and not allow_unverified_tokens():
        logger.error("CLERK_JWT_KEY is not configured, rejecting session token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token"
        )

    try:
        if key:
            claims = jwt.decode(token, key, algorithms=["RS256"])
        else:
            claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as exc:
        logger.info("rejected session token: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token"
        ) from exc

    clerk_id = claims.get("clerkId") or claims.get("sub")
    if not isinstance(clerk_id, str) or not clerk_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token"
        )
    return clerk_id


def get_signature_verifier() -> SignatureVerifier:
    try:
        config = load_webhook_config()
    except RuntimeError as exc:
        logger.error("webhook secret is not configured: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured",
        ) from exc
    return SignatureVerifier(config.secret, tolerance_seconds=config.tolerance_seconds)
