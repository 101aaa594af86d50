import time, jwt
from typing import Dict, Optional
from fastapi import Header, HTTPException
from common.settings import settings

ALGO = "HS256"
LEDGER_AUDIENCE = "ledger"

def _mint(claims: Dict, ttl_seconds: int) -> str:
    now = int(time.time())
    payload = {"iss": settings.jwt_issuer, "iat": now, "exp": now + ttl_seconds, **claims}
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

# End-user tokens come from the identity provider; minting lives here for tooling and tests.
def mint_user_jwt(sub: str, claims: Optional[Dict] = None) -> str:
    return _mint({"sub": sub, **(claims or {})}, settings.jwt_ttl_seconds)

def mint_internal_jwt(aud: str = LEDGER_AUDIENCE, claims: Optional[Dict] = None) -> str:
    """Short-lived token for the job orchestrator and payment webhooks."""
    return _mint({"aud": aud, **(claims or {})}, settings.internal_jwt_ttl_seconds)

def verify_token(token: str, audience: Optional[str] = None) -> Dict:
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGO],
        audience=audience,
        issuer=settings.jwt_issuer,
        options={"require": ["exp", "iat", "iss"]},
    )

def _claims(authorization: Optional[str], audience: Optional[str] = None) -> Dict:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme != "Bearer" or not token:
        raise HTTPException(401, "missing bearer token")
    try:
        return verify_token(token, audience=audience)
    except jwt.PyJWTError as e:
        raise HTTPException(401, f"invalid token: {e}")

async def internal_auth(authorization: Optional[str] = Header(None)) -> Dict:
    """Only callers holding a ledger-audience token may move credits."""
    return _claims(authorization, audience=LEDGER_AUDIENCE)

async def user_auth(authorization: Optional[str] = Header(None)) -> str:
    """Resolve the account id from the identity provider's token."""
    claims = _claims(authorization)
    if not claims.get("sub"):
        raise HTTPException(401, "token has no subject")
    return claims["sub"]
