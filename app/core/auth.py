from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from app.core import config


def verify_token(authorization: str = Header(None)) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")

    token = authorization.split(" ", 1)[1]
    try:
        # Decodes and checks expiration/signature
        return jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or Expired Token")


def get_current_user(payload: dict = Depends(verify_token)) -> dict:
    """Authenticated caller: sub, role, email, name"""
    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Token has no subject")
    return payload


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    """Admin-only routes trust the identity provider's role claim"""
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Forbidden")
    return user
