from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import os

# =========================
# CONFIG
# =========================

SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", 1440))

REVIEWER_ROLES = ("Reviewer", "Admin")

security = HTTPBearer()

# =========================
# TOKEN CREATE
# =========================

def create_token(data: dict, expires_minutes: int = EXPIRE_MINUTES):
    payload = data.copy()
    payload["exp"] = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)

# =========================
# TOKEN DECODE (LOW LEVEL)
# =========================

def decode_token(token: str):
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])

# =========================
# FASTAPI DEPENDENCIES
# =========================

def verify_token(
    credentials: HTTPAuthorizationCredentials = Depends(security)
):
    token = credentials.credentials

    try:
        payload = decode_token(token)
    except JWTError:
        raise HTTPException(
            status_code=401,
            detail="Invalid or expired token"
        )
    if not payload.get("id"):
        raise HTTPException(status_code=401, detail="Token has no subject")
    return payload   # {id, role, exp}


def require_reviewer(user=Depends(verify_token)):
    """Only expert reviewers (or admins) may resolve flagged images."""
    if user.get("role") not in REVIEWER_ROLES:
        raise HTTPException(403, "Reviewers only")
    return user
