from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
import os

from database import get_db

SECRET_KEY = os.environ.get('JWT_SECRET', 'hr-attendance-dev-secret')
ALGORITHM = "HS256"

# الأدوار المسموح لها بتصحيح الحضور
CORRECTION_ROLES = ("supervisor", "hr", "admin")

security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db=Depends(get_db)
):
    """التحقق من التوكن والجلسة"""
    try:
        payload = jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    # التحقق من أن الجلسة لم تُبطل
    token_id = payload.get("jti")
    if token_id:
        revoked = await db.revoked_tokens.find_one({"token_id": token_id})
        if revoked:
            raise HTTPException(status_code=401, detail="Session has been revoked")

    return payload


def require_roles(*roles):
    async def checker(user=Depends(get_current_user)):
        if user.get('role') not in roles:
            raise HTTPException(status_code=403, detail="Access denied for your role")
        return user
    return checker
