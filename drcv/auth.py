from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Query, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from .config import Settings

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


def issue_admin_token(settings: Settings, subject: str = "admin", expires_in: timedelta = timedelta(hours=12)) -> str:
    expire = datetime.now(timezone.utc) + expires_in
    return jwt.encode({"sub": subject, "exp": expire}, settings.ADMIN_SECRET_KEY, algorithm=settings.ALGORITHM)


class AdminAuthHandler:
    """
    Bearer-token guard for the admin surface. A no-op unless
    ADMIN_SECRET_KEY is configured.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def __call__(
        self,
        token: Optional[str] = Depends(oauth2_scheme),
        access_token: Optional[str] = Query(default=None),
    ) -> Optional[str]:
        if not self.settings.ADMIN_SECRET_KEY:
            return None

        credentials_exception = HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
        # EventSource cannot set headers, so the feed passes the token in the query
        token = token or access_token
        if not token:
            raise credentials_exception
        try:
            payload = jwt.decode(
                token, self.settings.ADMIN_SECRET_KEY, algorithms=[self.settings.ALGORITHM]
            )
            subject: str = payload.get("sub")
            if subject is None:
                raise credentials_exception
            return subject
        except JWTError:
            raise credentials_exception
