import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from sitswap.infra.auth import decode_access_token
from sitswap.infra.logging import update_log_context
from sitswap.settings import settings

bearer_security = HTTPBearer(auto_error=False)


def require_user_id(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_security),
) -> str:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    app_settings = getattr(request.app.state, "app_settings", None) or settings
    try:
        claims = decode_access_token(credentials.credentials, app_settings.auth_secret_key)
    except jwt.InvalidTokenError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    request.state.current_user_id = str(user_id)
    update_log_context(user_id=str(user_id))
    return str(user_id)
