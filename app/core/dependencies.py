from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from app.core.security import decode_token

# Tokens are minted by the external auth service; this engine only verifies them.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token")


async def get_current_identity(token: str = Depends(oauth2_scheme)) -> str:
    """Resolve the caller's handle from the bearer token's subject"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = decode_token(token)
        handle: str = payload.get("sub")
        token_type: str = payload.get("type")

        if not handle or token_type != "access":
            raise credentials_exception

    except HTTPException:
        raise credentials_exception

    return handle
