from fastapi import Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from flowmachine import config
from flowmachine.core.exceptions import AuthenticationError

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
bearer_scheme = HTTPBearer(auto_error=False)


async def verify_api_key(api_key: str | None = Security(api_key_header)):
    if api_key != config.API_KEY:
        raise AuthenticationError("Invalid API key")
    return api_key


async def bearer_token(
    credentials: HTTPAuthorizationCredentials | None = Security(bearer_scheme),
) -> str | None:
    """The bearer token, if any. Validation happens against the target resource."""
    return credentials.credentials if credentials else None
