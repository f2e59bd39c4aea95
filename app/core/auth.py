from dataclasses import dataclass

from starlette.requests import Request

from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    name: str
    email: str


async def get_current_user(request: Request) -> AuthUser:
    # Single-user deployment: every request acts as the configured default user.
    settings = get_settings()
    user = AuthUser(
        sub=settings.default_user_id,
        name=settings.default_user_name,
        email=settings.default_user_email,
    )
    request.state.user_id = user.sub
    return user
