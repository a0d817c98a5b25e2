from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, status
import httpx

from config import settings


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: str


async def _fetch_user(access_token: str) -> dict:
    headers = {
        "Authorization": f"Bearer {access_token}",
        "apikey": settings.supabase_service_role_key,
    }
    url = f"{settings.supabase_url}/auth/v1/user"
    async with httpx.AsyncClient(timeout=10) as client:
        response = await client.get(url, headers=headers)
    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid auth token"
        )
    return response.json()


async def get_current_user(
    authorization: str | None = Header(default=None, convert_underscores=False),
) -> CurrentUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing auth token"
        )
    token = authorization.split(" ", 1)[1]
    user = await _fetch_user(token)
    user_id = user.get("id")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user profile"
        )
    return CurrentUser(id=user_id, email=(user.get("email") or "").lower())


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.email or user.email not in settings.admin_emails:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user
