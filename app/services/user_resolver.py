import logging
from typing import Optional, Protocol

import httpx
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from app.core.config import Settings
from app.core.exceptions import UserDirectoryError
from app.models.user import User

logger = logging.getLogger(__name__)


def _normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


class UserDirectory(Protocol):
    async def find_user_id_by_email(self, email: str) -> Optional[str]:
        ...


class SupabaseUserDirectory:
    """Email lookup by scanning the Supabase Auth admin user listing.

    The admin API has no email filter, so this walks every page: O(total
    users) per lookup. Fine for a small user base; switch to the database
    backend once that stops being true.
    """

    def __init__(
        self,
        base_url: str,
        service_role_key: str,
        page_size: int = 1000,
        max_pages: int = 50,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_role_key = service_role_key
        self.page_size = max(1, page_size)
        self.max_pages = max(1, max_pages)
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self.service_role_key,
            "Authorization": f"Bearer {self.service_role_key}",
        }

    async def find_user_id_by_email(self, email: str) -> Optional[str]:
        target = _normalize_email(email)
        if not target:
            return None

        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=httpx.Timeout(self.timeout),
            transport=self.transport,
        ) as client:
            for page in range(1, self.max_pages + 1):
                try:
                    response = await client.get(
                        "/auth/v1/admin/users",
                        params={"page": page, "per_page": self.page_size},
                    )
                    response.raise_for_status()
                    payload = response.json()
                except httpx.HTTPStatusError as e:
                    logger.error(f"Supabase user listing failed with status {e.response.status_code}")
                    raise UserDirectoryError("Supabase user listing failed") from e
                except (httpx.RequestError, ValueError) as e:
                    logger.error(f"Supabase user listing error: {e}")
                    raise UserDirectoryError("Supabase user listing unavailable") from e

                users = payload.get("users", []) if isinstance(payload, dict) else []
                for user in users:
                    if _normalize_email(user.get("email")) == target:
                        return str(user.get("id"))

                if len(users) < self.page_size:
                    return None

        logger.warning(
            f"Stopped scanning Supabase users after {self.max_pages} pages without a match; "
            "the directory scan does not scale to this user base"
        )
        return None


class DatabaseUserDirectory:
    """Indexed email lookup against the local ``users`` mirror table."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def find_user_id_by_email(self, email: str) -> Optional[str]:
        target = _normalize_email(email)
        if not target:
            return None
        try:
            async with self.session_factory() as session:
                user = (
                    await session.exec(
                        select(User)
                        .where(func.lower(User.email) == target)
                        .order_by(User.created_at.asc())
                    )
                ).first()
        except SQLAlchemyError as e:
            logger.error(f"User lookup failed: {e}")
            raise UserDirectoryError("User lookup failed") from e
        return user.id if user else None


class UserResolver:
    def __init__(self, directory: UserDirectory):
        self.directory = directory

    async def resolve(self, explicit_user_id: Optional[str] = None, email: Optional[str] = None) -> Optional[str]:
        if explicit_user_id:
            return str(explicit_user_id)

        if email:
            logger.info(f"Resolving user by email {email}")
            user_id = await self.directory.find_user_id_by_email(email)
            if user_id:
                logger.info(f"Resolved user {user_id} for email {email}")
                return user_id

        return None


def build_user_directory(settings: Settings, session_factory) -> UserDirectory:
    backend = settings.USER_DIRECTORY_BACKEND
    if backend == "auto":
        backend = "supabase" if settings.supabase_configured else "database"

    if backend == "supabase":
        if not settings.supabase_configured:
            raise ValueError("USER_DIRECTORY_BACKEND=supabase requires SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
        return SupabaseUserDirectory(
            settings.SUPABASE_URL,
            settings.SUPABASE_SERVICE_ROLE_KEY,
            page_size=settings.SUPABASE_ADMIN_PAGE_SIZE,
            max_pages=settings.SUPABASE_ADMIN_MAX_PAGES,
            timeout=settings.SUPABASE_TIMEOUT_SECONDS,
        )
    if backend == "database":
        return DatabaseUserDirectory(session_factory)

    raise ValueError(f"Unknown USER_DIRECTORY_BACKEND: {backend}")
