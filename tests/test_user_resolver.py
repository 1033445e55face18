import asyncio

import httpx
import pytest

from app.core.config import Settings
from app.core.exceptions import UserDirectoryError
from app.models.user import User
from app.services.user_resolver import (
    DatabaseUserDirectory,
    SupabaseUserDirectory,
    UserResolver,
    build_user_directory,
)


class _RecordingDirectory:
    def __init__(self, user_id=None):
        self.user_id = user_id
        self.calls: list[str] = []

    async def find_user_id_by_email(self, email):
        self.calls.append(email)
        return self.user_id


def _supabase_transport(pages: dict[int, list[dict]], requests: list[httpx.Request]):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        page = int(request.url.params["page"])
        return httpx.Response(200, json={"users": pages.get(page, []), "aud": "authenticated"})

    return httpx.MockTransport(handler)


def test_explicit_user_id_wins_without_lookup():
    directory = _RecordingDirectory("from-email")
    resolver = UserResolver(directory)

    assert asyncio.run(resolver.resolve("explicit-id", "buyer@example.com")) == "explicit-id"
    assert directory.calls == []


def test_email_fallback_and_unresolvable():
    assert asyncio.run(UserResolver(_RecordingDirectory("u-1")).resolve(None, "a@example.com")) == "u-1"
    assert asyncio.run(UserResolver(_RecordingDirectory(None)).resolve(None, "a@example.com")) is None
    assert asyncio.run(UserResolver(_RecordingDirectory("u-1")).resolve(None, None)) is None


def test_database_directory_matches_case_insensitively(session_factory, add_rows):
    add_rows(User(id="u-db", email="Buyer@Example.com"))
    directory = DatabaseUserDirectory(session_factory)

    assert asyncio.run(directory.find_user_id_by_email(" buyer@example.COM ")) == "u-db"
    assert asyncio.run(directory.find_user_id_by_email("nobody@example.com")) is None


def test_supabase_directory_scans_pages_until_match():
    requests: list[httpx.Request] = []
    pages = {
        1: [{"id": "u-1", "email": "one@example.com"}, {"id": "u-2", "email": "two@example.com"}],
        2: [{"id": "u-3", "email": "Target@example.com"}, {"id": "u-4", "email": "four@example.com"}],
    }
    directory = SupabaseUserDirectory(
        "https://project.supabase.co/",
        "service-key",
        page_size=2,
        transport=_supabase_transport(pages, requests),
    )

    assert asyncio.run(directory.find_user_id_by_email("target@example.com")) == "u-3"
    assert [r.url.params["page"] for r in requests] == ["1", "2"]
    assert requests[0].url.path == "/auth/v1/admin/users"
    assert requests[0].headers["authorization"] == "Bearer service-key"
    assert requests[0].headers["apikey"] == "service-key"


def test_supabase_directory_stops_on_short_page():
    requests: list[httpx.Request] = []
    pages = {1: [{"id": "u-1", "email": "one@example.com"}]}
    directory = SupabaseUserDirectory(
        "https://project.supabase.co",
        "service-key",
        page_size=2,
        transport=_supabase_transport(pages, requests),
    )

    assert asyncio.run(directory.find_user_id_by_email("missing@example.com")) is None
    assert len(requests) == 1


def test_supabase_directory_respects_page_cap():
    requests: list[httpx.Request] = []
    full_page = [{"id": "u", "email": "x@example.com"}]
    directory = SupabaseUserDirectory(
        "https://project.supabase.co",
        "service-key",
        page_size=1,
        max_pages=3,
        transport=_supabase_transport({1: full_page, 2: full_page, 3: full_page, 4: full_page}, requests),
    )

    assert asyncio.run(directory.find_user_id_by_email("missing@example.com")) is None
    assert len(requests) == 3


def test_supabase_directory_failure_raises():
    transport = httpx.MockTransport(lambda request: httpx.Response(500, json={"msg": "boom"}))
    directory = SupabaseUserDirectory("https://project.supabase.co", "service-key", transport=transport)

    with pytest.raises(UserDirectoryError):
        asyncio.run(directory.find_user_id_by_email("a@example.com"))


def test_build_user_directory_selects_backend(session_factory):
    assert isinstance(
        build_user_directory(Settings(USER_DIRECTORY_BACKEND="auto", SUPABASE_URL=""), session_factory),
        DatabaseUserDirectory,
    )
    assert isinstance(
        build_user_directory(
            Settings(USER_DIRECTORY_BACKEND="auto", SUPABASE_URL="https://p.supabase.co", SUPABASE_SERVICE_ROLE_KEY="k"),
            session_factory,
        ),
        SupabaseUserDirectory,
    )
    with pytest.raises(ValueError):
        build_user_directory(Settings(USER_DIRECTORY_BACKEND="supabase", SUPABASE_URL=""), session_factory)
    with pytest.raises(ValueError):
        build_user_directory(Settings(USER_DIRECTORY_BACKEND="ldap"), session_factory)
