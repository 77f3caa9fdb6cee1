import pytest

from scripts.bootstrap_admin import bootstrap_admin
from warden.service.results import unwrap
from warden.storage.models import Role


@pytest.mark.asyncio
async def test_creates_admin(build_runtime):
    runtime = build_runtime()
    result = await bootstrap_admin("Warden", "password123")
    assert result["status"] == "created"
    assert runtime.credentials.get_user_by_username("warden").role is Role.ADMIN


@pytest.mark.asyncio
async def test_dry_run_changes_nothing(build_runtime):
    runtime = build_runtime()
    result = await bootstrap_admin("warden", "password123", dry_run=True)
    assert result == {"user_id": None, "username": "warden", "status": "dry_run"}
    assert runtime.credentials.get_user_by_username("warden") is None


@pytest.mark.asyncio
async def test_promotion_signs_out_existing_sessions(build_runtime):
    runtime = build_runtime()
    unwrap(await runtime.credentials.register("scout", "password123"))
    login = unwrap(await runtime.credentials.login("scout", "password123"))
    assert runtime.sessions.verify(login.token).role is Role.PLAYER

    result = await bootstrap_admin("scout", "unused-password")
    assert result["status"] == "promoted"
    assert result["sessions_revoked"] == 1
    assert runtime.sessions.verify(login.token) is None
    assert runtime.credentials.get_user_by_username("scout").role is Role.ADMIN

    again = await bootstrap_admin("scout", "unused-password")
    assert again["status"] == "already_admin"
