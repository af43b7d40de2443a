import sys

from conftest import ROOT
from storefront.service.runtime import get_runtime

sys.path.insert(0, str(ROOT / "scripts"))

from bootstrap_admin import bootstrap_admin  # noqa: E402


async def test_creates_admin():
    runtime = get_runtime()

    result = await bootstrap_admin(runtime, "boss@example.com", "pass1234", "Boss", "0912345678")

    assert result["status"] == "created"
    user = runtime.store.get_user_by_account("boss@example.com")
    assert user.is_admin
    assert runtime.auth.verify_password(user, "pass1234")


async def test_promotes_existing_user():
    runtime = get_runtime()
    user = await runtime.auth.signup("member@example.com", "pass1234", "Member", "0912345678")

    result = await bootstrap_admin(runtime, "member@example.com", "ignored", "M", "0912345678")

    assert result == {"user_id": user.id, "account": "member@example.com", "status": "promoted"}
    assert runtime.store.get_user(user.id).is_admin


async def test_already_admin_is_noop():
    runtime = get_runtime()
    await bootstrap_admin(runtime, "boss@example.com", "pass1234", "Boss", "0912345678")

    result = await bootstrap_admin(runtime, "boss@example.com", "pass1234", "Boss", "0912345678")

    assert result["status"] == "already_admin"


async def test_dry_run_changes_nothing():
    runtime = get_runtime()

    result = await bootstrap_admin(
        runtime, "boss@example.com", "pass1234", "Boss", "0912345678", dry_run=True
    )

    assert result["status"] == "dry_run"
    assert runtime.store.get_user_by_account("boss@example.com") is None
