import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before any import that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Rate limits fall back to the in-process bucket
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOGIN_RATE_LIMIT_PER_MINUTE", "1000")
os.environ.setdefault("SIGNUP_RATE_LIMIT_PER_MINUTE", "1000")
for _cloudinary_key in ("CLOUDINARY_NAME", "CLOUDINARY_KEY", "CLOUDINARY_SECRET"):
    os.environ[_cloudinary_key] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from storefront.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

ADMIN_ACCOUNT = "admin@example.com"
DEFAULT_PASSWORD = "pass1234"
DEFAULT_PHONE = "0912345678"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from storefront import app as app_module

    return TestClient(app_module.app)


def signup_and_login(client, account: str, password: str = DEFAULT_PASSWORD, name: str = "Tester"):
    """Create an account through the API and return (user_id, token)."""
    response = client.post(
        "/users",
        json={"account": account, "password": password, "name": name, "phone": DEFAULT_PHONE},
    )
    assert response.status_code == 201, response.text
    login = client.post("/users/login", json={"account": account, "password": password})
    assert login.status_code == 200, login.text
    result = login.json()["result"]
    return result["id"], result["token"]


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_token(client):
    _, token = signup_and_login(client, "shopper@example.com")
    return token


@pytest.fixture
def admin_token(client):
    user_id, token = signup_and_login(client, ADMIN_ACCOUNT, name="Admin")
    # role is read from the stored user on every request
    get_runtime().store.update_user(user_id, role="admin")
    return token


def create_product_via_api(
    client,
    admin_token: str,
    name: str = "Mug",
    price: float = 120,
    sell: bool = True,
    category: str = "classic",
):
    response = client.post(
        "/products",
        headers=bearer(admin_token),
        data={
            "name": name,
            "price": str(price),
            "description": f"{name} description",
            "category": category,
            "sell": "true" if sell else "false",
        },
        files=[("images", (f"{name}.png", PNG_BYTES, "image/png"))],
    )
    assert response.status_code == 201, response.text
    return response.json()["result"]


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
