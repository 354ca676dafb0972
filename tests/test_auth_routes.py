import asyncio

import pytest
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient

from access_service import auth_services
from access_service.main import register_error_handlers
from access_service.services import resolver

from conftest import DEFAULT_PASSWORD


async def login(client, email, password=DEFAULT_PASSWORD):
    return await client.post("/auth/login", json={"email": email, "password": password})


async def test_login_returns_token_and_principal(client, seeded, make_user):
    user_id = await make_user("agent", roles=["staff"])

    response = await login(client, "agent@isp.net")

    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["expires_in"] == 3600
    assert body["user"]["id"] == user_id
    assert body["user"]["roles"] == ["staff"]
    assert "tickets.view" in body["user"]["permissions"]
    assert "password" not in body["user"]
    assert "access_token=" in response.headers["set-cookie"]


async def test_login_failures_are_indistinguishable(client, make_user):
    await make_user("agent")
    await make_user("former", is_active=False)

    wrong_password = await login(client, "agent@isp.net", "nope-nope")
    inactive = await login(client, "former@isp.net")
    unknown = await login(client, "ghost@isp.net")

    assert wrong_password.status_code == inactive.status_code == unknown.status_code == 401
    assert wrong_password.json() == inactive.json() == unknown.json()


async def test_me_requires_token(client):
    response = await client.get("/auth/me")

    assert response.status_code == 401


async def test_me_with_bearer_header(client, seeded, make_user, auth_headers):
    user_id = await make_user("agent", roles=["customer"])

    response = await client.get("/auth/me", headers=auth_headers(user_id))

    assert response.status_code == 200
    assert response.json()["username"] == "agent"
    assert response.json()["roles"] == ["customer"]


async def test_me_with_cookie(client, make_user, token_service):
    user_id = await make_user("agent")
    client.cookies.set("access_token", token_service.issue(user_id))

    response = await client.get("/auth/me")

    assert response.status_code == 200
    assert response.json()["id"] == user_id


async def test_garbage_token_is_rejected(client):
    response = await client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401
    assert response.json()["code"] == "unauthenticated"


async def test_token_of_deactivated_user_is_rejected(client, make_user, auth_headers):
    user_id = await make_user("former", is_active=False)

    response = await client.get("/auth/me", headers=auth_headers(user_id))

    assert response.status_code == 401


async def test_register_then_login(client, seeded):
    response = await client.post("/auth/register", json={
        "username": "new_customer",
        "email": "new@isp.net",
        "full_name": "New Customer",
        "password": "secret123",
    })

    assert response.status_code == 201
    assert "password" not in response.json()
    logged_in = await login(client, "new@isp.net", "secret123")
    assert logged_in.json()["user"]["roles"] == ["customer"]


async def test_register_duplicate_email(client, make_user):
    await make_user("agent")

    response = await client.post("/auth/register", json={
        "username": "other",
        "email": "agent@isp.net",
        "full_name": "Other",
        "password": "secret123",
    })

    assert response.status_code == 409
    assert response.json()["code"] == "duplicate_name"


async def test_change_password(client, make_user, auth_headers):
    user_id = await make_user("agent")
    headers = auth_headers(user_id)

    rejected = await client.post("/auth/change-password", headers=headers,
                                 json={"current_password": "wrong", "new_password": "another1"})
    accepted = await client.post("/auth/change-password", headers=headers,
                                 json={"current_password": DEFAULT_PASSWORD, "new_password": "another1"})

    assert rejected.status_code == 400
    assert accepted.status_code == 200
    assert (await login(client, "agent@isp.net", "another1")).status_code == 200
    assert (await login(client, "agent@isp.net")).status_code == 401


async def test_logout_clears_cookie(client):
    response = await client.post("/auth/logout")

    assert response.status_code == 200
    assert "access_token" in response.headers.get("set-cookie", "")


async def test_slow_resolution_fails_closed(app, client, make_user, auth_headers, monkeypatch):
    user_id = await make_user("agent")

    async def slow_resolve(self, user_id):
        await asyncio.sleep(1)

    monkeypatch.setattr(resolver.PrincipalResolver, "resolve", slow_resolve)
    app.dependency_overrides[auth_services.get_resolve_timeout] = lambda: 0.01

    response = await client.get("/auth/me", headers=auth_headers(user_id))

    assert response.status_code == 401


@pytest.fixture
async def staff_client(app, seeded):
    area = FastAPI()
    register_error_handlers(area)
    area.dependency_overrides.update(app.dependency_overrides)

    @area.get("/staff-area")
    async def staff_area(principal=Depends(auth_services.require_role("admin", "staff"))):
        return {"username": principal.username}

    async with AsyncClient(transport=ASGITransport(app=area), base_url="http://testserver") as client:
        yield client


async def test_role_gate(staff_client, make_user, auth_headers):
    staff_id = await make_user("agent", roles=["staff"])
    customer_id = await make_user("buyer", roles=["customer"])

    allowed = await staff_client.get("/staff-area", headers=auth_headers(staff_id))
    denied = await staff_client.get("/staff-area", headers=auth_headers(customer_id))
    anonymous = await staff_client.get("/staff-area")

    assert allowed.status_code == 200
    assert allowed.json() == {"username": "agent"}
    assert denied.status_code == 403
    assert denied.json()["code"] == "insufficient_permissions"
    assert denied.json()["required_roles"] == ["admin", "staff"]
    assert anonymous.status_code == 401
    assert anonymous.json()["code"] == "unauthenticated"
