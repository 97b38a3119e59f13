"""Authentication endpoint tests."""

import pytest
from httpx import AsyncClient

pytestmark = pytest.mark.asyncio

PASSWORD = "correct-horse-9"


async def _register(client: AsyncClient, email: str = "ada@example.com") -> dict:
    response = await client.post("/api/v1/auth/register", json={"email": email, "password": PASSWORD})
    assert response.status_code == 201
    return response.json()


class TestRegister:
    async def test_register_returns_tokens(self, client: AsyncClient):
        data = await _register(client, "Ada@Example.com")
        assert data["token_type"] == "bearer"
        assert data["access_token"]
        assert data["refresh_token"]
        assert data["user"]["email"] == "ada@example.com"

    async def test_register_opens_ledger(self, client: AsyncClient):
        data = await _register(client)
        headers = {"Authorization": f"Bearer {data['access_token']}"}
        response = await client.get("/api/v1/bets/profile", headers=headers)
        assert response.status_code == 200
        assert response.json()["points"] == 0
        assert response.json()["streak"] == 0

    async def test_duplicate_email(self, client: AsyncClient):
        await _register(client)
        response = await client.post("/api/v1/auth/register", json={"email": "ada@example.com", "password": PASSWORD})
        assert response.status_code == 409
        assert response.json() == {"detail": "Email already registered", "error": "DuplicateError"}

    async def test_weak_password(self, client: AsyncClient):
        response = await client.post("/api/v1/auth/register", json={"email": "ada@example.com", "password": "abc"})
        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    async def test_invalid_email_is_422(self, client: AsyncClient):
        response = await client.post("/api/v1/auth/register", json={"email": "not-an-email", "password": PASSWORD})
        assert response.status_code == 422
        assert response.json()["detail"] == "Validation error"


class TestSessions:
    async def test_login_and_me(self, client: AsyncClient):
        await _register(client)
        response = await client.post("/api/v1/auth/login", json={"email": "ada@example.com", "password": PASSWORD})
        assert response.status_code == 200
        token = response.json()["access_token"]

        me = await client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.status_code == 200
        assert me.json()["login_count"] == 2

    async def test_wrong_password(self, client: AsyncClient):
        await _register(client)
        response = await client.post("/api/v1/auth/login", json={"email": "ada@example.com", "password": "wrong-1"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid email or password"

    async def test_refresh_rotates(self, client: AsyncClient):
        data = await _register(client)
        response = await client.post("/api/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert response.status_code == 200
        assert response.json()["refresh_token"] != data["refresh_token"]

        # Presenting the rotated-out token again is refused.
        reused = await client.post("/api/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert reused.status_code == 401

    async def test_logout_revokes_refresh_token(self, client: AsyncClient):
        data = await _register(client)
        response = await client.post("/api/v1/auth/logout", json={"refresh_token": data["refresh_token"]})
        assert response.status_code == 200
        assert response.json() == {"status": "logged_out"}

        refreshed = await client.post("/api/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert refreshed.status_code == 401

    async def test_logout_with_garbage_token_succeeds(self, client: AsyncClient):
        response = await client.post("/api/v1/auth/logout", json={"refresh_token": "garbage"})
        assert response.status_code == 200

    async def test_logout_all(self, client: AsyncClient):
        data = await _register(client)
        headers = {"Authorization": f"Bearer {data['access_token']}"}
        response = await client.post("/api/v1/auth/logout-all", headers=headers)
        assert response.status_code == 200
        assert response.json()["revoked_count"] == 1

    async def test_me_requires_auth(self, client: AsyncClient):
        response = await client.get("/api/v1/auth/me")
        assert response.status_code in (401, 403)

        response = await client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401


class TestChangePassword:
    async def test_change_password(self, client: AsyncClient):
        data = await _register(client)
        headers = {"Authorization": f"Bearer {data['access_token']}"}
        response = await client.post(
            "/api/v1/auth/change-password",
            json={"current_password": PASSWORD, "new_password": "battery-staple-7"},
            headers=headers,
        )
        assert response.status_code == 200
        assert response.json() == {"status": "password_changed", "revoked_count": 1}

        old = await client.post("/api/v1/auth/login", json={"email": "ada@example.com", "password": PASSWORD})
        assert old.status_code == 401
        new = await client.post("/api/v1/auth/login", json={"email": "ada@example.com", "password": "battery-staple-7"})
        assert new.status_code == 200
        refreshed = await client.post("/api/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert refreshed.status_code == 401

    async def test_wrong_current_password(self, client: AsyncClient):
        data = await _register(client)
        headers = {"Authorization": f"Bearer {data['access_token']}"}
        response = await client.post(
            "/api/v1/auth/change-password",
            json={"current_password": "wrong-pass-1", "new_password": "battery-staple-7"},
            headers=headers,
        )
        assert response.status_code == 401
        assert "incorrect" in response.json()["detail"].lower()

        login = await client.post("/api/v1/auth/login", json={"email": "ada@example.com", "password": PASSWORD})
        assert login.status_code == 200

    async def test_weak_new_password(self, client: AsyncClient):
        data = await _register(client)
        headers = {"Authorization": f"Bearer {data['access_token']}"}
        response = await client.post(
            "/api/v1/auth/change-password",
            json={"current_password": PASSWORD, "new_password": "weak"},
            headers=headers,
        )
        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    async def test_requires_auth(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/auth/change-password",
            json={"current_password": PASSWORD, "new_password": "battery-staple-7"},
        )
        assert response.status_code in (401, 403)

class TestDeleteAccount:
    async def test_wrong_password_keeps_account(self, client: AsyncClient):
        data = await _register(client)
        headers = {"Authorization": f"Bearer {data['access_token']}"}
        response = await client.post("/api/v1/auth/delete-account", json={"password": "nope"}, headers=headers)
        assert response.status_code == 401
        assert response.json() == {"detail": "Incorrect password", "error": "AuthorizationError"}

        assert (await client.get("/api/v1/auth/me", headers=headers)).status_code == 200

    async def test_delete_account(self, client: AsyncClient):
        data = await _register(client)
        headers = {"Authorization": f"Bearer {data['access_token']}"}
        response = await client.post("/api/v1/auth/delete-account", json={"password": PASSWORD}, headers=headers)
        assert response.status_code == 200
        assert response.json() == {"status": "account_deleted"}

        assert (await client.get("/api/v1/auth/me", headers=headers)).status_code == 401
        login = await client.post("/api/v1/auth/login", json={"email": "ada@example.com", "password": PASSWORD})
        assert login.status_code == 401
        refreshed = await client.post("/api/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert refreshed.status_code == 401
