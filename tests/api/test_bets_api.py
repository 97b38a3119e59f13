"""Micro-bet endpoint tests."""

from datetime import datetime, timedelta, timezone

import pytest
from conftest import auth_headers
from httpx import AsyncClient

pytestmark = pytest.mark.asyncio


def _in(**kwargs) -> str:
    return (datetime.now(timezone.utc) + timedelta(**kwargs)).isoformat()


async def _task(client: AsyncClient, headers: dict, **body) -> int:
    body.setdefault("title", "Clean the garage")
    response = await client.post("/api/v1/tasks", json=body, headers=headers)
    return response.json()["id"]


async def _bet(client: AsyncClient, headers: dict, task_id: int, wager: int = 20, deadline: str | None = None):
    return await client.post(
        "/api/v1/bets",
        json={"task_id": task_id, "wager": wager, "deadline": deadline or _in(hours=2)},
        headers=headers,
    )


class TestPlaceBet:
    async def test_place_debits_wager(self, client: AsyncClient, user):
        headers = auth_headers(user)
        task_id = await _task(client, headers)

        response = await _bet(client, headers, task_id)
        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["wager"] == 20
        assert data["reward"] is None

        profile = (await client.get("/api/v1/bets/profile", headers=headers)).json()
        assert profile["points"] == 80
        assert profile["active_bets"] == 1

    async def test_deadline_after_due_date_rejected(self, client: AsyncClient, user):
        headers = auth_headers(user)
        task_id = await _task(client, headers, due_date=_in(hours=1))

        response = await _bet(client, headers, task_id, deadline=_in(hours=2))
        assert response.status_code == 400
        assert response.json()["detail"] == "Deadline must be before the task's due date"

    async def test_zero_wager_is_422(self, client: AsyncClient, user):
        headers = auth_headers(user)
        task_id = await _task(client, headers)
        response = await _bet(client, headers, task_id, wager=0)
        assert response.status_code == 422

    async def test_insufficient_points(self, client: AsyncClient, user):
        headers = auth_headers(user)
        task_id = await _task(client, headers)
        response = await _bet(client, headers, task_id, wager=500)
        assert response.status_code == 400
        assert response.json()["error"] == "InsufficientPointsError"

    async def test_duplicate_bet(self, client: AsyncClient, user):
        headers = auth_headers(user)
        task_id = await _task(client, headers)
        await _bet(client, headers, task_id)

        response = await _bet(client, headers, task_id)
        assert response.status_code == 409
        assert (await client.get("/api/v1/bets/profile", headers=headers)).json()["points"] == 80

    async def test_bet_on_someone_elses_task(self, client: AsyncClient, make_user):
        owner = await make_user()
        other = await make_user()
        task_id = await _task(client, auth_headers(owner))

        response = await _bet(client, auth_headers(other), task_id)
        assert response.status_code == 403


class TestQueries:
    async def test_history_and_active(self, client: AsyncClient, user):
        headers = auth_headers(user)
        won = await _task(client, headers, title="won")
        open_ = await _task(client, headers, title="open")
        await _bet(client, headers, won)
        await _bet(client, headers, open_)
        await client.post(f"/api/v1/tasks/{won}/start", headers=headers)

        active = (await client.get("/api/v1/bets/active", headers=headers)).json()
        assert [b["task_id"] for b in active["bets"]] == [open_]

        successes = (await client.get("/api/v1/bets", params={"status": "success"}, headers=headers)).json()
        assert [b["task_id"] for b in successes["bets"]] == [won]

        everything = (await client.get("/api/v1/bets", headers=headers)).json()
        assert everything["total"] == 2

    async def test_missing_bet(self, client: AsyncClient, user):
        response = await client.get("/api/v1/bets/12345", headers=auth_headers(user))
        assert response.status_code == 404


class TestCancelBet:
    async def test_cancel_refunds_unresolved(self, client: AsyncClient, user):
        headers = auth_headers(user)
        task_id = await _task(client, headers)
        await _bet(client, headers, task_id)

        response = await client.delete(f"/api/v1/bets/{task_id}", headers=headers)
        assert response.status_code == 200
        assert response.json() == {"task_id": task_id, "refunded": 20}
        assert (await client.get("/api/v1/bets/profile", headers=headers)).json()["points"] == 100

    async def test_cancel_resolved_keeps_reward(self, client: AsyncClient, user):
        headers = auth_headers(user)
        task_id = await _task(client, headers)
        await _bet(client, headers, task_id)
        await client.post(f"/api/v1/tasks/{task_id}/start", headers=headers)

        response = await client.delete(f"/api/v1/bets/{task_id}", headers=headers)
        assert response.json()["refunded"] == 0
        assert (await client.get("/api/v1/bets/profile", headers=headers)).json()["points"] == 102

    async def test_cancel_missing(self, client: AsyncClient, user):
        response = await client.delete("/api/v1/bets/777", headers=auth_headers(user))
        assert response.status_code == 404
