from fastapi.testclient import TestClient

from cipherchat.controllers import users_controller
from cipherchat.db import schemas


def make_user(db, username: str):
    return users_controller.create_user(
        db, schemas.RegisterIn(username=username, email=f"{username}@example.com", password="pass123")
    )


def create_and_login_user(username: str, client: TestClient) -> str:
    res = client.post(
        "/auth/register",
        json={"username": username, "email": f"{username}@example.com", "password": "pass123"},
    )
    assert res.status_code == 200
    return res.json()["access_token"]


def auth_headers(token: str):
    return {"Authorization": f"Bearer {token}"}


def user_id(client: TestClient, token: str) -> int:
    return client.get("/users/me", headers=auth_headers(token)).json()["id"]
