from pathlib import Path

import pytest

from financemate import create_app


JWT_TEST_SECRET = "test-jwt-secret-with-at-least-32-bytes"


@pytest.fixture()
def app(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test",
        "JWT_SECRET_KEY": JWT_TEST_SECRET,
        "DATABASE": str(tmp_path / "test.sqlite"),
        "UPLOAD_FOLDER": str(tmp_path / "uploads"),
        "EXPORT_FOLDER": str(tmp_path / "exports"),
    })

    with app.app_context():
        app.init_db()

    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


def register(client, email="alice@example.com", password="Secret123", first_name="Alice", last_name="Smith"):
    return client.post(
        "/api/auth/register",
        json={"email": email, "password": password, "firstName": first_name, "lastName": last_name},
    )


def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


def register_token(client, email="alice@example.com", **kwargs):
    response = register(client, email=email, **kwargs)
    assert response.status_code == 201, response.get_json()
    return response.get_json()["token"]


def link_partners(client, inviter_token, partner_email, partner_token):
    invite = client.post(
        "/api/users/invite-partner",
        json={"partnerEmail": partner_email},
        headers=auth_headers(inviter_token),
    )
    assert invite.status_code == 200, invite.get_json()
    accept = client.post(
        "/api/users/accept-invitation",
        json={"invitationToken": invite.get_json()["invitationToken"]},
        headers=auth_headers(partner_token),
    )
    assert accept.status_code == 200, accept.get_json()


@pytest.fixture()
def partners(client):
    """Two registered users linked as partners: (alice_token, bob_token)."""
    alice = register_token(client, "alice@example.com")
    bob = register_token(client, "bob@example.com", first_name="Bob", last_name="Jones")
    link_partners(client, alice, "bob@example.com", bob)
    return alice, bob
