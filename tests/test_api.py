from fastapi.testclient import TestClient
from sqlmodel import Session, select

from starboard.auth import hash_password, verify_password
from starboard.main import app
from starboard.models import StarsLedgerEntry, TaskInstance, TaskStatus, TaskTemplate


def register(client, email="alice@example.com", **extra):
    data = {
        "display_name": "Alice",
        "email": email,
        "password": "pw",
        "family_name": "Home",
    }
    data.update(extra)
    response = client.post("/register", data=data)
    assert response.status_code == 200
    return response.json()


def add_kid(client, name="Sam", email="sam@example.com"):
    response = client.post(
        "/members",
        data={"display_name": name, "role": "participant", "email": email, "password": "kidpw"},
    )
    assert response.status_code == 200
    return response.json()["member"]


def login(email, password):
    other = TestClient(app)
    response = other.post("/login", data={"email": email, "password": password})
    assert response.status_code == 200
    return other


def test_password_hashing_roundtrip():
    hashed = hash_password("secret123")
    assert hashed != "secret123"
    assert verify_password("secret123", hashed)
    assert not verify_password("secret123", None)


def test_register_seeds_starter_templates(client, session: Session):
    body = register(client)
    assert body["member"]["role"] == "guardian"

    templates = client.get("/templates").json()["templates"]
    assert len(templates) > 0
    assert session.exec(select(TaskTemplate)).first().family_id == body["family_id"]


def test_register_rejects_duplicate_email(client):
    register(client)
    response = client.post(
        "/register",
        data={"display_name": "Eve", "email": "ALICE@example.com", "password": "x", "family_name": "Other"},
    )
    assert response.status_code == 400


def test_login_and_logout(client):
    register(client)
    client.post("/logout")
    assert client.get("/me").json() == {"member": None}
    assert client.get("/members").status_code == 401

    bad = client.post("/login", data={"email": "alice@example.com", "password": "wrong"})
    assert bad.status_code == 401
    good = client.post("/login", data={"email": "alice@example.com", "password": "pw"})
    assert good.json()["member"]["display_name"] == "Alice"


def test_make_bed_flow_over_http(client, session: Session):
    register(client, seed_templates="false")
    kid = add_kid(client)
    kid_client = login("sam@example.com", "kidpw")

    template = client.post("/templates", data={"title": "Make bed", "default_stars": 5, "category": "cleaning"})
    template_id = template.json()["template"]["id"]
    assigned = client.post("/instances", data={"template_id": template_id, "assignee_id": kid["id"]})
    instance_id = assigned.json()["instance"]["id"]

    completed = kid_client.post(f"/instances/{instance_id}/complete")
    assert completed.json()["instance"]["status"] == "pending_approval"
    assert [row["id"] for row in client.get("/approvals/pending").json()["instances"]] == [instance_id]

    approved = client.post(f"/instances/{instance_id}/decide", data={"decision": "approved"})
    assert approved.status_code == 200
    assert approved.json()["instance"]["status"] == "approved"

    again = client.post(f"/instances/{instance_id}/decide", data={"decision": "approved"})
    assert again.status_code == 200
    assert again.json() == {"status": "already_handled", "message": "This was already handled"}

    session.expire_all()
    awards = session.exec(select(StarsLedgerEntry).where(StarsLedgerEntry.task_instance_id == instance_id)).all()
    assert [entry.delta for entry in awards] == [5]
    leaderboard = client.get("/stars").json()["leaderboard"]
    assert leaderboard[0] == {**leaderboard[0], "id": kid["id"], "stars": 5}

    detail = client.get(f"/instances/{instance_id}").json()
    assert [record["decision"] for record in detail["approvals"]] == ["approved"]


def test_stale_decision_is_a_conflict(client, session: Session):
    register(client, seed_templates="false")
    kid = add_kid(client)
    template_id = client.post("/templates", data={"title": "Dishes", "default_stars": 2}).json()["template"]["id"]
    instance_id = client.post(
        "/instances", data={"template_id": template_id, "assignee_id": kid["id"], "due_at": "2030-01-01"}
    ).json()["instance"]["id"]

    response = client.post(f"/instances/{instance_id}/decide", data={"decision": "approved"})

    assert response.status_code == 409
    assert response.json()["current_status"] == "open"
    session.expire_all()
    assert session.get(TaskInstance, instance_id).status == TaskStatus.open


def test_participants_are_forbidden_from_guardian_actions(client):
    register(client, seed_templates="false")
    kid = add_kid(client)
    kid_client = login("sam@example.com", "kidpw")
    template_id = client.post("/templates", data={"title": "Dishes", "default_stars": 2}).json()["template"]["id"]
    instance_id = client.post(
        "/instances", data={"template_id": template_id, "assignee_id": kid["id"]}
    ).json()["instance"]["id"]
    kid_client.post(f"/instances/{instance_id}/complete")

    assert kid_client.post("/templates", data={"title": "Candy", "default_stars": 9}).status_code == 403
    assert kid_client.post(f"/instances/{instance_id}/decide", data={"decision": "approved"}).status_code == 403
    assert kid_client.post("/stars/credit", data={"member_id": kid["id"], "amount": 50}).status_code == 403


def test_invalid_input_is_a_bad_request(client):
    register(client, seed_templates="false")
    kid = add_kid(client)
    assert client.post("/templates", data={"title": "Nothing", "default_stars": 0}).status_code == 400
    assert client.post("/instances", data={"template_id": 999, "assignee_id": kid["id"]}).status_code == 400
    response = client.post("/stars/debit", data={"member_id": kid["id"], "amount": 3, "reason": "Rude"})
    assert response.json()["total"] == -3


def test_redeem_reward_over_http(client):
    register(client, seed_templates="false")
    kid = add_kid(client)
    kid_client = login("sam@example.com", "kidpw")
    client.post("/stars/credit", data={"member_id": kid["id"], "amount": 8})
    reward_id = client.post("/rewards", data={"title": "Ice cream", "star_cost": 6}).json()["reward"]["id"]

    response = kid_client.post(f"/rewards/{reward_id}/redeem")

    assert response.status_code == 200
    assert response.json()["total"] == 2
    assert response.json()["reward"]["status"] == "redeemed"
    assert kid_client.post(f"/rewards/{reward_id}/redeem").status_code == 409


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
