from fastapi.testclient import TestClient

from main import app

BOTTLES = {
    "category": "Plastic",
    "subCategory": "PET",
    "quantity": 10,
    "unit": "pcs",
    "description": "Plastic bottles, rinsed",
}


def test_register_login_and_logout(api):
    client, user_id = api("Ana")

    me = client.get("/me")
    assert me.status_code == 200
    assert me.json()["id"] == user_id
    assert me.json()["role"] == "member"
    assert me.json()["level"] == 1
    assert "passwordHash" not in me.json()

    assert client.post("/logout").status_code == 200
    assert client.get("/me").status_code == 401

    bad = client.post("/login", json={"email": "ana@example.com", "password": "wrong-password"})
    assert bad.status_code == 400
    good = client.post("/login", json={"email": "ANA@example.com", "password": "secret123"})
    assert good.status_code == 200
    assert client.get("/me").json()["id"] == user_id


def test_duplicate_email_is_rejected(api):
    api("Ana")
    client = TestClient(app)
    resp = client.post("/register", json={"email": "ana@example.com", "name": "Ana 2", "password": "secret123"})
    assert resp.status_code == 400


def test_anonymous_callers_are_turned_away(api):
    api("Ana")
    client = TestClient(app)
    assert client.post("/donations/", json=BOTTLES).status_code == 401
    assert client.get("/donations/").status_code == 200


def test_admin_role_comes_from_the_allow_list(api):
    admin, _ = api("Admin", email="admin@example.com")
    member, _ = api("Ana")

    assert admin.get("/me").json()["role"] == "admin"
    assert member.post("/tasks/seed").status_code == 403
    assert admin.post("/tasks/seed").json() == {"seeded": 10}


def test_donation_to_delivery_flow(api):
    owner, owner_id = api("Owner")
    requester, requester_id = api("Requester")
    admin, _ = api("Admin", email="admin@example.com")

    donation = owner.post("/donations/", json=BOTTLES)
    assert donation.status_code == 201
    donation_id = donation.json()["id"]
    assert donation.json()["ownerId"] == owner_id

    project = requester.post(
        "/projects/",
        json={
            "title": "Planter",
            "description": "Bottle planter",
            "materials": [{"name": "Plastic bottles", "quantity": 5}],
        },
    )
    assert project.status_code == 201
    project_id = project.json()["id"]
    (material_id,) = project.json()["materials"]

    submitted = requester.post(
        "/requests/", json={"donationId": donation_id, "quantity": 4, "projectId": project_id}
    )
    assert submitted.status_code == 201, submitted.text
    request_id = submitted.json()["id"]
    assert submitted.json()["donationTitle"] == "Plastic bottles, rinsed"
    assert submitted.json()["status"] == "pending"

    assert requester.post(f"/requests/{request_id}/approve").status_code == 403
    approved = owner.post(f"/requests/{request_id}/approve")
    assert approved.status_code == 200
    assert approved.json()["deliveryStatus"] == "Pending Item"
    assert approved.json()["materialBackfilled"] is True

    assert owner.get(f"/donations/{donation_id}").json()["quantity"] == 6
    material = requester.get(f"/projects/{project_id}").json()["materials"][material_id]
    assert material["acquired"] == 4

    assert [r["id"] for r in owner.get("/requests/?box=received").json()] == [request_id]
    assert owner.patch(f"/admin/requests/{request_id}/delivery", json={"deliveryStatus": "Delivered"}).status_code == 403
    delivered = admin.patch(f"/admin/requests/{request_id}/delivery", json={"deliveryStatus": "Delivered"})
    assert delivered.status_code == 200
    assert delivered.json()["status"] == "completed"

    profile = requester.get(f"/users/{owner_id}").json()
    assert profile["donationCount"] == 1
    assert profile["xp"] == 20
    assert "passwordHash" not in profile

    assert owner.post(f"/requests/{request_id}/reject").status_code == 409
    assert [r["id"] for r in admin.get("/admin/requests?status=completed").json()] == [request_id]


def test_cancel_restores_quantity_over_http(api):
    owner, _ = api("Owner")
    requester, _ = api("Requester")
    donation_id = owner.post("/donations/", json=BOTTLES).json()["id"]
    request_id = requester.post("/requests/", json={"donationId": donation_id, "quantity": 3}).json()["id"]
    owner.post(f"/requests/{request_id}/approve")

    cancelled = requester.post(f"/requests/{request_id}/cancel")

    assert cancelled.json()["status"] == "cancelled"
    assert owner.get(f"/donations/{donation_id}").json()["quantity"] == 10
    assert requester.delete(f"/requests/{request_id}").status_code == 204
    assert owner.get(f"/requests/{request_id}").status_code == 404


def test_engine_errors_map_to_status_codes(api):
    owner, _ = api("Owner")
    requester, _ = api("Requester")

    assert owner.get("/donations/nope").status_code == 404
    donation_id = owner.post("/donations/", json=BOTTLES).json()["id"]
    too_many = requester.post("/requests/", json={"donationId": donation_id, "quantity": 11})
    assert too_many.status_code == 400
    assert "exceeds" in too_many.json()["detail"]
    assert requester.post("/requests/", json={"donationId": donation_id, "quantity": 0}).status_code == 422

    request_id = requester.post("/requests/", json={"donationId": donation_id, "quantity": 1}).json()["id"]
    outsider, _ = api("Outsider")
    assert outsider.get(f"/requests/{request_id}").status_code == 403


def test_project_stages_over_http(api):
    author, _ = api("Author")
    project = author.post(
        "/projects/",
        json={"title": "Lamp", "description": "Jar lamp", "materials": [{"name": "Glass jars", "quantity": 2}]},
    ).json()
    project_id = project["id"]
    (material_id,) = project["materials"]

    missing_evidence = author.post(f"/projects/{project_id}/materials/{material_id}/progress", json={"delta": 2})
    assert missing_evidence.status_code == 400
    author.post(
        f"/projects/{project_id}/materials/{material_id}/progress",
        json={"delta": 2, "evidence": "img/jars.jpg"},
    )

    unconfirmed = author.post(f"/projects/{project_id}/advance/construction", json={})
    assert unconfirmed.status_code == 428
    assert author.post(f"/projects/{project_id}/advance/construction", json={"confirm": True}).json()[
        "workflow_stage"
    ] == 2

    steps = author.post(f"/projects/{project_id}/steps", json={"title": "Wire", "description": "Wire the lid"}).json()
    (step_id,) = steps["steps"]
    author.post(f"/projects/{project_id}/steps/{step_id}/images", json={"images": ["img/wire.jpg"]})
    author.post(f"/projects/{project_id}/advance/share", json={"confirm": True})

    shared = author.post(f"/projects/{project_id}/share", json={"visibility": "public", "finalImages": ["img/lamp.jpg"]})
    assert shared.status_code == 200
    assert shared.json()["status"] == "completed"

    anonymous = TestClient(app)
    assert [p["id"] for p in anonymous.get("/projects/gallery").json()] == [project_id]
    assert anonymous.get(f"/projects/{project_id}").status_code == 200

    private = author.patch(f"/projects/{project_id}/visibility", json={"visibility": "private"})
    assert private.json()["visibility"] == "private"
    assert anonymous.get(f"/projects/{project_id}").status_code == 403


def test_tasks_and_rewards_over_http(api):
    admin, _ = api("Admin", email="admin@example.com")
    member, member_id = api("Ana")

    created = admin.post("/tasks/", json={"title": "Say hi", "type": "other", "rewardType": "xp", "xpReward": 30})
    assert created.status_code == 201
    task_id = created.json()["id"]
    assert admin.post("/tasks/", json={"title": "Broken", "rewardType": "badge"}).status_code == 422

    rows = member.get("/tasks/").json()
    assert rows[0]["claimable"] is True

    claimed = member.post(f"/tasks/{task_id}/claim")
    assert claimed.status_code == 200
    assert claimed.json()["xp"] == 30
    assert "sierra_madre" in claimed.json()["badges"]
    assert member.post(f"/tasks/{task_id}/claim").status_code == 409

    rewards = member.get("/users/me/rewards").json()
    assert [r["id"] for r in rewards] == ["avatar_lvl10", "avatar_lvl20", "avatar_lvl30", "avatar_lvl50"]
    assert member.post("/users/me/rewards/avatar_lvl10/redeem").status_code == 400
    assert member.post("/users/me/rewards/avatar_lvl10/equip").status_code == 400

    notes = member.get("/users/me/notifications?unread=true").json()
    assert [n["title"] for n in notes] == ["Achievement unlocked"]
    assert member.post(f"/users/me/notifications/{notes[0]['id']}/read").json() == {"ok": True}
    assert member.get("/users/me/notifications?unread=true").json() == []
    assert member.post("/users/me/notifications/missing/read").status_code == 404
    assert member.post("/users/me/notifications/read-all").json() == {"updated": 0}

    assert admin.delete(f"/tasks/{task_id}").status_code == 204
    assert member.get(f"/users/{member_id}").status_code == 200
