def test_register_twice_conflicts(client) -> None:
    first = client.post("/api/register", json={"login": "John.Doe-1", "password": "pw"})
    assert first.status_code == 200
    assert first.json() == {"ok": True, "login": "john.doe-1"}

    second = client.post("/api/register", json={"login": "john.doe-1", "password": "other"})
    assert second.status_code == 409
    assert second.json() == {"error": "user already exists"}


def test_register_requires_login_and_password(client) -> None:
    for body in ({"login": "bob"}, {"password": "pw"}, {"login": "bob", "password": "   "}, {}):
        res = client.post("/api/register", json=body)
        assert res.status_code == 400
        assert res.json()["error"] == "login and password are required"


def test_register_rejects_invalid_login(client) -> None:
    res = client.post("/api/register", json={"login": "bad user!", "password": "pw"})
    assert res.status_code == 400


def test_register_stores_profile_and_defaults(client, persistence) -> None:
    res = client.post(
        "/api/register",
        json={"login": "carol", "password": " pw ", "name": "Carol", "email": "carol@example.com"},
    )
    assert res.status_code == 200
    stored = persistence.load_user("carol")
    assert stored["password"] == "pw"
    assert stored["profile"] == {"name": "Carol", "email": "carol@example.com", "phone": ""}
    assert stored["operations"] == []
    assert stored["goals"] == []
    assert stored["budgets"] == []
    assert stored["accounts"] == ["Общий счет"]


def test_login_outcomes(client, alice) -> None:
    ok = client.post("/api/login", json={"login": " ALICE ", "password": "secret"})
    assert ok.status_code == 200
    assert ok.json() == {
        "ok": True,
        "user": {"login": "alice", "profile": {"name": "Alice", "email": "", "phone": ""}},
    }

    wrong = client.post("/api/login", json={"login": "alice", "password": "nope"})
    assert wrong.status_code == 401

    missing = client.post("/api/login", json={"login": "nobody", "password": "secret"})
    assert missing.status_code == 404

    incomplete = client.post("/api/login", json={"login": "alice"})
    assert incomplete.status_code == 400


def test_get_user_profile(client, alice) -> None:
    res = client.get("/api/users/Alice")
    assert res.status_code == 200
    assert res.json()["user"]["login"] == "alice"
    assert "password" not in res.json()["user"]

    assert client.get("/api/users/ghost").status_code == 404
    assert client.get("/api/users/bad!user").json() == {"error": "invalid login"}


def test_update_profile_overrides_fields_independently(client, alice) -> None:
    res = client.put("/api/users/alice", json={"email": "alice@example.com", "phone": "+100"})
    assert res.status_code == 200
    assert res.json()["user"]["profile"] == {"name": "Alice", "email": "alice@example.com", "phone": "+100"}

    res = client.put("/api/users/alice", json={"name": "Alice Liddell"})
    assert res.json()["user"]["profile"]["email"] == "alice@example.com"
    assert res.json()["user"]["profile"]["name"] == "Alice Liddell"


def test_update_profile_changes_password(client, alice) -> None:
    assert client.put("/api/users/alice", json={"password": " fresh "}).status_code == 200
    assert client.post("/api/login", json={"login": "alice", "password": "secret"}).status_code == 401
    assert client.post("/api/login", json={"login": "alice", "password": "fresh"}).status_code == 200


def test_update_profile_keeps_user_data(client, alice) -> None:
    client.post("/api/users/alice/operations", json={"type": "income", "amount": 5, "account": "Cash"})
    client.put("/api/users/alice/state", json={"goals": [{"id": "g1", "name": "Bike", "target": 500, "saved": 0}]})

    client.put("/api/users/alice", json={"name": "A"})

    assert len(client.get("/api/users/alice/operations").json()["operations"]) == 1
    assert client.get("/api/users/alice/state").json()["goals"][0]["id"] == "g1"


def test_update_profile_creates_stub_only_with_password(client, persistence) -> None:
    missing = client.put("/api/users/dave", json={"name": "Dave"})
    assert missing.status_code == 404

    created = client.put("/api/users/dave", json={"password": "pw", "name": "Dave"})
    assert created.status_code == 200
    assert created.json()["user"] == {"login": "dave", "profile": {"name": "Dave", "email": "", "phone": ""}}
    assert persistence.load_user("dave")["accounts"] == ["Общий счет"]
    assert client.post("/api/login", json={"login": "dave", "password": "pw"}).status_code == 200
