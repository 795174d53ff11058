"""Admin-managed pick lists."""


def test_seeded_categories_are_grouped(requester):
    r = requester.get("/api/options")
    assert r.status_code == 200
    assert set(r.json) == {
        "birim",
        "durum",
        "paraBirimi",
        "birimTipi",
        "siparisDurumu",
        "alimYontemi",
        "yonetmelikMaddesi",
        "projeKodu",
        "butceKodu",
    }
    assert [o["label"] for o in r.json["paraBirimi"]] == ["TRY", "USD", "EUR"]


def test_public_mode_needs_no_session(app):
    client = app.test_client()
    assert client.get("/api/options").status_code == 401
    r = client.get("/api/options?mode=public")
    assert r.status_code == 200
    assert list(r.json) == ["birim"]


def test_list_by_category(requester):
    r = requester.get("/api/options/birimTipi")
    assert r.json["category"] == "birimTipi"
    assert [o["sort"] for o in r.json["items"]] == list(range(1, len(r.json["items"]) + 1))

    r = requester.get("/api/options/nope")
    assert r.status_code == 404
    assert r.json["code"] == "category_not_found"


def test_admin_crud_and_ordering(admin, requester):
    r = admin.post("/api/options", json={"category": "projeKodu", "label": "P-100", "value": "100"})
    assert r.status_code == 201
    new_id = r.json["id"]
    assert r.json["sort"] == 2

    assert admin.post("/api/options", json={"category": "projeKodu", "label": "p-100"}).status_code == 409
    r = admin.post("/api/options", json={"category": "colour", "label": ""})
    assert r.status_code == 400
    assert len(r.json["details"]) == 2

    r = admin.post(f"/api/options/{new_id}/move", json={"direction": -1})
    assert [o["label"] for o in r.json["items"]] == ["P-100", "GENERAL"]
    assert admin.post(f"/api/options/{new_id}/move", json={"direction": 3}).status_code == 400

    r = admin.patch(f"/api/options/{new_id}", json={"label": "P-101", "active": False})
    assert r.json["label"] == "P-101"
    assert [o["label"] for o in requester.get("/api/options/projeKodu").json["items"]] == ["GENERAL"]
    # inactive entries are listed for settings editors only
    assert len(admin.get("/api/options/projeKodu?include_inactive=1").json["items"]) == 2
    assert len(requester.get("/api/options/projeKodu?include_inactive=1").json["items"]) == 1

    r = admin.delete(f"/api/options/{new_id}")
    assert [(o["label"], o["sort"]) for o in r.json["items"]] == [("GENERAL", 1)]


def test_only_settings_editors_can_change_options(requester):
    assert requester.post("/api/options", json={"category": "projeKodu", "label": "X"}).status_code == 403
