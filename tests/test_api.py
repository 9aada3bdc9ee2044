import time

from conftest import ITEM_ID, make_image_bytes


def _files(*specs):
    return [("files", (name, make_image_bytes(fmt), f"image/{fmt.lower()}")) for name, fmt in specs]


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert "running" in response.text


def test_batch_upload_and_delete(client):
    response = client.post(f"/api/drafts/{ITEM_ID}/images", files=_files(("a.png", "PNG"), ("b.jpg", "JPEG")))
    assert response.status_code == 201
    body = response.json()
    assert [r["filename"] for r in body["saved"]] == ["Draft-440000-01.png", "Draft-440000-02.jpg"]
    assert [i["filename"] for i in body["images"]] == ["Draft-440000-01.png", "Draft-440000-02.jpg"]

    image = client.get(body["saved"][0]["url"])
    assert image.status_code == 200
    assert image.content.startswith(b"\x89PNG")

    response = client.delete(f"/api/drafts/{ITEM_ID}/images/Draft-440000-01.png")
    assert response.status_code == 200
    assert [i["filename"] for i in response.json()["images"]] == ["Draft-440000-02.jpg"]

    response = client.get(f"/api/drafts/{ITEM_ID}/next-sequence")
    assert response.json() == {"itemId": ITEM_ID, "nextSequenceNumber": 1}

    response = client.post(f"/api/drafts/{ITEM_ID}/images", files=_files(("c.gif", "GIF")))
    assert [r["filename"] for r in response.json()["saved"]] == ["Draft-440000-01.gif"]
    assert client.get("/api/locks").json() == {"locks": []}


def test_temp_upload_then_save(client):
    staged = client.post("/api/temp-images/upload", files={"image": ("photo.PNG", make_image_bytes(), "image/png")})
    assert staged.status_code == 200
    temp_path = staged.json()["tempPath"]

    response = client.post(
        "/api/draft-images/save",
        json={"itemId": ITEM_ID, "tempPath": temp_path, "originalFilename": "photo.PNG"},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["filename"] == "Draft-440000-01.png"
    assert body["draftPath"] == f"/uploads/drafts/{ITEM_ID}/Draft-440000-01.png"

    # the staged file has been consumed
    again = client.post(
        "/api/draft-images/save",
        json={"itemId": ITEM_ID, "tempPath": temp_path, "originalFilename": "photo.PNG"},
    )
    assert again.status_code == 404


def test_save_requires_all_fields(client):
    response = client.post("/api/draft-images/save", json={"itemId": ITEM_ID})
    assert response.status_code == 400


def test_save_rejects_paths_outside_staging(client, tmp_path):
    outside = tmp_path / "outside.png"
    outside.write_bytes(make_image_bytes())
    response = client.post(
        "/api/draft-images/save",
        json={"itemId": ITEM_ID, "tempPath": str(outside), "originalFilename": "outside.png"},
    )
    assert response.status_code == 404
    assert outside.exists()


def test_invalid_image_is_a_client_error(client):
    response = client.post(
        f"/api/drafts/{ITEM_ID}/images",
        files=[("files", ("a.png", b"not an image", "image/png"))],
    )
    assert response.status_code == 400
    assert response.json()["details"]["filename"] == "a.png"
    assert client.get(f"/api/drafts/{ITEM_ID}").status_code == 404


def test_invalid_item_id(client):
    response = client.post("/api/drafts/abc/images", files=_files(("a.png", "PNG")))
    assert response.status_code == 400
    assert client.get("/api/drafts/abc").status_code == 400


def test_draft_lifecycle(client):
    client.post(f"/api/drafts/{ITEM_ID}/images", files=_files(("a.png", "PNG")))
    draft = client.get(f"/api/drafts/{ITEM_ID}").json()
    assert draft["images"][0]["isNew"] is True

    response = client.put(
        f"/api/drafts/{ITEM_ID}",
        json={"name": "Brass lamp", "images": draft["images"]},
    )
    assert response.status_code == 200
    saved = response.json()["item"]
    assert saved["name"] == "Brass lamp"
    assert saved["images"][0]["isNew"] is False

    assert [d["itemId"] for d in client.get("/api/drafts").json()] == [ITEM_ID]
    assert client.get("/api/items").json() == []

    assert client.delete(f"/api/drafts/{ITEM_ID}").status_code == 200
    assert client.get(f"/api/drafts/{ITEM_ID}").status_code == 404
    assert client.delete(f"/api/drafts/{ITEM_ID}").status_code == 404
    assert client.get(f"/uploads/drafts/{ITEM_ID}/Draft-440000-01.png").status_code == 404


def test_put_requires_json_object(client):
    response = client.put(f"/api/drafts/{ITEM_ID}", json=["not", "an", "object"])
    assert response.status_code == 400


def test_delete_unknown_image(client):
    client.put(f"/api/drafts/{ITEM_ID}", json={"name": "Chair"})
    response = client.delete(f"/api/drafts/{ITEM_ID}/images/Draft-440000-09.png")
    assert response.status_code == 404
    assert response.json()["details"]["filename"] == "Draft-440000-09.png"


def test_admin_config_is_sanitized_and_persisted(client, tmp_path):
    response = client.post("/admin/config", json={"lock_max_retries": 1000, "lock_duration_seconds": "oops"})
    assert response.status_code == 200
    cfg = response.json()["config"]
    assert cfg["lock_max_retries"] == 100
    assert cfg["lock_duration_seconds"] == 30.0
    assert (tmp_path / "drafts_config.json").exists()
    assert client.get("/admin/config").json()["config"]["lock_max_retries"] == 100

    reset = client.post("/admin/config/reset").json()["config"]
    assert reset["lock_max_retries"] == 10


def test_lock_timeout_reports_upload_context(client):
    store = client.app.state.images.store
    assert store.try_lock(ITEM_ID, "someone-else", now=time.time(), duration=30.0)

    response = client.post(f"/api/drafts/{ITEM_ID}/images", files=_files(("a.png", "PNG")))
    assert response.status_code == 503
    details = response.json()["details"]
    assert details["item_id"] == ITEM_ID
    assert details["filename"] == "a.png"
    assert details["stage"] == "staged"
    assert details["key"] == ITEM_ID


def test_body_that_is_not_utf8_is_a_client_error(client):
    response = client.put(
        f"/api/drafts/{ITEM_ID}",
        content=b'{"name": "\xff"}',
        headers={"content-type": "application/json"},
    )
    assert response.status_code == 400


def test_purchased_image_save_and_serve(client):
    staged = client.post("/api/temp-images/upload", files={"image": ("receipt.jpg", make_image_bytes("JPEG"), "image/jpeg")})
    response = client.post(
        "/api/purchase-images/save",
        json={"itemId": ITEM_ID, "imagePath": staged.json()["tempPath"], "originalFilename": "receipt.jpg", "isTemp": True},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["filename"].endswith(".jpg")

    image = client.get(body["purchasedPath"])
    assert image.status_code == 200
    assert image.content.startswith(b"\xff\xd8")

    missing = client.post(
        "/api/purchase-images/save",
        json={"itemId": ITEM_ID, "imagePath": staged.json()["tempPath"], "originalFilename": "receipt.jpg"},
    )
    assert missing.status_code == 404
    assert client.post("/api/purchase-images/save", json={"itemId": ITEM_ID}).status_code == 400
