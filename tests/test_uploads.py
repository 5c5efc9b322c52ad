import pytest

import settings
from models import Resume, UserFile


def _photo(name="me.png", data=b"\x89PNG\r\n", content_type="image/png"):
    return {"file": (name, data, content_type)}


# ---------- photo upload ----------

def test_photo_upload_stores_file_and_syncs_resume(client, db, store, make_user, auth_headers, add_resumes):
    user = make_user()
    (resume,) = add_resumes(user.id, 1)
    resume_id = resume.id

    res = client.post(
        "/api/files/upload",
        headers=auth_headers(user),
        files=_photo(),
        data={"fileType": "photo", "resumeId": resume_id},
    )

    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["resumePhotoSynced"] is True
    key = f"users/{user.id}/{body['fileId']}.png"
    assert body["url"] == f"/api/files/{key}"
    assert store.objects[key][1] == "image/png"

    db.expire_all()
    assert db.query(Resume).filter(Resume.id == resume_id).one().photo_url == body["url"]
    row = db.query(UserFile).filter(UserFile.id == body["fileId"]).one()
    assert row.file_type == "photo"
    assert row.file_size == len(b"\x89PNG\r\n")


def test_uploaded_photo_is_served_back_to_owner(client, make_user, auth_headers, add_resumes):
    user = make_user()
    (resume,) = add_resumes(user.id, 1)
    headers = auth_headers(user)

    url = client.post(
        "/api/files/upload",
        headers=headers,
        files=_photo(name="me.jpg", data=b"JPEGDATA", content_type="image/jpeg"),
        data={"fileType": "photo", "resumeId": resume.id},
    ).json()["url"]

    res = client.get(url, headers=headers)

    assert res.status_code == 200
    assert res.content == b"JPEGDATA"
    assert res.headers["content-type"] == "image/jpeg"


def test_new_photo_replaces_previous_one(client, db, store, make_user, auth_headers, add_resumes):
    user = make_user()
    (resume,) = add_resumes(user.id, 1)
    resume_id = resume.id
    headers = auth_headers(user)
    form = {"fileType": "photo", "resumeId": resume_id}

    first = client.post("/api/files/upload", headers=headers, files=_photo(), data=form).json()
    second = client.post("/api/files/upload", headers=headers, files=_photo(), data=form).json()

    assert first["fileId"] != second["fileId"]
    assert list(store.objects) == [f"users/{user.id}/{second['fileId']}.png"]
    db.expire_all()
    assert [f.id for f in db.query(UserFile).all()] == [second["fileId"]]


def test_failed_photo_put_keeps_previous_photo(client, db, store, make_user, auth_headers, add_resumes):
    user = make_user()
    (resume,) = add_resumes(user.id, 1)
    resume_id = resume.id
    headers = auth_headers(user)
    form = {"fileType": "photo", "resumeId": resume_id}
    first = client.post("/api/files/upload", headers=headers, files=_photo(), data=form).json()

    store.fail_put_with = ConnectionError("r2 unavailable")
    with pytest.raises(ConnectionError):
        client.post("/api/files/upload", headers=headers, files=_photo(data=b"NEWPNG"), data=form)

    old_key = f"users/{user.id}/{first['fileId']}.png"
    assert list(store.objects) == [old_key]
    db.expire_all()
    assert [f.id for f in db.query(UserFile).all()] == [first["fileId"]]
    assert db.query(Resume).filter(Resume.id == resume_id).one().photo_url == first["url"]
    assert client.get(first["url"], headers=headers).status_code == 200


def test_old_photo_cleanup_failure_does_not_fail_upload(client, db, store, make_user, auth_headers, add_resumes):
    user = make_user()
    (resume,) = add_resumes(user.id, 1)
    resume_id = resume.id
    headers = auth_headers(user)
    form = {"fileType": "photo", "resumeId": resume_id}
    client.post("/api/files/upload", headers=headers, files=_photo(), data=form)

    store.fail_delete_with = ConnectionError("r2 unavailable")
    res = client.post("/api/files/upload", headers=headers, files=_photo(), data=form)

    assert res.status_code == 200
    db.expire_all()
    assert [f.id for f in db.query(UserFile).all()] == [res.json()["fileId"]]
    assert db.query(Resume).filter(Resume.id == resume_id).one().photo_url == res.json()["url"]


def test_photo_with_invalid_mime_is_rejected(client, make_user, auth_headers, add_resumes):
    user = make_user()
    (resume,) = add_resumes(user.id, 1)

    res = client.post(
        "/api/files/upload",
        headers=auth_headers(user),
        files=_photo(name="x.gif", content_type="image/gif"),
        data={"fileType": "photo", "resumeId": resume.id},
    )

    assert res.status_code == 400
    assert "image/gif" in res.json()["detail"]


def test_oversized_photo_is_rejected(client, store, make_user, auth_headers, add_resumes):
    user = make_user()
    (resume,) = add_resumes(user.id, 1)

    res = client.post(
        "/api/files/upload",
        headers=auth_headers(user),
        files=_photo(data=b"0" * (5 * 1024 * 1024 + 1)),
        data={"fileType": "photo", "resumeId": resume.id},
    )

    assert res.status_code == 400
    assert "5MB" in res.json()["detail"]
    assert store.objects == {}


def test_photo_size_limit_is_inclusive(client, db, store, make_user, auth_headers, add_resumes, monkeypatch):
    monkeypatch.setattr(settings, "MAX_PHOTO_SIZE", 8)
    user = make_user()
    (resume,) = add_resumes(user.id, 1)
    form = {"fileType": "photo", "resumeId": resume.id}

    too_big = client.post("/api/files/upload", headers=auth_headers(user), files=_photo(data=b"x" * 9), data=form)
    at_limit = client.post("/api/files/upload", headers=auth_headers(user), files=_photo(data=b"x" * 8), data=form)

    assert too_big.status_code == 400
    assert at_limit.status_code == 200
    db.expire_all()
    assert db.query(UserFile).one().file_size == 8


def test_photo_for_someone_elses_resume_is_not_found(client, store, make_user, auth_headers, add_resumes):
    owner = make_user()
    intruder = make_user()
    (resume,) = add_resumes(owner.id, 1)

    res = client.post(
        "/api/files/upload",
        headers=auth_headers(intruder),
        files=_photo(),
        data={"fileType": "photo", "resumeId": resume.id},
    )

    assert res.status_code == 404
    assert store.objects == {}


def test_photo_upload_requires_file_and_type(client, make_user, auth_headers):
    user = make_user()

    res = client.post("/api/files/upload", headers=auth_headers(user), data={"fileType": "photo"})

    assert res.status_code == 400
    assert res.json()["detail"] == "Missing file or fileType"


def test_pdf_cannot_use_multipart_upload(client, make_user, auth_headers):
    user = make_user()

    res = client.post(
        "/api/files/upload",
        headers=auth_headers(user),
        files=_photo(name="cv.pdf", content_type="application/pdf"),
        data={"fileType": "resume_pdf"},
    )

    assert res.status_code == 400
    assert "upload-url" in res.json()["detail"]


def test_photo_upload_requires_resume_id(client, make_user, auth_headers):
    user = make_user()

    res = client.post(
        "/api/files/upload",
        headers=auth_headers(user),
        files=_photo(),
        data={"fileType": "photo"},
    )

    assert res.status_code == 400


def test_delete_photo_clears_resume(client, db, store, make_user, auth_headers, add_resumes):
    user = make_user()
    (resume,) = add_resumes(user.id, 1)
    resume_id = resume.id
    headers = auth_headers(user)
    client.post(
        "/api/files/upload",
        headers=headers,
        files=_photo(),
        data={"fileType": "photo", "resumeId": resume_id},
    )

    res = client.delete(
        "/api/files/upload",
        headers=headers,
        params={"fileType": "photo", "resumeId": resume_id},
    )

    assert res.status_code == 200
    assert res.json() == {"success": True, "resumePhotoCleared": True, "deletedFileCount": 1}
    assert store.objects == {}
    db.expire_all()
    assert db.query(Resume).filter(Resume.id == resume_id).one().photo_url is None


# ---------- presigned PDF upload ----------

def _upload_url_body(**overrides):
    body = {
        "fileName": "cv.pdf",
        "contentType": "application/pdf",
        "fileType": "resume_pdf",
        "fileSize": 2048,
    }
    body.update(overrides)
    return body


def test_upload_url_uses_server_chosen_key(client, make_user, auth_headers):
    user = make_user()

    res = client.post("/api/files/upload-url", headers=auth_headers(user), json=_upload_url_body())

    assert res.status_code == 200
    body = res.json()
    assert body["storageKey"] == f"users/{user.id}/{body['fileId']}.pdf"
    assert body["uploadUrl"].startswith("https://uploads.example.test/")


def test_upload_url_validation(client, make_user, auth_headers):
    user = make_user()
    headers = auth_headers(user)

    cases = [
        _upload_url_body(fileName=None),
        _upload_url_body(fileType="photo"),
        _upload_url_body(contentType="text/plain"),
        _upload_url_body(fileSize=10 * 1024 * 1024 + 1),
        _upload_url_body(fileSize=-1),
    ]
    for body in cases:
        res = client.post("/api/files/upload-url", headers=headers, json=body)
        assert res.status_code == 400, body


def test_upload_url_requires_session(client):
    res = client.post("/api/files/upload-url", json=_upload_url_body())
    assert res.status_code == 401


def _confirm_body(user_id, file_id="f1", **overrides):
    body = {
        "fileId": file_id,
        "storageKey": f"users/{user_id}/{file_id}.pdf",
        "fileName": "cv.pdf",
        "fileSize": 1,
        "mimeType": "application/pdf",
    }
    body.update(overrides)
    return body


def test_confirm_upload_records_size_from_storage(client, db, store, make_user, auth_headers):
    user = make_user()
    store.put(f"users/{user.id}/f1.pdf", b"%PDF-1.7 real bytes", "application/pdf")

    res = client.post("/api/files/confirm-upload", headers=auth_headers(user), json=_confirm_body(user.id))

    assert res.status_code == 200
    assert res.json() == {"success": True, "fileId": "f1"}
    row = db.query(UserFile).filter(UserFile.id == "f1").one()
    assert row.file_size == len(b"%PDF-1.7 real bytes")
    assert row.file_type == "resume_pdf"
    assert row.resume_id is None


def test_confirm_upload_missing_fields(client, make_user, auth_headers):
    user = make_user()
    res = client.post(
        "/api/files/confirm-upload",
        headers=auth_headers(user),
        json=_confirm_body(user.id, storageKey=None),
    )
    assert res.status_code == 400


def test_confirm_upload_of_foreign_key_is_forbidden(client, store, make_user, auth_headers):
    user = make_user()
    store.put("users/someone-else/f1.pdf", b"%PDF", "application/pdf")

    res = client.post(
        "/api/files/confirm-upload",
        headers=auth_headers(user),
        json=_confirm_body(user.id, storageKey="users/someone-else/f1.pdf"),
    )

    assert res.status_code == 403


def test_confirm_upload_without_object_is_not_found(client, make_user, auth_headers):
    user = make_user()
    res = client.post("/api/files/confirm-upload", headers=auth_headers(user), json=_confirm_body(user.id))
    assert res.status_code == 404


def test_confirm_upload_twice_conflicts(client, store, make_user, auth_headers):
    user = make_user()
    store.put(f"users/{user.id}/f1.pdf", b"%PDF", "application/pdf")
    headers = auth_headers(user)

    assert client.post("/api/files/confirm-upload", headers=headers, json=_confirm_body(user.id)).status_code == 200
    res = client.post("/api/files/confirm-upload", headers=headers, json=_confirm_body(user.id))

    assert res.status_code == 409


# ---------- listing / deleting ----------

def test_list_and_delete_files(client, db, store, make_user, auth_headers):
    user = make_user()
    other = make_user()
    headers = auth_headers(user)
    store.put(f"users/{user.id}/f1.pdf", b"%PDF", "application/pdf")
    store.put(f"users/{other.id}/f2.pdf", b"%PDF", "application/pdf")
    client.post("/api/files/confirm-upload", headers=headers, json=_confirm_body(user.id))
    client.post(
        "/api/files/confirm-upload",
        headers=auth_headers(other),
        json=_confirm_body(other.id, file_id="f2"),
    )

    listed = client.get("/api/files", headers=headers, params={"fileType": "resume_pdf"}).json()["items"]
    assert [f["id"] for f in listed] == ["f1"]
    assert listed[0]["url"] == f"/api/files/users/{user.id}/f1.pdf"

    assert client.delete("/api/files/f2", headers=headers).status_code == 404

    res = client.delete("/api/files/f1", headers=headers)
    assert res.status_code == 200
    assert f"users/{user.id}/f1.pdf" not in store.objects
    db.expire_all()
    assert [f.id for f in db.query(UserFile).all()] == ["f2"]


def test_delete_file_succeeds_when_store_delete_fails(client, db, store, make_user, auth_headers):
    user = make_user()
    headers = auth_headers(user)
    store.put(f"users/{user.id}/f1.pdf", b"%PDF", "application/pdf")
    client.post("/api/files/confirm-upload", headers=headers, json=_confirm_body(user.id))

    store.fail_delete_with = ConnectionError("r2 unavailable")
    res = client.delete("/api/files/f1", headers=headers)

    assert res.status_code == 200
    db.expire_all()
    assert db.query(UserFile).count() == 0
