from portal import server


PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def _multipart(file_bytes: bytes, option: str = "super_resolution"):
    boundary = "portalboundary"
    body = (
        f"--{boundary}\r\n"
        'Content-Disposition: form-data; name="option"\r\n\r\n'
        f"{option}\r\n"
        f"--{boundary}\r\n"
        'Content-Disposition: form-data; name="file"; filename="photo.png"\r\n'
        "Content-Type: image/png\r\n\r\n"
    ).encode("utf-8") + file_bytes + f"\r\n--{boundary}--\r\n".encode("utf-8")
    return body, {"Content-Type": f"multipart/form-data; boundary={boundary}"}


def test_health_and_features(app_ctx):
    client = app_ctx["client"]
    assert client.get("/health").json()["ok"] is True
    features = client.get("/v1/features").json()
    assert features["chat"]["available"] is True
    assert features["video"] == {"available": False, "status": "coming_soon"}


def test_video_generation_not_available(app_ctx):
    resp = app_ctx["client"].post("/v1/video/generations", json={"prompt": "a wave"}, headers=app_ctx["headers"])
    assert resp.status_code == 501
    assert resp.json()["detail"] == "video generation is not available yet"


def test_enhance_options_listed(app_ctx):
    options = app_ctx["client"].get("/v1/enhance/options").json()["options"]
    assert [o["id"] for o in options] == ["super_resolution", "denoise", "colorize", "face_restoration"]


def test_enhance_validates_upload_before_reporting_unavailable(app_ctx):
    client = app_ctx["client"]
    headers = app_ctx["headers"]

    body, ct = _multipart(PNG_BYTES)
    resp = client.post("/v1/enhance", content=body, headers={**headers, **ct})
    assert resp.status_code == 501

    body, ct = _multipart(b"GIF89a" + b"\x00" * 16)
    assert client.post("/v1/enhance", content=body, headers={**headers, **ct}).status_code == 415

    body, ct = _multipart(PNG_BYTES, option="make-it-pop")
    assert client.post("/v1/enhance", content=body, headers={**headers, **ct}).status_code == 400

    json_resp = client.post("/v1/enhance", json={"file": "x"}, headers=headers)
    assert json_resp.status_code == 400


def test_multipart_keeps_trailing_newlines_of_the_upload():
    file_bytes = PNG_BYTES + b"\r\n\r\n"
    body, ct = _multipart(file_bytes, option="denoise")
    upload, fields = server._extract_multipart_fields(ct["Content-Type"], body)
    assert upload == ("photo.png", file_bytes)
    assert fields == {"option": "denoise"}
