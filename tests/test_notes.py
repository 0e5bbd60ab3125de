import importlib
import os
from pathlib import Path

import pytest
from fastapi.testclient import TestClient


def reload_main_with_temp_root(tmp_path: Path, file_limit: int = 100000, size_limit: int = 10240):
    os.environ["SAVE_PATH"] = str(tmp_path / "save")
    os.environ["STATIC_ROOT"] = str(tmp_path / "static")
    os.environ["FILE_LIMIT"] = str(file_limit)
    os.environ["SINGLE_FILE_SIZE_LIMIT"] = str(size_limit)

    import main  # type: ignore

    importlib.reload(main)
    return main


def test_root_redirects_to_generated_note(tmp_path):
    main = reload_main_with_temp_root(tmp_path)

    client = TestClient(main.app)
    resp = client.get("/", follow_redirects=False)
    assert resp.status_code == 302

    location = resp.headers["location"]
    assert location.startswith("/")
    note_id = location[1:]
    assert len(note_id) == 5
    assert all(ch in "234579abcdefghjkmnpqrstwxyz" for ch in note_id)


def test_post_then_raw_get_returns_exact_bytes(tmp_path):
    main = reload_main_with_temp_root(tmp_path)
    cfg = main.get_config()

    client = TestClient(main.app)

    resp = client.post("/abc12", data={"text": "first"})
    assert resp.status_code == 200
    resp = client.post("/abc12", data={"text": "second line\nwith ünïcode"})
    assert resp.status_code == 200

    assert (cfg.save_path / "abc12").read_text(encoding="utf8") == "second line\nwith ünïcode"

    resp = client.get("/abc12?raw")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert resp.content == "second line\nwith ünïcode".encode("utf8")


def test_post_raw_body_is_stored_verbatim(tmp_path):
    main = reload_main_with_temp_root(tmp_path)

    client = TestClient(main.app)

    payload = b"\x00binary\xffpayload"
    resp = client.post(
        "/raw-note",
        content=payload,
        headers={"content-type": "application/octet-stream"},
    )
    assert resp.status_code == 200

    resp = client.get("/raw-note", params={"raw": "1"})
    assert resp.content == payload


def test_unknown_note_is_empty_not_error(tmp_path):
    main = reload_main_with_temp_root(tmp_path)

    client = TestClient(main.app)

    resp = client.get("/missing?raw")
    assert resp.status_code == 200
    assert resp.content == b""

    resp = client.get("/missing")
    assert resp.status_code == 200
    assert "<textarea" in resp.text
    assert "mini-note · missing" in resp.text


def test_cli_user_agent_gets_raw_text(tmp_path):
    main = reload_main_with_temp_root(tmp_path)
    cfg = main.get_config()
    (cfg.save_path / "clinote").write_text("plain <b>text</b>", encoding="utf8")

    client = TestClient(main.app)

    for agent in ("curl/8.5.0", "Wget/1.21"):
        resp = client.get("/clinote", headers={"User-Agent": agent})
        assert resp.status_code == 200
        assert resp.text == "plain <b>text</b>"


def test_page_escapes_content_and_sets_excerpt(tmp_path):
    main = reload_main_with_temp_root(tmp_path)
    cfg = main.get_config()
    (cfg.save_path / "page").write_text("<script>alert(1)</script>" + "x" * 200, encoding="utf8")

    client = TestClient(main.app)
    resp = client.get("/page")
    assert resp.status_code == 200
    assert "<script>alert(1)</script>" not in resp.text
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in resp.text
    assert "..." in resp.text

    assert resp.headers["cache-control"] == "no-cache, no-store, must-revalidate"
    assert resp.headers["pragma"] == "no-cache"
    assert resp.headers["expires"] == "0"


def test_html_query_renders_markdown(tmp_path):
    main = reload_main_with_temp_root(tmp_path)
    cfg = main.get_config()
    (cfg.save_path / "md").write_text("# Title\n\nSome *content*.\n\n- [x] done", encoding="utf8")

    client = TestClient(main.app)
    resp = client.get("/md?html")
    assert resp.status_code == 200
    assert "<h1" in resp.text
    assert "<em>content</em>" in resp.text
    assert "checkbox" in resp.text


def test_empty_post_deletes_note(tmp_path):
    main = reload_main_with_temp_root(tmp_path)
    cfg = main.get_config()

    client = TestClient(main.app)
    client.post("/gone", data={"text": "soon removed"})
    assert (cfg.save_path / "gone").is_file()

    resp = client.post("/gone", data={"text": ""})
    assert resp.status_code == 200
    assert not (cfg.save_path / "gone").exists()

    resp = client.get("/gone?raw")
    assert resp.content == b""


def test_post_rejects_content_over_size_limit(tmp_path):
    main = reload_main_with_temp_root(tmp_path, size_limit=8)
    cfg = main.get_config()

    client = TestClient(main.app)
    resp = client.post("/big", data={"text": "123456789"})
    assert resp.status_code == 403
    assert not (cfg.save_path / "big").exists()

    resp = client.post("/big", data={"text": "12345678"})
    assert resp.status_code == 200


def test_post_rejects_when_file_limit_reached(tmp_path):
    main = reload_main_with_temp_root(tmp_path, file_limit=2)
    cfg = main.get_config()

    client = TestClient(main.app)
    assert client.post("/one", data={"text": "1"}).status_code == 200
    assert client.post("/two", data={"text": "2"}).status_code == 200

    resp = client.post("/three", data={"text": "3"})
    assert resp.status_code == 403
    assert not (cfg.save_path / "three").exists()


@pytest.mark.parametrize("bad_id", ["a.b", "x" * 65, "bad!id", "abc%0A", "abc%0D%0A"])
def test_invalid_note_id_redirects(tmp_path, bad_id):
    main = reload_main_with_temp_root(tmp_path)
    cfg = main.get_config()

    client = TestClient(main.app)

    resp = client.get(f"/{bad_id}", follow_redirects=False)
    assert resp.status_code == 302
    assert main.is_valid_note_id(resp.headers["location"][1:])

    resp = client.post(f"/{bad_id}", data={"text": "x"}, follow_redirects=False)
    assert resp.status_code == 302
    assert list(cfg.save_path.iterdir()) == []
