import base64
import io
import os
import sys
import zipfile
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

# Add the parent directory to sys.path so we can import main
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Point the app at the filesystem backend with tiny chunks before importing it
import config
config.STORAGE_BACKEND = "filesystem"
config.CHUNK_SIZE = 16

from main import app, content_disposition


@pytest.fixture
def client(tmp_path):
    """A test client whose lifespan builds a fresh blob store in a temporary directory."""
    config.DATA_DIR = str(tmp_path / "data")
    with TestClient(app) as test_client:
        yield test_client


def upload(client, name, content, content_type="application/octet-stream"):
    response = client.post("/upload/file", files={"file": (name, content, content_type)})
    assert response.status_code == 201
    return response.json()["fileId"]


def test_upload_download_delete(client):
    """Upload a multi-chunk file, fetch it back, delete it."""
    content = os.urandom(100)

    response = client.post("/upload/file", files={"file": ("data.bin", content, "application/octet-stream")})
    assert response.status_code == 201
    assert response.json()["text"] == "File uploaded successfully !"
    file_id = response.json()["fileId"]

    response = client.get(f"/download/files/{file_id}")
    assert response.status_code == 200
    assert response.content == content
    assert response.headers["content-type"] == "application/octet-stream"
    assert response.headers["content-disposition"].startswith('attachment; filename="data.bin"')

    response = client.delete(f"/delete/file/{file_id}")
    assert response.status_code == 200
    assert response.json() == {"text": "File deleted successfully !"}

    response = client.get(f"/download/files/{file_id}")
    assert response.status_code == 404
    assert response.json() == {"error": {"text": "File not found"}}


def test_upload_without_file(client):
    response = client.post("/upload/file", files={"other": ("a.txt", b"x", "text/plain")})
    assert response.status_code == 400
    assert response.json() == {"error": "No file uploaded"}


def test_upload_multiple_files(client):
    response = client.post(
        "/upload/files",
        files=[
            ("files", ("one.txt", b"first file", "text/plain")),
            ("files", ("two.txt", b"second file", "text/plain")),
        ],
    )
    assert response.status_code == 201
    assert response.json()["text"] == "Files uploaded successfully !"
    assert len(response.json()["fileIds"]) == 2

    names = [entry["filename"] for entry in client.get("/files").json()]
    assert names == ["one.txt", "two.txt"]


def test_upload_multiple_without_files(client):
    response = client.post("/upload/files", files={"other": ("a.txt", b"x", "text/plain")})
    assert response.status_code == 400
    assert response.json()["error"]["text"] == "Unable to upload files"


def test_download_invalid_id(client):
    response = client.get("/download/files/not-an-id")
    assert response.status_code == 400
    assert response.json()["error"]["text"] == "Unable to download file"


def test_view_file_inline(client):
    file_id = upload(client, "page.html", b"<h1>hello</h1>", "text/html")

    response = client.get(f"/file/{file_id}")
    assert response.status_code == 200
    assert response.content == b"<h1>hello</h1>"
    assert response.headers["content-type"].startswith("text/html")
    assert response.headers["content-disposition"] == "inline"


def test_view_file_errors(client):
    response = client.get("/file/invalid")
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid fileId"}

    response = client.get(f"/file/{ObjectId()}")
    assert response.status_code == 404
    assert response.json() == {"error": "File not found"}


def test_files_listing(client):
    file_id = upload(client, "notes.txt", b"some notes", "text/plain")

    [entry] = client.get("/files").json()
    assert entry["fileId"] == file_id
    assert entry["filename"] == "notes.txt"
    assert entry["contentType"] == "text/plain"
    assert entry["length"] == 10
    assert "uploadDate" in entry
    assert entry["uploadDate"] == client.get("/info/files").json()[0]["uploadDate"]


def test_info_files(client):
    file_id = upload(client, "notes.txt", b"some notes", "text/plain")

    response = client.get("/info/files")
    assert response.status_code == 200
    [record] = response.json()
    assert record["_id"] == file_id
    assert record["chunkSize"] == 16
    assert set(record) == {"_id", "filename", "contentType", "length", "chunkSize", "uploadDate"}


def test_rename(client):
    file_id = upload(client, "old.txt", b"content", "text/plain")

    response = client.put(f"/rename/file/{file_id}", json={"filename": "new.txt"})
    assert response.status_code == 200
    assert response.json() == {"text": "File renamed successfully !"}

    assert client.get("/files").json()[0]["filename"] == "new.txt"
    response = client.get(f"/download/files/{file_id}")
    assert 'filename="new.txt"' in response.headers["content-disposition"]


def test_rename_errors(client):
    file_id = upload(client, "old.txt", b"content", "text/plain")

    response = client.put(f"/rename/file/{file_id}", json={})
    assert response.status_code == 400

    response = client.put(f"/rename/file/{file_id}", json={"filename": ""})
    assert response.status_code == 400

    response = client.put(f"/rename/file/{ObjectId()}", json={"filename": "new.txt"})
    assert response.status_code == 400
    assert response.json()["error"]["text"] == "Unable to rename file"


def test_delete_errors(client):
    response = client.delete("/delete/file/bad-id")
    assert response.status_code == 400

    response = client.delete(f"/delete/file/{ObjectId()}")
    assert response.status_code == 400
    assert response.json()["error"]["text"] == "Unable to delete file"


def test_download_all_as_zip(client):
    contents = {"a.txt": b"alpha" * 10, "b.txt": b"bravo", "c.bin": os.urandom(64)}
    for name, content in contents.items():
        upload(client, name, content)

    response = client.get("/download/files")
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/zip"
    assert 'filename="files.zip"' in response.headers["content-disposition"]

    with zipfile.ZipFile(io.BytesIO(response.content)) as archive:
        assert sorted(archive.namelist()) == sorted(contents)
        for name, content in contents.items():
            assert archive.read(name) == content


def test_download_selected_as_zip(client):
    first = upload(client, "first.txt", b"first")
    upload(client, "second.txt", b"second")

    response = client.get("/download/files", params={"ids": [first]})
    assert response.status_code == 200
    with zipfile.ZipFile(io.BytesIO(response.content)) as archive:
        assert archive.namelist() == ["first.txt"]


def test_download_all_when_empty(client):
    response = client.get("/download/files")
    assert response.status_code == 404
    assert response.json()["error"]["text"] == "No files found"


def test_download_base64(client):
    contents = [b"alpha", os.urandom(40)]
    for n, content in enumerate(contents):
        upload(client, f"{n}.bin", content)

    response = client.get("/download/files2")
    assert response.status_code == 200
    assert response.json() == [base64.b64encode(content).decode("ascii") for content in contents]


def test_cors_allows_browser_viewer(client):
    response = client.get("/info/files", headers={"Origin": "http://localhost:3000"})
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "*"


def test_unicode_filename_download(client):
    file_id = upload(client, "résumé.pdf", b"%PDF-1.4", "application/pdf")

    response = client.get(f"/download/files/{file_id}")
    assert response.status_code == 200
    assert "filename*=UTF-8''r%C3%A9sum%C3%A9.pdf" in response.headers["content-disposition"]


def test_rename_rejects_control_characters(client):
    file_id = upload(client, "plain.txt", b"content", "text/plain")

    response = client.put(f"/rename/file/{file_id}", json={"filename": "a\r\nX-Injected: 1.txt"})
    assert response.status_code == 400
    assert response.json()["error"]["text"] == "Unable to rename file"

    response = client.get(f"/download/files/{file_id}")
    assert response.status_code == 200
    assert 'filename="plain.txt"' in response.headers["content-disposition"]


def test_content_disposition_has_no_raw_control_characters():
    header = content_disposition("attachment", "a\r\nX-Injected: 1.txt")
    assert "\r" not in header
    assert "\n" not in header
    assert "filename*=UTF-8''a%0D%0AX-Injected%3A%201.txt" in header


def test_zip_entries_never_escape_the_archive(client):
    first = upload(client, "one.txt", b"one")
    second = upload(client, "two.txt", b"two")
    client.put(f"/rename/file/{first}", json={"filename": "../../evil.txt"})
    client.put(f"/rename/file/{second}", json={"filename": "/etc/cron.d/x"})

    response = client.get("/download/files")
    assert response.status_code == 200
    with zipfile.ZipFile(io.BytesIO(response.content)) as archive:
        assert archive.namelist() == ["evil.txt", "etc/cron.d/x"]
        assert archive.read("evil.txt") == b"one"


if __name__ == "__main__":
    pytest.main(["-xvs", __file__])
