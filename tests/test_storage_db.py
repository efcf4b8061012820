import pytest
from sqlalchemy import select

from app.portal.db import build_engine, script_session
from app.portal.models import Base, User
from app.portal.storage import LocalStorage, S3Storage, StorageError, request_file_key, storage_from_config
from scripts.init_db import seed_only
from scripts.start import _int_env, gunicorn_argv


def test_local_storage_put_open_exists_delete(tmp_path):
    storage = LocalStorage(root=tmp_path)
    key = request_file_key(7, "Brand Guide (v2).pdf")
    assert key.startswith("requests/7/")
    assert key.endswith("-Brand_Guide_v2.pdf")

    storage.put_bytes(key, b"%PDF-1.7", content_type="application/pdf")
    assert storage.exists(key)
    with storage.open(key) as fh:
        assert fh.read() == b"%PDF-1.7"

    storage.delete(key)
    storage.delete(key)
    assert not storage.exists(key)
    with pytest.raises(StorageError):
        storage.open(key)


def test_local_storage_rejects_traversal(tmp_path):
    storage = LocalStorage(root=tmp_path / "files")
    for key in ("../secrets.txt", "requests/../../etc/passwd", ""):
        with pytest.raises(StorageError):
            storage.put_bytes(key, b"x")
    storage.put_bytes("/requests/1/a.txt", b"ok")
    assert (tmp_path / "files" / "requests" / "1" / "a.txt").read_bytes() == b"ok"


def test_storage_from_config(tmp_path):
    local = storage_from_config({"STORAGE_BACKEND": "local", "STORAGE_ROOT": str(tmp_path)})
    assert local == LocalStorage(root=tmp_path)

    s3 = storage_from_config(
        {
            "STORAGE_BACKEND": "S3",
            "S3_ENDPOINT": "nyc3.digitaloceanspaces.com",
            "S3_BUCKET": "agency-files",
            "S3_ACCESS_KEY_ID": "key",
            "S3_SECRET_ACCESS_KEY": "secret",
        }
    )
    assert isinstance(s3, S3Storage)
    assert s3.region == "nyc3"
    assert s3.client.meta.endpoint_url == "https://nyc3.digitaloceanspaces.com"
    assert s3.client is s3.client

    with pytest.raises(StorageError):
        storage_from_config({"STORAGE_BACKEND": "ftp"})


def test_script_session_commits_and_rolls_back(tmp_path):
    db_url = f"sqlite:///{tmp_path/'scripts.db'}"
    engine = build_engine(db_url)
    Base.metadata.create_all(bind=engine)
    engine.dispose()

    with script_session(db_url) as s:
        s.add(User(email="kept@example.com", password_hash="x", role="admin"))

    with pytest.raises(RuntimeError):
        with script_session(db_url) as s:
            s.add(User(email="dropped@example.com", password_hash="x", role="admin"))
            s.flush()
            raise RuntimeError("boom")

    with script_session(db_url) as s:
        assert s.scalars(select(User.email)).all() == ["kept@example.com"]


def test_seed_only_creates_then_promotes_admin(tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path/'seed.db'}"
    engine = build_engine(db_url)
    Base.metadata.create_all(bind=engine)
    engine.dispose()
    monkeypatch.setenv("ADMIN_EMAIL", "Owner@Agency.test")
    monkeypatch.setenv("ADMIN_PASSWORD", "Passw0rd!")

    seed_only(database_url=db_url)
    with script_session(db_url) as s:
        owner = s.scalars(select(User)).one()
        assert (owner.email, owner.role) == ("owner@agency.test", "admin")
        owner.role = "client"
        original_hash = owner.password_hash

    monkeypatch.setenv("ADMIN_PASSWORD", "Different1!")
    seed_only(database_url=db_url)
    with script_session(db_url) as s:
        owner = s.scalars(select(User)).one()
        assert owner.role == "admin"
        assert owner.password_hash == original_hash


def test_start_settings(monkeypatch):
    monkeypatch.delenv("PORT", raising=False)
    assert _int_env("PORT", 8080, low=1, high=65535) == 8080
    monkeypatch.setenv("PORT", "70000")
    with pytest.raises(SystemExit):
        _int_env("PORT", 8080, low=1, high=65535)
    monkeypatch.setenv("PORT", "abc")
    with pytest.raises(SystemExit):
        _int_env("PORT", 8080, low=1, high=65535)

    argv = gunicorn_argv(9000, 3, 30)
    assert argv[:2] == ["gunicorn", "app.wsgi:app"]
    assert argv[argv.index("--bind") + 1] == "0.0.0.0:9000"
    assert argv[argv.index("--workers") + 1] == "3"
