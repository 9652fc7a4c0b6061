import mongomock
import pytest

from app import create_app
from models import db
from storage import MemoryStore, MongoStore


# Keep the host environment from choosing a real store or real API keys.
@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("DATABASE_URL", "MONGODB_URI", "OPENWEATHER_API_KEY", "YOUTUBE_API_KEY", "STORE_FALLBACK"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SECRET_KEY", "test-secret")


# Creates a Flask app on each backend so the routes are checked against all three stores.
@pytest.fixture(params=["memory", "mongo", "sql"])
def app(request, tmp_path):
    config = {"TESTING": True, "WEATHER_API_KEY": "test-weather-key", "VIDEO_API_KEY": "test-video-key"}
    if request.param == "sql":
        config["DATABASE_URL"] = f"sqlite:///{tmp_path / 'app.db'}"
    app = create_app(config)
    if request.param == "mongo":
        app.extensions["record_store"] = MongoStore(mongomock.MongoClient()["weather_app"])
    with app.app_context():
        yield app
        if request.param == "sql":
            db.session.remove()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def record_store(app):
    return app.extensions["record_store"]


# One fixture per backend so the store contract tests run against all three.
@pytest.fixture(params=["memory", "mongo", "sql"])
def store(request, tmp_path):
    if request.param == "memory":
        yield MemoryStore()
    elif request.param == "mongo":
        yield MongoStore(mongomock.MongoClient()["weather_test"])
    else:
        app = create_app({"TESTING": True, "DATABASE_URL": f"sqlite:///{tmp_path / 'store.db'}"})
        with app.app_context():
            yield app.extensions["record_store"]
            db.session.remove()
