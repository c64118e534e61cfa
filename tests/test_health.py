from fastapi.testclient import TestClient

from creditflow.main import app


def test_health():
    # no context manager: startup would connect to MongoDB
    c = TestClient(app)
    r = c.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}
