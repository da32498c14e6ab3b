from fastapi.testclient import TestClient
from convoyhub.main import app

# Not used as a context manager, so the lifespan (schema creation) does not run
client = TestClient(app)

def test_read_root():
    response = client.get("/")

    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "active"
    assert "ConvoyHub" in data["message"]


def test_health():
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "version": app.version}


def test_unknown_route():
    response = client.get("/api/v1/nothing-here")
    assert response.status_code == 404
