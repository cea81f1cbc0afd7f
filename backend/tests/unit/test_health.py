from fastapi.testclient import TestClient
from app.main import app

def test_health_check():
    client = TestClient(app)
    response = client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["service"] == "MCP-7 Discovery"
    assert body["monitoring"] is False
    assert body["timestamp"].endswith("Z")
