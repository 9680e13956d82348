"""
Health check and version endpoints
"""
from fastapi.testclient import TestClient
from newsroom.main import APP_VERSION, app

client = TestClient(app)


def test_health_endpoint_returns_200():
    """Test that /health returns HTTP 200"""
    response = client.get("/health")
    assert response.status_code == 200


def test_health_endpoint_returns_ok_status():
    """Test that /health returns status: ok"""
    response = client.get("/health")
    data = response.json()
    assert data["status"] == "ok"


def test_version_endpoint_reports_app_version():
    """Test that /version reports the running version"""
    response = client.get("/version")
    assert response.status_code == 200
    assert response.json()["version"] == APP_VERSION
