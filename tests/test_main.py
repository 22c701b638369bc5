class TestHealth:
    def test_health(self, api_client):
        response = api_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_db_check(self, api_client):
        response = api_client.get("/db-check")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
