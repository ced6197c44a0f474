"""Tests for the command check API."""


class TestCheckCommand:
    """Tests for POST /api/commands/check."""

    def test_safe_command(self, client):
        response = client.post("/api/commands/check", json={"command": "npm", "args": ["run", "dev"]})

        assert response.status_code == 200
        data = response.get_json()
        assert data["safe"] is True
        assert data["reason"] is None
        assert data["display"] == "npm run dev"

    def test_dangerous_command(self, client):
        data = client.post("/api/commands/check", json={"command": "rm", "args": ["-rf", "/"]}).get_json()

        assert data["safe"] is False
        assert "Dangerous command blocked" in data["reason"]

    def test_display_quotes_args(self, client):
        data = client.post("/api/commands/check", json={"command": "echo", "args": ["a b"]}).get_json()
        assert data["display"] == 'echo "a b"'

    def test_missing_command(self, client):
        assert client.post("/api/commands/check", json={}).status_code == 400

    def test_args_must_be_strings(self, client):
        response = client.post("/api/commands/check", json={"command": "ls", "args": "-la"})
        assert response.status_code == 400

    def test_non_json_body(self, client):
        response = client.post("/api/commands/check", data="nope", content_type="text/plain")
        assert response.status_code == 400
