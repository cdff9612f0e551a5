"""End-to-end tests for the thermostat analysis endpoint."""

import json

from conftest import ScriptedCompletionClient, system_text, user_text
from hvac_owl.main import app
from hvac_owl.thermostat.prompts import RESULTS_SUMMARY_SYSTEM_PROMPT
from hvac_owl.thermostat.response_parser import FALLBACK_RECOMMENDATION

JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 64
RESULT_KEYS = {
    "thermostatType",
    "compatibility",
    "confidence",
    "recommendations",
    "analyses",
    "summary",
    "debug",
}

GOOD_SUMMARY = json.dumps({
    "thermostatType": "Honeywell T87, low voltage",
    "compatibility": "Compatible",
    "confidence": 0.85,
    "recommendations": ["Add a C-wire adapter", "Label the wires before removal"],
    "summary": "Your thermostat is a standard 24V system.",
})


def responder(summary_text=GOOD_SUMMARY):
    def reply(messages):
        if system_text(messages) == RESULTS_SUMMARY_SYSTEM_PROMPT:
            return summary_text
        return "Low voltage conventional system with R, W, Y, G and C wires."
    return reply


def install(summary_text=GOOD_SUMMARY) -> ScriptedCompletionClient:
    stub = ScriptedCompletionClient(responder(summary_text))
    app.state.completion_client = stub
    return stub


def jpegs(count):
    return [("images", (f"thermostat-{i}.jpg", JPEG, "image/jpeg")) for i in range(count)]


class TestAnalyzeValidation:
    """Input validation happens before any completion call."""

    def test_missing_description_and_images(self, client):
        stub = install()
        response = client.post("/api/analyze", data={"description": ""})

        assert response.status_code == 400
        assert response.json() == {"error": "No thermostat description or images provided"}
        assert stub.calls == []

    def test_invalid_mime_type_rejected(self, client, upload_dir):
        stub = install()
        response = client.post(
            "/api/analyze",
            files=[("images", ("thermostat.gif", b"GIF89a", "image/gif"))],
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid file type"
        assert "JPG, PNG and HEIC" in response.json()["details"]
        assert stub.calls == []
        assert list(upload_dir.iterdir()) == []

    def test_oversized_file_rejected_and_removed(self, client, upload_dir):
        stub = install()
        too_big = b"\xff" * (5 * 1024 * 1024 + 1)
        response = client.post(
            "/api/analyze",
            files=[
                ("images", ("ok.jpg", JPEG, "image/jpeg")),
                ("images", ("big.jpg", too_big, "image/jpeg")),
            ],
        )

        assert response.status_code == 400
        assert response.json() == {"error": "File too large", "details": "Maximum file size is 5MB."}
        assert stub.calls == []
        assert list(upload_dir.iterdir()) == []

    def test_too_many_files(self, client, upload_dir):
        stub = install()
        response = client.post("/api/analyze", files=jpegs(6))

        assert response.status_code == 400
        assert response.json()["error"] == "Too many files"
        assert stub.calls == []
        assert list(upload_dir.iterdir()) == []


class TestAnalyzeSuccess:
    """Successful analyses."""

    def test_two_jpegs_without_description(self, client, upload_dir):
        stub = install()
        response = client.post("/api/analyze", files=jpegs(2))

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        assert isinstance(body["totalProcessingTime"], int)
        assert len(body["results"]) == 1

        result = body["results"][0]
        assert RESULT_KEYS <= set(result)
        assert result["compatibility"] == "Compatible"
        assert result["thermostatType"] == "Honeywell T87, low voltage"
        assert result["confidence"] == 0.85
        assert result["recommendations"] == ["Add a C-wire adapter", "Label the wires before removal"]
        assert len(result["analyses"]) == 2
        assert result["debug"]["filesProcessed"] == 2
        assert result["debug"]["parseMethod"] == "json"

        assert list(upload_dir.iterdir()) == []

    def test_summary_call_waits_for_every_image(self, client):
        stub = install()
        client.post("/api/analyze", files=jpegs(3), data={"description": "Old round dial"})

        assert len(stub.calls) == 4
        image_calls, summary_call = stub.calls[:3], stub.calls[3]
        for call in image_calls:
            parts = call["messages"][-1].content
            assert any(p["type"] == "image_url" and p["image_url"]["url"].startswith("data:image/jpeg;base64,") for p in parts)
            assert "Old round dial" in user_text(call["messages"])

        summary_prompt = user_text(summary_call["messages"])
        for i in (1, 2, 3):
            assert f"Image {i} analysis" in summary_prompt

    def test_description_only(self, client):
        stub = install()
        response = client.post("/api/analyze", data={"description": "Two wires, red and white"})

        assert response.status_code == 200
        assert len(stub.calls) == 2
        assert response.json()["results"][0]["debug"]["filesProcessed"] == 0

    def test_unparseable_summary_returns_sentinel(self, client):
        install("I'm sorry, I can't help with that.")
        response = client.post("/api/analyze", files=jpegs(1))

        assert response.status_code == 200
        result = response.json()["results"][0]
        assert RESULT_KEYS <= set(result)
        assert result["compatibility"] == "Uncertain"
        assert result["confidence"] == 0.0
        assert result["recommendations"] == [FALLBACK_RECOMMENDATION]
        assert result["debug"]["parseMethod"] == "fallback"

    def test_same_keys_for_good_and_malformed_output(self, client):
        install()
        good = client.post("/api/analyze", files=jpegs(1)).json()
        install("{not json at all")
        bad = client.post("/api/analyze", files=jpegs(1)).json()

        assert set(good) == set(bad)
        assert set(good["results"][0]) == set(bad["results"][0])
        assert 0.0 <= bad["results"][0]["confidence"] <= 1.0

    def test_percentage_confidence_is_scaled(self, client):
        install("Type: Nest-ready 24V\nCompatibility: compatible\nConfidence: 90%")
        result = client.post("/api/analyze", files=jpegs(1)).json()["results"][0]

        assert result["confidence"] == 0.9
        assert result["debug"]["parseMethod"] == "pattern"


class TestAnalyzeFailures:
    """Upstream failures still clean up temporary files."""

    def test_one_failing_image_call_cleans_up(self, client, upload_dir, completion_failure):
        calls = {"n": 0}

        def reply(messages):
            calls["n"] += 1
            if calls["n"] == 2:
                return completion_failure
            return "analysis"

        app.state.completion_client = ScriptedCompletionClient(reply)
        response = client.post("/api/analyze", files=jpegs(3))

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "Error analyzing thermostat"
        assert body["details"] == "upstream exploded"
        assert body["debug"]["filesProcessed"] == 3
        assert list(upload_dir.iterdir()) == []

    def test_production_hides_error_details(self, client, production, completion_failure):
        app.state.completion_client = ScriptedCompletionClient(lambda messages: completion_failure)
        response = client.post("/api/analyze", data={"description": "heat pump"})

        assert response.status_code == 500
        assert response.json()["details"] == "An unexpected error occurred."


class TestServiceEndpoints:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "timestamp" in response.json()

    def test_version(self, client):
        response = client.get("/api/version")
        assert response.status_code == 200
        assert response.json()["name"] == "hvac-owl"

    def test_version_missing_file(self, client, monkeypatch, tmp_path):
        monkeypatch.setenv("VERSION_FILE", str(tmp_path / "missing.json"))
        from hvac_owl.config import get_settings
        get_settings.cache_clear()
        try:
            response = client.get("/api/version")
        finally:
            get_settings.cache_clear()

        assert response.status_code == 500
        assert response.json() == {"error": "Could not read version info"}
