from __future__ import annotations

import threading

from explainer_core import CandidateExplanation, GenerationUnavailable


def _new_session(client, language: str | None = None) -> str:
    response = client.post("/sessions", json={"language": language} if language else {})
    assert response.status_code == 201
    return response.json()["session_id"]


def test_health_reports_fallback_generator(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["generator"] == "knowledge_fallback"


def test_minimal_turn_round_trip(client):
    session_id = _new_session(client)

    response = client.post(f"/sessions/{session_id}/turns", json={"question": "what does metformin do"})
    assert response.status_code == 200
    body = response.json()
    assert body["action"] == "approve"
    assert body["session_id"] == session_id
    assert body["suggested_action"] is None
    assert "Metformin" in body["text"]

    history = client.get(f"/sessions/{session_id}/history").json()["exchanges"]
    assert [exchange["sequence_index"] for exchange in history] == [0]
    assert history[0]["system_text"] == body["text"]


def test_document_turn_with_entities(client):
    session_id = _new_session(client)
    response = client.post(
        f"/sessions/{session_id}/turns",
        json={
            "question": "what is this medicine for",
            "entities": [
                {"entity_id": "med-1", "kind": "medication", "text": "ibuprofen 1 tablet", "confidence": 0.95},
            ],
        },
    )
    body = response.json()
    assert body["action"] == "approve"
    assert "ibuprofen 1 tablet" in body["text"]


def test_emergency_turn_escalates(client, backend_module):
    session_id = _new_session(client)
    response = client.post(
        f"/sessions/{session_id}/turns",
        json={"question": "is this serious?", "symptom_text": "crushing chest pain radiating to left arm"},
    )
    body = response.json()
    assert body["action"] == "abstain"
    assert body["escalate"] is True
    assert body["urgency_level"] == "emergency"
    assert "emergency services" in body["text"]

    audit_rows = backend_module.container.audit_sink.recent()
    assert audit_rows[0]["action"] == "abstain"
    assert audit_rows[0]["reason"] == "emergency"


def test_unknown_session_maps_to_404(client):
    response = client.post("/sessions/unknown-session/turns", json={"question": "hi"})
    assert response.status_code == 404
    detail = response.json()["detail"]
    assert detail["suggested_action"] == "start_new_session"
    assert "session_not_found" not in detail["message"]


def test_invalid_session_id_maps_to_400(client):
    response = client.get("/sessions/bad%20id/history")
    assert response.status_code == 400


def test_terminate_then_history_is_gone(client):
    session_id = _new_session(client)
    client.post(f"/sessions/{session_id}/turns", json={"question": "what does metformin do"})

    assert client.delete(f"/sessions/{session_id}").json() == {"ok": True}
    assert client.get(f"/sessions/{session_id}/history").status_code == 404
    assert client.delete(f"/sessions/{session_id}").status_code == 404


def test_generation_unavailable_maps_to_503(client, backend_module):
    class _Down:
        def generate(self, context):
            raise GenerationUnavailable()

    backend_module.container.pipeline.generator = _Down()
    session_id = _new_session(client)
    response = client.post(f"/sessions/{session_id}/turns", json={"question": "what does metformin do"})

    assert response.status_code == 503
    assert response.json()["detail"]["suggested_action"] == "retry"
    assert client.get(f"/sessions/{session_id}/history").json()["exchanges"] == []


def test_concurrent_turn_for_same_session_returns_409(client, backend_module):
    entered = threading.Event()
    release = threading.Event()

    class _Slow:
        def generate(self, context):
            entered.set()
            release.wait(timeout=5)
            return CandidateExplanation(
                text="Metformin helps lower blood sugar. This is general information, not a diagnosis.",
                generation_confidence=0.95,
                entity_references=("medication:metformin",),
            )

    backend_module.container.pipeline.generator = _Slow()
    session_id = _new_session(client)
    responses: dict[str, int] = {}

    def _first_turn() -> None:
        responses["first"] = client.post(
            f"/sessions/{session_id}/turns", json={"question": "what does metformin do"}
        ).status_code

    worker = threading.Thread(target=_first_turn)
    worker.start()
    assert entered.wait(timeout=5)
    second = client.post(f"/sessions/{session_id}/turns", json={"question": "and the side effects?"})
    release.set()
    worker.join(timeout=5)

    assert second.status_code == 409
    assert second.json()["detail"]["suggested_action"] == "retry"
    assert responses["first"] == 200
    history = client.get(f"/sessions/{session_id}/history").json()["exchanges"]
    assert [exchange["patient_text"] for exchange in history] == ["what does metformin do"]


def test_classify_endpoint(client):
    response = client.post("/red-flags/classify", json={"symptom_text": "my headache is unbearable"})
    body = response.json()
    assert body["urgency_level"] == "urgent"
    assert body["ambiguous"] is True


def test_spanish_session(client):
    session_id = _new_session(client, language="es")
    body = client.post(f"/sessions/{session_id}/turns", json={"question": "¿qué es metformin?"}).json()
    assert body["action"] in {"approve", "modify"}
    assert "información general" in body["text"]
