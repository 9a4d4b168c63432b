import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from brain_integration.api.main import create_app
from brain_integration.config import AdmissionConfig, ProtocolConfig

_DCF_DOC = {
    "id": "dcf",
    "text": "DCF analysis shows strong cash flow generation with 15% WACC and 3% terminal growth rate.",
    "metadata": {"type": "dcf_analysis", "company": "Test Corp"},
}


def test_api_knowledge_analysis_and_maintenance(make_orchestrator) -> None:
    orchestrator = make_orchestrator()

    with TestClient(create_app(orchestrator=orchestrator)) as client:
        health = client.get("/health")
        assert health.status_code == 200
        assert health.json()["overall"] == "healthy"

        first = client.post("/knowledge", json=_DCF_DOC)
        second = client.post("/knowledge", json=_DCF_DOC)
        assert first.json() == {"id": "dcf", "versions": 1}
        assert second.json() == {"id": "dcf", "versions": 2}

        search = client.post("/knowledge/search", json={"query": "DCF cash flow analysis"})
        assert search.status_code == 200
        [hit] = search.json()["documents"]
        assert hit["id"] == "dcf"
        assert hit["score"] > 0.5

        analysis = client.post(
            "/analysis",
            json={"financial_data": {"company_name": "Test Corp"}, "analysis_type": "dcf"},
        )
        assert analysis.status_code == 200
        body = analysis.json()
        assert body["analysis_type"] == "dcf"
        assert body["narrative"]
        assert [doc["id"] for doc in body["context_documents"]] == ["dcf"]

        scraped = client.post(
            "/scraped",
            json={"records": [{"symbol": "MSFT", "totalRevenue": 1}, {"price": 2}], "source": "yahoo"},
        )
        assert scraped.json() == {"source": "yahoo", "received": 2, "ingested": 1}

        expired = client.post("/maintenance/expire", json={"older_than_days": 30})
        assert expired.json() == {"removed": 0}

        traces = client.get("/traces")
        assert [item["analysis_type"] for item in traces.json()["items"]] == ["dcf"]

        stats = client.get("/stats").json()
        assert stats["knowledge_base"]["tracked_documents"] == 2
        assert stats["analysis"]["total_analyses"] == 1

    assert orchestrator.initialized is False


def test_api_rejects_invalid_requests(make_orchestrator) -> None:
    with TestClient(create_app(orchestrator=make_orchestrator())) as client:
        empty = client.post("/knowledge/search", json={"query": ""})
        unknown_type = client.post(
            "/analysis", json={"financial_data": {}, "analysis_type": "black_scholes"}
        )
        bad_options = client.post(
            "/analysis", json={"financial_data": {}, "options": {"max_docs": 0}}
        )
        bad_generation = client.post(
            "/analysis", json={"financial_data": {}, "options": {"generation": {"top_p": 0}}}
        )
        blank_doc = client.post("/knowledge", json={"id": "x", "text": "   "})

    assert empty.status_code == 400
    assert empty.json()["code"] == "invalid_request"
    assert unknown_type.status_code == 400
    assert bad_options.status_code == 400
    assert bad_options.json()["code"] == "invalid_request"
    assert bad_generation.status_code == 400
    assert bad_generation.json()["code"] == "invalid_config"
    assert blank_doc.status_code == 400
    assert blank_doc.json()["code"] == "invalid_document"


def test_api_returns_429_when_analysis_cap_reached(make_orchestrator) -> None:
    orchestrator = make_orchestrator(admission=AdmissionConfig(max_concurrent_analyses=1))

    with TestClient(create_app(orchestrator=orchestrator)) as client:
        with orchestrator.analysis_gate.admit():
            response = client.post("/analysis", json={"financial_data": {"symbol": "MSFT"}})

    assert response.status_code == 429
    assert response.json()["code"] == "analysis_limit_reached"


def test_websocket_session_round_trip(make_orchestrator) -> None:
    orchestrator = make_orchestrator(protocol=ProtocolConfig())

    with TestClient(create_app(orchestrator=orchestrator)) as client:
        client.post("/knowledge", json=_DCF_DOC)
        with client.websocket_connect("/ws") as ws:
            greeting = ws.receive_json()
            assert greeting["type"] == "connected"
            assert client.get("/stats").json()["protocol"]["connected_clients"] == 1

            ws.send_json({"type": "heartbeat", "request_id": "hb-1"})
            assert ws.receive_json()["type"] == "heartbeat_ack"

            ws.send_json(
                {
                    "type": "context_request",
                    "data": {"query": "DCF cash flow analysis"},
                    "request_id": "ctx-1",
                }
            )
            context = ws.receive_json()
            assert context["type"] == "context_request_response"
            assert context["request_id"] == "ctx-1"
            assert context["result"]["documents"][0]["id"] == "dcf"

            ws.send_json(
                {
                    "type": "analysis_request",
                    "data": {"financial_data": {"company_name": "Test Corp"}, "analysis_type": "dcf"},
                    "request_id": "an-1",
                }
            )
            analysis = ws.receive_json()
            assert analysis["request_id"] == "an-1"
            assert analysis["result"]["analysis_type"] == "dcf"

            ws.send_json({"type": "context_request", "data": {}, "request_id": "ctx-2"})
            assert ws.receive_json()["error"]["code"] == "invalid_request"

            ws.send_text("not json")
            assert ws.receive_json()["error"]["code"] == "malformed_message"
            with pytest.raises(WebSocketDisconnect) as excinfo:
                ws.receive_json()
            assert excinfo.value.code == 1008


def test_websocket_client_limit(make_orchestrator) -> None:
    orchestrator = make_orchestrator(protocol=ProtocolConfig(max_clients=1))

    with TestClient(create_app(orchestrator=orchestrator)) as client:
        with client.websocket_connect("/ws") as first:
            assert first.receive_json()["type"] == "connected"
            with client.websocket_connect("/ws") as second:
                assert second.receive_json()["error"]["code"] == "client_limit_reached"
                with pytest.raises(WebSocketDisconnect) as excinfo:
                    second.receive_json()
                assert excinfo.value.code == 1013


def test_websocket_refused_when_protocol_disabled(make_orchestrator) -> None:
    with TestClient(create_app(orchestrator=make_orchestrator())) as client:
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws"):
                pass


def test_api_expires_documents_posted_without_timezone(make_orchestrator) -> None:
    with TestClient(create_app(orchestrator=make_orchestrator())) as client:
        client.post(
            "/knowledge",
            json={"id": "old", "text": "Quarterly update", "created_at": "2020-01-01T00:00:00"},
        )
        client.post("/knowledge", json={"id": "fresh", "text": "Weekly update"})

        expired = client.post("/maintenance/expire", json={"older_than_days": 30})

    assert expired.status_code == 200
    assert expired.json() == {"removed": 1}


def test_websocket_binary_frame_is_a_protocol_violation(make_orchestrator) -> None:
    orchestrator = make_orchestrator(protocol=ProtocolConfig())

    with TestClient(create_app(orchestrator=orchestrator)) as client:
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json()["type"] == "connected"

            ws.send_bytes(b'{"type": "heartbeat", "request_id": "hb-bin"}')
            ack = ws.receive_json()
            assert ack["type"] == "heartbeat_ack"
            assert ack["request_id"] == "hb-bin"

            ws.send_bytes(b"not json")
            assert ws.receive_json()["error"]["code"] == "malformed_message"
            with pytest.raises(WebSocketDisconnect) as excinfo:
                ws.receive_json()
            assert excinfo.value.code == 1008
