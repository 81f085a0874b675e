from labquery.services.agent.orchestrator import TurnOrchestrator


def test_health_endpoint(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "healthy",
        "service": "labquery-api",
    }


def test_root_endpoint(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json() == {
        "message": "Welcome to LabQuery API",
        "docs": "/docs",
        "health": "/health",
    }


def test_metrics_endpoint_renders_counters(client, monkeypatch):
    monkeypatch.setattr(
        TurnOrchestrator,
        "_global_counters",
        {"turn_state:done": 3, "validation:PLACEHOLDER_SYNTAX": 1},
    )

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    lines = response.text.splitlines()
    assert "# TYPE labquery_agent_events_total counter" in lines
    assert 'labquery_agent_events_total{event="turn_state:done"} 3' in lines
    assert 'labquery_agent_events_total{event="validation:PLACEHOLDER_SYNTAX"} 1' in lines


def test_metrics_endpoint_without_counters(client, monkeypatch):
    monkeypatch.setattr(TurnOrchestrator, "_global_counters", {})

    response = client.get("/metrics")

    assert 'labquery_agent_events_total{event="none"} 0' in response.text
