from fastapi import APIRouter, Response

from labquery.services.agent.orchestrator import TurnOrchestrator

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check():
    """Health check endpoint for Docker and load balancers."""
    return {"status": "healthy", "service": "labquery-api"}


@router.get("/")
async def root():
    """Root endpoint with API information."""
    return {"message": "Welcome to LabQuery API", "docs": "/docs", "health": "/health"}


@router.get("/metrics")
async def metrics():
    """Prometheus-style metrics endpoint."""
    counters = TurnOrchestrator.get_global_counters()
    lines = [
        "# HELP labquery_agent_events_total Count of agent turn, validation and tool events.",
        "# TYPE labquery_agent_events_total counter",
    ]
    if counters:
        for event in sorted(counters):
            value = counters[event]
            lines.append(f'labquery_agent_events_total{{event="{event}"}} {value}')
    else:
        lines.append('labquery_agent_events_total{event="none"} 0')
    body = "\n".join(lines) + "\n"
    return Response(body, media_type="text/plain; version=0.0.4")
