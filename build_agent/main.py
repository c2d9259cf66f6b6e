from fastapi import FastAPI, HTTPException

from build_agent import __version__
from build_agent.services.registry import SessionRegistry


def create_app(registry: SessionRegistry) -> FastAPI:
    """Local status API listing the sessions this agent is running."""
    app = FastAPI(title="Build Agent", version=__version__)
    app.state.registry = registry

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "sessions": len(registry)}

    @app.get("/api/sessions")
    async def list_sessions():
        return [
            {"id": s.id, "state": s.state.value, "stages": len(s.stages)}
            for s in registry.snapshot()
        ]

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str):
        controller = registry.get(session_id)
        if not controller:
            raise HTTPException(status_code=404, detail="Session not found")
        return controller.session.model_dump(mode="json", by_alias=True)

    @app.get("/api/sessions/{session_id}/stages")
    async def get_session_stages(session_id: str):
        controller = registry.get(session_id)
        if not controller:
            raise HTTPException(status_code=404, detail="Session not found")
        return [s.to_record() for s in controller.session.stages]

    return app
