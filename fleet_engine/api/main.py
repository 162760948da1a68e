from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from fleet_engine.api.routes.fleet import router as fleet_router
from fleet_engine.api.routes.nodes import router as nodes_router
from fleet_engine.api.routes.runs import router as runs_router
from fleet_engine.container import FleetContainer
from fleet_engine.core.errors import MissingPrerequisite


def create_app(container: FleetContainer) -> FastAPI:
    """Read-only status API over the inventory, live health and run history."""
    app = FastAPI(title="Fleet Engine API")
    app.state.container = container

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.exception_handler(MissingPrerequisite)
    async def missing_prerequisite(request: Request, exc: MissingPrerequisite):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    app.include_router(nodes_router)
    app.include_router(fleet_router)
    app.include_router(runs_router)
    return app
