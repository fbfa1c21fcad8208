import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from engine_config import configure_logging, load_engine_config
from flow_models import Flow, FlowNotFoundError
from flow_runner import FlowRunner
from persistence import InMemoryFlowRepository

logger = logging.getLogger("FlowRunner.api")


class RunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    step_ids: Optional[List[Union[int, str]]] = Field(None, alias="stepIds", description="Run only these steps")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Initial runtime variables")


def create_app(runner: Optional[FlowRunner] = None) -> FastAPI:
    """Build the HTTP run surface around a FlowRunner (a fresh in-memory one by default)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.runner.close()

    app = FastAPI(title="Flow Execution Engine", lifespan=lifespan)
    if runner is None:
        configure_logging(False, os.getenv("LOG_LEVEL", "INFO"))
        runner = FlowRunner(InMemoryFlowRepository(), config=load_engine_config())
    app.state.runner = runner
    app.state.active_runs = {}  # flow id -> cancel events of in-flight runs

    # ---------------------------------------------------------------------
    # FASTAPI ENDPOINTS
    # ---------------------------------------------------------------------
    @app.get('/api/health')
    async def health_check():
        """Basic health check endpoint."""
        active = sum(len(events) for events in app.state.active_runs.values())
        return JSONResponse({"status": "healthy", "active_runs": active})

    @app.put('/api/flows/{flow_id}')
    async def save_flow(flow_id: str, data: Dict[str, Any]):
        """Store a flow definition (with its steps) in the runner's repository."""
        repository = app.state.runner.repository
        if not isinstance(repository, InMemoryFlowRepository):
            raise HTTPException(status_code=501, detail="Flow definitions are managed by the persistence backend")
        try:
            flow = Flow.model_validate({**data, "id": data.get("id", flow_id)})
        except ValidationError as ve:
            logger.error(f"Flow {flow_id} validation failed: {ve}")
            raise HTTPException(status_code=400, detail=ve.errors(include_url=False, include_context=False))
        repository.save_flow(flow)
        logger.info(f"Flow {flow.id} stored with {len(flow.steps)} step(s)")
        return JSONResponse({"message": f"Flow {flow.id} saved", "steps": len(flow.steps)})

    @app.post('/api/flows/{flow_id}/run')
    async def run_flow(flow_id: str, data: Optional[Dict[str, Any]] = None):
        """Run a flow (optionally a subset of its steps) and return the full FlowResult."""
        try:
            run_request = RunRequest.model_validate(data or {})
        except ValidationError as ve:
            logger.error(f"Run request for flow {flow_id} rejected: {ve}")
            raise HTTPException(status_code=400, detail=ve.errors(include_url=False, include_context=False))
        cancel_event = asyncio.Event()
        app.state.active_runs.setdefault(flow_id, set()).add(cancel_event)
        try:
            result = await app.state.runner.run_flow(
                flow_id, run_request.step_ids, cancel_event=cancel_event, initial_vars=run_request.variables,
            )
        except FlowNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        finally:
            app.state.active_runs.get(flow_id, set()).discard(cancel_event)
        return JSONResponse(result.model_dump(by_alias=True, mode="json"))

    @app.post('/api/flows/{flow_id}/cancel')
    async def cancel_flow(flow_id: str):
        """Signal cancellation to every in-flight run of the flow."""
        events = app.state.active_runs.get(flow_id, set())
        for event in events:
            event.set()
        return JSONResponse({"message": f"Cancellation requested for {len(events)} run(s)"})

    return app


# ---------------------------------------------------------------------
# MAIN ENTRY POINT (for dev usage)
# ---------------------------------------------------------------------
if __name__ == '__main__':
    import uvicorn

    uvicorn.run(
        create_app(),
        host=os.environ.get("FLOW_API_HOST", "0.0.0.0"),
        port=int(os.environ.get("FLOW_API_PORT", "8080")),
        log_level=os.environ.get("LOG_LEVEL", "info").lower(),
    )
