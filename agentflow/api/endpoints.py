"""FastAPI REST and WebSocket endpoints for the workflow engine."""

import json
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional
from fastapi import APIRouter, HTTPException, Depends, status, WebSocket, WebSocketDisconnect
from pydantic import Field

from ..core.engine import WorkflowEngine
from ..core.websocket_manager import WebSocketManager
from ..core.middleware import http_status_for_error
from ..core.exceptions import (
    ExecutionNotFoundError,
    WorkflowEngineError,
    create_error_response
)
from ..models.core import (
    CamelModel,
    ChatResponse,
    ExecutionSummary,
    ValidationResult,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowExecutionOptions
)
from ..core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Global instances (initialized by the application factory)
_engine: Optional[WorkflowEngine] = None
_websocket_manager: Optional[WebSocketManager] = None


def init_dependencies(engine: WorkflowEngine, websocket_manager: Optional[WebSocketManager] = None):
    """Initialize the global dependencies."""
    global _engine, _websocket_manager
    _engine = engine
    _websocket_manager = websocket_manager


def get_engine() -> WorkflowEngine:
    """Dependency to get the workflow engine."""
    if _engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Workflow engine not initialized"
        )
    return _engine


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _raise_http(error: WorkflowEngineError):
    raise HTTPException(status_code=http_status_for_error(error), detail=create_error_response(error))


# Request/Response models
class ExecuteWorkflowRequest(CamelModel):
    """Request model for executing a workflow."""
    workflow: WorkflowDefinition = Field(..., description="Workflow definition to execute")
    input: Any = Field(default=None, description="Initial input stored under __initial")
    options: Optional[WorkflowExecutionOptions] = Field(default=None, description="Execution options")


class ChatWorkflowRequest(CamelModel):
    """Request model for running a workflow against a chat query."""
    workflow: WorkflowDefinition = Field(..., description="Workflow definition to walk")
    query: str = Field(..., min_length=1, description="User query")
    rewrite_query: Optional[bool] = Field(
        default=None, description="Let the agent tailor the query to each node; defaults to server setting"
    )


class StopExecutionResponse(CamelModel):
    execution_id: str
    stopped: bool


class DisposeExecutionResponse(CamelModel):
    execution_id: str
    disposed: bool


# Endpoints

@router.post(
    "/workflows/validate",
    response_model=ValidationResult,
    summary="Validate a workflow definition",
    description="Check the structural invariants of a workflow without executing it"
)
async def validate_workflow(
    workflow: WorkflowDefinition,
    engine: WorkflowEngine = Depends(get_engine)
) -> ValidationResult:
    result = engine.validate_workflow(workflow)
    logger.info(f"Validated workflow {workflow.id}: valid={result.is_valid}")
    return result


@router.post(
    "/workflows/execute",
    response_model=WorkflowExecution,
    summary="Execute a workflow",
    description="Run a workflow to completion and return its execution record"
)
async def execute_workflow(
    request: ExecuteWorkflowRequest,
    engine: WorkflowEngine = Depends(get_engine)
) -> WorkflowExecution:
    """
    Execute a workflow and wait for it to finish.

    Node failures and invalid graphs are reported in the returned record's
    ``status`` and ``error`` fields rather than as HTTP errors.
    """
    logger.info(f"Executing workflow {request.workflow.id}")
    return await engine.execute_workflow(request.workflow, request.input, request.options)


@router.post(
    "/workflows/chat",
    response_model=List[ChatResponse],
    summary="Walk a workflow for a chat query",
    description="Process a user query through the workflow one node at a time and return the chat responses"
)
async def chat_workflow(
    request: ChatWorkflowRequest,
    engine: WorkflowEngine = Depends(get_engine)
) -> List[ChatResponse]:
    logger.info(f"Processing chat query through workflow {request.workflow.id}")
    try:
        return await engine.process_query_through_workflow(
            request.workflow, request.query, rewrite_query=request.rewrite_query
        )
    except WorkflowEngineError as e:
        logger.warning(f"Workflow engine error during chat processing: {e.message}")
        _raise_http(e)


@router.get(
    "/executions",
    response_model=List[ExecutionSummary],
    summary="List tracked executions"
)
async def list_executions(engine: WorkflowEngine = Depends(get_engine)) -> List[ExecutionSummary]:
    return [ExecutionSummary.from_execution(execution) for execution in engine.list_executions()]


@router.get(
    "/executions/{execution_id}",
    response_model=WorkflowExecution,
    summary="Get an execution record"
)
async def get_execution(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_engine)
) -> WorkflowExecution:
    try:
        return engine.registry.require(execution_id)
    except ExecutionNotFoundError as e:
        logger.warning(f"Execution not found: {execution_id}")
        _raise_http(e)


@router.post(
    "/executions/{execution_id}/stop",
    response_model=StopExecutionResponse,
    summary="Request an execution to stop",
    description="Marks a running execution as paused; traversal halts at the next node boundary"
)
async def stop_execution(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_engine)
) -> StopExecutionResponse:
    try:
        engine.registry.require(execution_id)
    except ExecutionNotFoundError as e:
        _raise_http(e)
    return StopExecutionResponse(execution_id=execution_id, stopped=engine.stop_execution(execution_id))


@router.delete(
    "/executions/{execution_id}",
    response_model=DisposeExecutionResponse,
    summary="Forget an execution"
)
async def dispose_execution(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_engine)
) -> DisposeExecutionResponse:
    if not engine.dispose_execution(execution_id):
        _raise_http(ExecutionNotFoundError(execution_id))
    return DisposeExecutionResponse(execution_id=execution_id, disposed=True)


@router.get("/health", summary="Engine health")
async def health(engine: WorkflowEngine = Depends(get_engine)) -> Dict[str, Any]:
    return {
        "status": "healthy",
        "tracked_executions": len(engine.registry),
        "event_listeners": engine.event_bus.listener_count,
        "websocket_connections": _websocket_manager.get_connection_count() if _websocket_manager else 0,
        "timestamp": _now()
    }


# WebSocket endpoint for real-time monitoring

@router.websocket("/ws/monitor")
async def websocket_monitor(websocket: WebSocket):
    """
    WebSocket endpoint for real-time workflow monitoring.

    Message format for client messages:
    {
        "action": "subscribe" | "unsubscribe" | "ping" | "get_status",
        "execution_id": "execution id, or * for every execution"
    }

    Every workflow event of a subscribed execution is pushed as
    {"event_type": "workflow_event", "event": {...}}.
    """
    if not _websocket_manager:
        await websocket.close(code=1011, reason="WebSocket monitoring not available")
        return

    connection_id = None
    try:
        connection_id = await _websocket_manager.connect(websocket)
        if connection_id is None:
            return
        logger.info(f"WebSocket client connected: {connection_id}")

        while True:
            try:
                data = await websocket.receive_text()
                message = json.loads(data)

                action = message.get("action")
                execution_id = message.get("execution_id")

                if action == "subscribe" and execution_id:
                    success = await _websocket_manager.subscribe(connection_id, execution_id)
                    if not success:
                        await _websocket_manager.send_to_connection(connection_id, {
                            "event_type": "error",
                            "message": f"Failed to subscribe to execution {execution_id}",
                            "timestamp": _now()
                        })

                elif action == "unsubscribe" and execution_id:
                    success = await _websocket_manager.unsubscribe(connection_id, execution_id)
                    if success:
                        await _websocket_manager.send_to_connection(connection_id, {
                            "event_type": "unsubscribed",
                            "execution_id": execution_id,
                            "message": f"Unsubscribed from execution {execution_id}",
                            "timestamp": _now()
                        })

                elif action == "ping":
                    await _websocket_manager.send_to_connection(connection_id, {
                        "event_type": "pong",
                        "timestamp": _now()
                    })

                elif action == "get_status":
                    await _websocket_manager.send_to_connection(connection_id, {
                        "event_type": "status_info",
                        "data": _websocket_manager.get_connection_info(),
                        "timestamp": _now()
                    })

                else:
                    await _websocket_manager.send_to_connection(connection_id, {
                        "event_type": "error",
                        "message": f"Unknown action: {action}",
                        "timestamp": _now()
                    })

            except WebSocketDisconnect:
                logger.info(f"WebSocket client disconnected during message processing: {connection_id}")
                break
            except json.JSONDecodeError:
                await _websocket_manager.send_to_connection(connection_id, {
                    "event_type": "error",
                    "message": "Invalid JSON message format",
                    "timestamp": _now()
                })

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {str(e)}")
    finally:
        if connection_id:
            await _websocket_manager.disconnect(connection_id)
