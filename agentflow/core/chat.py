"""Human-readable chat responses for chat-streamed workflow runs."""

import json
from typing import Any, Callable, Dict, List, Optional

from ..models.core import ChatResponse, NodeType, ToolCall, WorkflowNode, utc_now
from .agent import AgentCollaborator
from .context import ExecutionContext
from .logging import get_logger


logger = get_logger(__name__)

MAX_REWRITTEN_QUERY_LENGTH = 1000


def _pretty(value: Any) -> str:
    return json.dumps(value, indent=2, default=str)


def _tool_calls(result: Dict[str, Any], server_id: Optional[str]) -> List[ToolCall]:
    calls = []
    for call in result.get("toolCalls") or []:
        calls.append(ToolCall(
            name=call.get("name", "unknown"),
            args=call.get("args", {}),
            result=call.get("result"),
            status="completed",
            server_id=server_id,
        ))
    return calls


def starting_response(node: WorkflowNode) -> ChatResponse:
    """Progress message sent right before a node runs."""
    return ChatResponse(
        node_id=node.id,
        node_type=node.type,
        message=f"**Starting {node.data.get('label') or node.type}**\n\nProcessing your query...",
        is_node_complete=False,
    )


def error_response(node: WorkflowNode, error: Exception) -> ChatResponse:
    message = getattr(error, "message", None) or str(error) or type(error).__name__
    return ChatResponse(
        node_id=node.id,
        node_type=node.type,
        message=f"Error processing node: {message}",
        is_node_complete=True,
    )


def _start_message(node, result, context):
    return {"message": f'Starting workflow with your query: "{context.initial_query or ""}"'}


def _server_message(node, result, context):
    lines = [f"**{node.data.get('label') or 'Server Node'}**", ""]
    calls = result.get("toolCalls") or []
    if calls:
        lines.append("**Tool Executions:**")
        for index, call in enumerate(calls, 1):
            lines.append(f"\n{index}. **{call.get('name')}**")
            lines.append(f"   Args: {_pretty(call.get('args'))}")
            if call.get("result"):
                lines.append(f"   Result: {_pretty(call.get('result'))}")
        lines.append("\n---\n")
    lines.append(f"**AI Response:**\n{result.get('llmResponse', '')}")
    return {
        "message": "\n".join(lines),
        "tool_calls": _tool_calls(result, result.get("serverId")),
    }


def _tool_message(node, result, context):
    tool_name = result.get("toolName")
    server_id = result.get("serverId")
    parameters = result.get("parameters") or {}
    lines = [
        f"**{node.data.get('label') or tool_name}**",
        "",
        "**Tool Execution:**",
        f"Tool: {tool_name}",
        f"Server: {server_id}",
        f"Parameters: {_pretty(parameters)}",
        "",
    ]
    calls = result.get("toolCalls") or []
    if calls:
        lines.append("**Execution Results:**")
        for index, call in enumerate(calls, 1):
            lines.append(f"{index}. {call.get('name')}: {_pretty(call.get('result'))}")
        lines.append("")
    lines.append(f"**AI Response:**\n{result.get('llmResponse', '')}")

    tool_calls = _tool_calls(result, server_id)
    if not tool_calls:
        # The agent reported no calls; surface the configured tool with the agent's answer.
        tool_calls = [ToolCall(
            name=tool_name,
            args=parameters,
            result=result.get("llmResponse"),
            status="completed",
            server_id=server_id,
        )]
    return {"message": "\n".join(lines), "tool_calls": tool_calls}


def _conditional_message(node, result, context):
    decision = bool(result.get("result"))
    reasoning = result.get("llmEvaluation") or f"Evaluated `{result.get('condition')}`"
    return {
        "message": f"**Condition Evaluation**\n\n{reasoning}\n\n**Decision: {'TRUE' if decision else 'FALSE'}**",
        "condition_result": decision,
    }


def _transform_message(node, result, context):
    return {
        "message": (
            f"**Data Transformation**\n\nApplied `{result.get('script')}`\n\n"
            f"Result: {_pretty(result.get('transformed'))}"
        )
    }


def _loop_message(node, result, context):
    return {"message": f"**{node.data.get('label') or 'Loop'}**\n\nCompleted {result.get('iterations', 0)} iterations"}


def _parallel_message(node, result, context):
    branches = result.get("branchResults") or []
    return {"message": f"**{node.data.get('label') or 'Parallel'}**\n\nCompleted {len(branches)} parallel branches"}


def _aggregator_message(node, result, context):
    return {
        "message": (
            f"**{node.data.get('label') or 'Aggregator'}**\n\n"
            f"Aggregated {result.get('inputCount', 0)} results using '{result.get('type')}'\n\n"
            f"Result: {_pretty(result.get('aggregated'))}"
        )
    }


def _end_message(node, result, context):
    elapsed_ms = int((utc_now() - context.start_time).total_seconds() * 1000)
    summary = (
        "**Workflow Execution Summary:**\n"
        f"- Nodes processed: {len(context.execution_path)}\n"
        f"- Execution path: {' -> '.join(context.execution_path)}\n"
        f"- Total duration: {elapsed_ms}ms\n\n"
        "The workflow has completed successfully! All nodes have been processed "
        f'for your query: "{context.initial_query or ""}"'
    )
    return {"message": f"**Workflow Complete**\n\n{summary}", "is_complete": True}


_FORMATTERS: Dict[NodeType, Callable[[WorkflowNode, Dict[str, Any], ExecutionContext], Dict[str, Any]]] = {
    NodeType.START: _start_message,
    NodeType.END: _end_message,
    NodeType.SERVER: _server_message,
    NodeType.TOOL: _tool_message,
    NodeType.CONDITIONAL: _conditional_message,
    NodeType.TRANSFORM: _transform_message,
    NodeType.LOOP: _loop_message,
    NodeType.PARALLEL: _parallel_message,
    NodeType.AGGREGATOR: _aggregator_message,
}


def completed_response(
    node: WorkflowNode,
    result: Any,
    context: ExecutionContext,
    next_node_id: Optional[str] = None
) -> ChatResponse:
    """Progress message describing a finished node."""
    formatter = _FORMATTERS.get(NodeType(node.type))
    fields = formatter(node, result if isinstance(result, dict) else {}, context)
    return ChatResponse(
        node_id=node.id,
        node_type=node.type,
        next_node_id=next_node_id,
        is_node_complete=True,
        **fields,
    )


def rewrite_prompt(query: str, node: WorkflowNode, previous: List[ChatResponse]) -> str:
    """Prompt asking the agent to tailor ``query`` to ``node`` given the responses so far."""
    history = "\n".join(f"Node {response.node_id}: {response.message}" for response in previous if response.message)
    current = previous[-1].message if previous else ""
    return f"""You are transforming a user query for the next node in a workflow based on previous results.

Original User Query: "{query}"

Previous Node Results:
{history}

Current Response: {current}

Next Node Details:
- Type: {node.type}
- Label: {node.data.get('label') or 'Unnamed'}
- Server: {node.data.get('serverId') or 'N/A'}
- Tool: {node.data.get('toolName') or 'N/A'}

Transform or enhance the original query to be more specific and contextual for the next node, incorporating insights and results from previous nodes. If no transformation is needed, return the original query.

Provide only the transformed query, no explanations."""


async def rewrite_query(
    agent: AgentCollaborator,
    query: str,
    node: WorkflowNode,
    previous: List[ChatResponse]
) -> str:
    """
    Ask the agent for a node-specific version of ``query``.

    Falls back to ``query`` for start nodes, before any node has answered,
    when the agent fails, or when its answer is empty or too long.
    """
    if node.type == NodeType.START.value or not previous:
        return query

    try:
        response = await agent.process_message(rewrite_prompt(query, node, previous))
    except Exception as e:
        logger.warning(f"Query rewrite for node {node.id} failed, keeping original query: {e}")
        return query

    rewritten = (response.content or "").strip()
    if not rewritten or len(rewritten) >= MAX_REWRITTEN_QUERY_LENGTH:
        logger.warning(f"Query rewrite for node {node.id} unusable, keeping original query")
        return query
    return rewritten
