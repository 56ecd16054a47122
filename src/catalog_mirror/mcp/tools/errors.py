"""Error response builder for MCP tool handlers.

Errors carry a corrective action so that an agent can recover without
human intervention.
"""

import mcp.types as types

# Corrective actions per error type
ACTIONS: dict[str, str] = {
    "validation_error": "Check parameter values and retry.",
    "already_running": (
        "Wait for the active run to finish (see catalog_sync_status) "
        "or cancel it with catalog_sync_cancel."
    ),
    "sync_error": "Check catalog connectivity with ping, then retry.",
    "unknown_tool": "Use list_tools to see available tools.",
    "server_error": "Check the server log and retry later.",
}


def build_error_response(
    error_type: str, message: str, corrective_action: str | None = None
) -> types.CallToolResult:
    """Build a structured error response with corrective action.

    Args:
        error_type: Error category (validation_error, already_running,
            sync_error, unknown_tool, server_error)
        message: Human-readable error description
        corrective_action: Action the agent can take. Defaults to the
            standard action for *error_type*.

    Returns:
        CallToolResult with isError=True

    Examples:
        >>> build_error_response("validation_error", "case_id is required")
        CallToolResult(content=[TextContent(...)], isError=True)
    """
    action = corrective_action or ACTIONS.get(error_type, ACTIONS["server_error"])
    error_text = f"Error ({error_type}): {message}\n\nAction: {action}"

    return types.CallToolResult(
        content=[types.TextContent(type="text", text=error_text)],
        isError=True,
    )
