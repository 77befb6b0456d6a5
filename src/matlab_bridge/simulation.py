"""Canned MATLAB MCP responses served while no upstream worker is reachable."""

from mcp import types

SIMULATED_TOOLS = [
    types.Tool(
        name="matlab_execute",
        description="Execute MATLAB code and return results",
        inputSchema={
            "type": "object",
            "properties": {
                "code": {"type": "string", "description": "MATLAB code to execute"},
            },
            "required": ["code"],
        },
    ),
    types.Tool(
        name="matlab_script",
        description="Generate and save MATLAB script",
        inputSchema={
            "type": "object",
            "properties": {
                "filename": {"type": "string", "description": "Script filename"},
                "content": {"type": "string", "description": "Script content"},
            },
            "required": ["filename", "content"],
        },
    ),
]

SIMULATED_CALL_TEXT = (
    "Simulated MATLAB response: "
    "Connection to actual MATLAB server required for real execution"
)


def _dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def simulate_response(request: dict) -> dict:
    method = request.get("method")
    response = {"jsonrpc": "2.0", "id": request.get("id")}

    if method == "tools/list":
        response["result"] = _dump(types.ListToolsResult(tools=SIMULATED_TOOLS))
    elif method == "tools/call":
        response["result"] = _dump(
            types.CallToolResult(
                content=[types.TextContent(type="text", text=SIMULATED_CALL_TEXT)]
            )
        )
    else:
        response["error"] = _dump(
            types.ErrorData(
                code=types.METHOD_NOT_FOUND,
                message=f"Method '{method}' not found in simulation mode",
            )
        )
    return response
