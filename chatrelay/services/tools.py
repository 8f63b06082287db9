"""
Tool definitions advertised to the model on every turn.

The server never executes these; a ``tool_use`` is forwarded to the client,
which calls the matching HTTP endpoint and sends back a ``tool_result``.
"""

from typing import Any, Dict, List

GITHUB_SEARCH = "github_search"
GITHUB_GET_FILE = "github_get_file"

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": GITHUB_SEARCH,
        "description": (
            "Search code or file paths in a GitHub repository. Returns a list of "
            "matches with repo, path, ref and url."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "repo": {
                    "type": "string",
                    "description": "Repository in 'owner/name' form",
                },
                "q": {"type": "string", "description": "Search query"},
                "type": {
                    "type": "string",
                    "enum": ["code", "path"],
                    "description": "Search file contents ('code') or file paths ('path')",
                },
            },
            "required": ["repo", "q"],
        },
    },
    {
        "name": GITHUB_GET_FILE,
        "description": (
            "Fetch a line range of a file from a GitHub repository. Returns the "
            "snippet and its url."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "repo": {
                    "type": "string",
                    "description": "Repository in 'owner/name' form",
                },
                "ref": {
                    "type": "string",
                    "description": "Branch, tag or commit sha",
                },
                "path": {"type": "string", "description": "File path in the repository"},
                "start": {"type": "integer", "description": "First line (1-based)"},
                "end": {"type": "integer", "description": "Last line (inclusive)"},
            },
            "required": ["repo", "path"],
        },
    },
]


__all__ = ["GITHUB_GET_FILE", "GITHUB_SEARCH", "TOOL_DEFINITIONS"]
