"""Azure DevOps download MCP server package.

Exposes build-log and artifact downloads, plus administration of the
server's temporary download directory, as MCP tools.

Usage::

    # As a module:
    python -m ado_mcp.mcp

    # Or import and run:
    from ado_mcp.mcp import main
    asyncio.run(main())
"""

from .server import main  # noqa: F401

__all__ = ["main"]
