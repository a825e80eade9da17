"""NotebookLM Pool MCP Server."""

import argparse
import functools
import json
import logging
import os
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import urlparse

from fastmcp import FastMCP
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from . import __version__
from .config import Config
from .constants import NOTEBOOKLM_HOST, ROTATION_STRATEGIES, SOURCE_FORMATS
from .discovery import AutoDiscovery
from .errors import NotebookPoolError
from .service import NotebookService

# MCP request/response logger
mcp_logger = logging.getLogger("notebooklm_pool.mcp")


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Shut the notebook service down when the server stops."""
    try:
        yield
    finally:
        if _service is not None:
            await _service.shutdown()
            mcp_logger.info("Service shut down")


mcp = FastMCP(
    name="notebooklm-pool",
    lifespan=lifespan,
    instructions="""NotebookLM Pool MCP - ask questions to NotebookLM notebooks through a pool of Google accounts.

**Auth:** Accounts are managed with the `notebooklm-pool-accounts` CLI. If a question fails with an authentication error, call auto_login or run `notebooklm-pool-accounts login <id>`.
**Sessions:** Pass the same session_id to keep a conversation going; sessions close after the configured idle timeout.
**Sources:** source_format controls citations: none, inline, footnotes, json, expanded.""",
)


@mcp.custom_route("/health", methods=["GET"])
async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint for load balancers and monitoring."""
    return JSONResponse({
        "status": "healthy",
        "service": "notebooklm-pool",
        "version": __version__,
    })


# Global state
_service: NotebookService | None = None
_api_key: str | None = os.environ.get("NOTEBOOKLM_API_KEY")


def validate_api_key(request: Request) -> JSONResponse | None:
    """Validate API key from Authorization header.

    Returns None if auth passes, JSONResponse with error if auth fails.
    """
    if not _api_key:
        return None

    # Load balancers probe /health without credentials
    if request.url.path == "/health":
        return None

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return JSONResponse(
            {"error": "Missing or invalid Authorization header. Use 'Bearer <api_key>'"},
            status_code=401,
        )

    provided_key = auth_header[len("Bearer "):]
    if not secrets.compare_digest(provided_key, _api_key):
        return JSONResponse({"error": "Invalid API key"}, status_code=401)

    return None


class APIKeyAuthMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce API key authentication for HTTP transport."""

    async def dispatch(self, request: Request, call_next):
        auth_error = validate_api_key(request)
        if auth_error:
            return auth_error
        return await call_next(request)


def logged_tool():
    """Decorator that combines @mcp.tool() with MCP request/response logging."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            tool_name = func.__name__
            if mcp_logger.isEnabledFor(logging.DEBUG):
                params = {k: v for k, v in kwargs.items() if v is not None}
                mcp_logger.debug(f"MCP Request: {tool_name}({json.dumps(params, default=str)})")

            result = await func(*args, **kwargs)

            if mcp_logger.isEnabledFor(logging.DEBUG):
                result_str = json.dumps(result, default=str)
                if len(result_str) > 1000:
                    result_str = result_str[:1000] + "..."
                mcp_logger.debug(f"MCP Response: {tool_name} -> {result_str}")

            return result
        return mcp.tool()(wrapper)
    return decorator


def get_service() -> NotebookService:
    """Get or create the notebook service from environment configuration."""
    global _service
    if _service is None:
        _service = NotebookService(Config.from_env())
    return _service


def validate_notebook_host(url: str) -> str | None:
    """Return an error message unless ``url`` points at NotebookLM."""
    try:
        parsed = urlparse(url or "")
    except ValueError:
        return "Invalid URL format"
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return "Invalid URL format"
    if parsed.hostname != NOTEBOOKLM_HOST:
        return f"Invalid hostname: {parsed.hostname} (expected {NOTEBOOKLM_HOST})"
    return None


@logged_tool()
async def ask_question(
    question: str,
    notebook_url: str,
    session_id: str | None = None,
    source_format: str = "none",
    show_browser: bool = False,
) -> dict[str, Any]:
    """Ask a NotebookLM notebook a question and wait for the full answer.

    Args:
        question: Question to ask
        notebook_url: Notebook URL (https://notebooklm.google.com/notebook/...)
        session_id: Reuse a session to keep conversation context (optional)
        source_format: Citation format: none, inline, footnotes, json, expanded
        show_browser: Run the browser visibly (debugging)
    """
    error = validate_notebook_host(notebook_url)
    if error:
        return {"status": "error", "error": error, "question": question, "notebook_url": notebook_url}
    if not SOURCE_FORMATS.is_valid(source_format):
        return {
            "status": "error",
            "error": f"Unknown source_format '{source_format}'. Use: {SOURCE_FORMATS.options_str}",
            "question": question,
            "notebook_url": notebook_url,
        }
    return await get_service().ask_question(
        question,
        notebook_url,
        session_id=session_id,
        source_format=source_format,
        show_browser=show_browser or None,
    )


@logged_tool()
async def list_sessions() -> dict[str, Any]:
    """List active browser sessions with their age and message counts."""
    try:
        registry = get_service().registry
        return {
            "status": "success",
            "sessions": registry.get_all_sessions_info(),
            **registry.get_stats(),
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
async def close_session(session_id: str) -> dict[str, Any]:
    """Close a browser session.

    Args:
        session_id: Session to close
    """
    try:
        closed = await get_service().registry.close_session(session_id)
        if not closed:
            return {"status": "error", "error": f"Session not found: {session_id}"}
        return {"status": "success", "message": f"Session {session_id} closed"}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
async def reset_session(session_id: str) -> dict[str, Any]:
    """Start a fresh conversation in an existing session.

    Args:
        session_id: Session to reset
    """
    try:
        session = get_service().registry.get_session(session_id)
        if session is None:
            return {"status": "error", "error": f"Session not found: {session_id}"}
        await session.reset()
        return {"status": "success", "message": f"Session {session_id} reset", "session": session.get_info()}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
async def cleanup_sessions() -> dict[str, Any]:
    """Close every session that has been idle longer than the timeout."""
    try:
        closed = await get_service().registry.cleanup_inactive_sessions()
        return {"status": "success", "closed": closed}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
async def get_health() -> dict[str, Any]:
    """Report authentication, session and browser context status."""
    try:
        service = get_service()
        await service.start()
        return {"status": "success", "version": __version__, "health": service.get_health()}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
async def list_accounts() -> dict[str, Any]:
    """List pooled accounts with quota and session status. Emails are masked."""
    try:
        service = get_service()
        await service.start()
        store = service.store
        return {
            "status": "success",
            "rotation_strategy": store.get_rotation_strategy().value,
            "auto_login_enabled": store.is_auto_login_enabled(),
            "current_account_id": service.current_account_id,
            "accounts": [account.to_summary() for account in store.list_accounts()],
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
async def account_health() -> dict[str, Any]:
    """Check every account for problems (quota, expired login, repeated failures)."""
    try:
        service = get_service()
        await service.start()
        report = await service.store.health_check()
        return {
            "status": "success",
            "healthy": sum(1 for entry in report if not entry.issues),
            "accounts": [entry.to_dict() for entry in report],
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
async def set_rotation_strategy(strategy: str) -> dict[str, Any]:
    """Choose how the next account is picked.

    Args:
        strategy: least_used, round_robin, failover or random
    """
    try:
        if not ROTATION_STRATEGIES.is_valid(strategy):
            return {
                "status": "error",
                "error": f"Unknown strategy '{strategy}'. Use: {ROTATION_STRATEGIES.options_str}",
            }
        service = get_service()
        await service.start()
        applied = await service.store.set_rotation_strategy(strategy)
        return {"status": "success", "rotation_strategy": applied.value}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
async def auto_login(
    account_id: str | None = None,
    show_browser: bool = False,
    timeout_seconds: float | None = None,
) -> dict[str, Any]:
    """Sign an account in to Google with its stored credentials.

    Args:
        account_id: Account to log in (default: best account by rotation)
        show_browser: Run the browser visibly, e.g. to watch a 2FA prompt
        timeout_seconds: Give up after this many seconds
    """
    try:
        return await get_service().auto_login(
            account_id, show_browser=show_browser or None, timeout_seconds=timeout_seconds
        )
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
async def discover_notebook(notebook_url: str) -> dict[str, Any]:
    """Ask a notebook for a short name, description and tags.

    Args:
        notebook_url: Notebook URL (https://notebooklm.google.com/notebook/...)
    """
    error = validate_notebook_host(notebook_url)
    if error:
        return {"status": "error", "error": error}
    try:
        service = get_service()
        await service.ensure_authenticated()
        metadata = await AutoDiscovery(service.registry).discover_metadata(notebook_url)
        return {"status": "success", "notebook_url": notebook_url, **metadata.to_dict()}
    except NotebookPoolError as e:
        return {"status": "error", "error": str(e)}
    except Exception as e:
        mcp_logger.exception("discover_notebook failed")
        return {"status": "error", "error": str(e)}


def _print_http_banner(args, url: str) -> None:
    print(f"Starting NotebookLM Pool MCP server ({args.transport.upper()}) on {url}")
    print(f"Health check: http://{args.host}:{args.port}/health")
    if _api_key:
        print("API key authentication: ENABLED")
    else:
        print("WARNING: No API key set. Server is publicly accessible!")
        print("         Use --api-key or NOTEBOOKLM_API_KEY to secure your server.")
    if args.stateless:
        print("Stateless mode: ENABLED (suitable for horizontal scaling)")


def main():
    """Run the MCP server.

    Supports multiple transports:
    - stdio (default): For desktop apps like Claude Desktop
    - http: Streamable HTTP for network access
    - sse: Legacy SSE transport (backwards compatibility)

    Configuration via CLI args or environment variables.
    """
    parser = argparse.ArgumentParser(
        description="NotebookLM Pool MCP Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  NOTEBOOKLM_MCP_TRANSPORT     Transport type (stdio, http, sse)
  NOTEBOOKLM_MCP_HOST          Host to bind (default: 127.0.0.1)
  NOTEBOOKLM_MCP_PORT          Port to listen on (default: 8000)
  NOTEBOOKLM_MCP_PATH          MCP endpoint path (default: /mcp)
  NOTEBOOKLM_MCP_STATELESS     Enable stateless mode for scaling (true/false)
  NOTEBOOKLM_MCP_DEBUG         Enable debug logging (true/false)
  NOTEBOOKLM_API_KEY           Bearer token required for HTTP/SSE
  NOTEBOOKLM_DATA_DIR          Accounts and browser data (default: ~/.notebooklm-pool)
  NOTEBOOKLM_HEADLESS          Run Chrome headless (default: true)
  NOTEBOOKLM_MAX_SESSIONS      Concurrent sessions (default: 10)
  NOTEBOOKLM_SESSION_TIMEOUT   Idle minutes before a session closes, 0 = never (default: 15)
  NOTEBOOKLM_QUERY_TIMEOUT     Answer timeout in seconds (default: 120.0)
  NOTEBOOKLM_ENCRYPTION_KEY    64 hex chars; overrides the key file

Examples:
  notebooklm-pool                              # Default stdio transport
  notebooklm-pool --transport http             # HTTP on localhost:8000
  notebooklm-pool --transport http --port 3000 # HTTP on custom port
  notebooklm-pool --debug                      # Log MCP calls and browser automation
        """
    )

    parser.add_argument(
        "--transport", "-t",
        choices=["stdio", "http", "sse"],
        default=os.environ.get("NOTEBOOKLM_MCP_TRANSPORT", "stdio"),
        help="Transport protocol (default: stdio)"
    )
    parser.add_argument(
        "--host", "-H",
        default=os.environ.get("NOTEBOOKLM_MCP_HOST", "127.0.0.1"),
        help="Host to bind for HTTP/SSE (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=int(os.environ.get("NOTEBOOKLM_MCP_PORT", "8000")),
        help="Port for HTTP/SSE transport (default: 8000)"
    )
    parser.add_argument(
        "--path",
        default=os.environ.get("NOTEBOOKLM_MCP_PATH", "/mcp"),
        help="MCP endpoint path for HTTP (default: /mcp)"
    )
    parser.add_argument(
        "--stateless",
        action="store_true",
        default=os.environ.get("NOTEBOOKLM_MCP_STATELESS", "").lower() == "true",
        help="Enable stateless mode for horizontal scaling"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=os.environ.get("NOTEBOOKLM_MCP_DEBUG", "").lower() == "true",
        help="Enable debug logging (MCP tool calls + browser automation)"
    )
    parser.add_argument(
        "--query-timeout",
        type=float,
        default=float(os.environ.get("NOTEBOOKLM_QUERY_TIMEOUT", "120.0")),
        help="Answer timeout in seconds (default: 120.0)"
    )
    parser.add_argument(
        "--show-browser",
        action="store_true",
        help="Run Chrome with a visible window"
    )
    parser.add_argument(
        "--api-key",
        default=os.environ.get("NOTEBOOKLM_API_KEY"),
        help="API key for authentication (also via NOTEBOOKLM_API_KEY env var)"
    )
    args = parser.parse_args()

    global _api_key, _service
    _api_key = args.api_key

    config = Config.from_env()
    config.answer_timeout_seconds = args.query_timeout
    config.debug = config.debug or args.debug
    if args.show_browser:
        config.headless = False
    _service = NotebookService(config)

    if args.debug:
        logging.basicConfig(
            level=logging.WARNING,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

        package_logger = logging.getLogger("notebooklm_pool")
        package_logger.setLevel(logging.DEBUG)
        package_logger.addHandler(handler)
        package_logger.propagate = False

        print("Debug logging: ENABLED (MCP tool calls + browser automation)")

    if args.transport == "http":
        _print_http_banner(args, f"http://{args.host}:{args.port}{args.path}")
        if _api_key:
            import uvicorn

            base_app = mcp.http_app(path=args.path, stateless_http=args.stateless)
            uvicorn.run(APIKeyAuthMiddleware(base_app), host=args.host, port=args.port)
        else:
            mcp.run(
                transport="http",
                host=args.host,
                port=args.port,
                path=args.path,
                stateless_http=args.stateless,
            )
    elif args.transport == "sse":
        _print_http_banner(args, f"http://{args.host}:{args.port}/sse")
        if _api_key:
            import uvicorn

            base_app = mcp.sse_app(stateless_http=args.stateless)
            uvicorn.run(APIKeyAuthMiddleware(base_app), host=args.host, port=args.port)
        else:
            mcp.run(
                transport="sse",
                host=args.host,
                port=args.port,
                stateless_http=args.stateless,
            )
    else:
        # stdio must stay silent
        mcp.run()

    return 0


if __name__ == "__main__":
    exit(main())
