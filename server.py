#!/usr/bin/env python3
"""
Redmine Chat Bot Server - Answers chat commands against a Redmine tracker.

This server acts as a bridge between chat front-ends and the Redmine REST API.
People type short free-text instructions ("show my issues", "close 1234",
"1234 is ready to test, assign Jane") and get a human-readable reply back.

Supports three ways in:
1. STDIO: MCP tools for local integration with MCP clients
2. SSE: MCP over Server-Sent Events for remote deployment
3. HTTP webhook: POST /message for chat layers that just want a reply string
"""

# Import FastMCP for exposing the interpreter as MCP tools
from fastmcp import FastMCP

# Import Starlette for the ASGI web application (health check, webhook, SSE)
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.routing import Mount, Route
from starlette.responses import JSONResponse

# Import uvicorn for serving the ASGI app in SSE mode
import uvicorn

# Import standard libraries
import os
import sys
import json
import logging
import argparse
from dotenv import load_dotenv
from pydantic import Field

from commands import CommandInterpreter, INTENT_MATCHERS
from directory import DirectoryCache
from models import CustomFieldName, IssueStatus
from redmine_api import DEFAULT_USER_AGENT, RedmineClient

# Load environment variables from .env file (REDMINE_BASE_URL, REDMINE_API_KEY, etc.)
load_dotenv()

# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================
# Handlers go on the root logger so the client, directory and interpreter
# modules (each using logging.getLogger(__name__)) share the same output.

logger = logging.getLogger(__name__)
root_logger = logging.getLogger()

# Options: DEBUG, INFO, WARNING, ERROR, CRITICAL
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
root_logger.setLevel(getattr(logging, log_level, logging.INFO))

# Format: 2024-01-27 10:30:45 - commands - INFO - Message here
log_formatter = logging.Formatter(
    '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

console_handler = logging.StreamHandler()
console_handler.setLevel(logging.DEBUG)
console_handler.setFormatter(log_formatter)
root_logger.addHandler(console_handler)

# Optional file handler, enabled by LOG_FILE
log_file = os.getenv("LOG_FILE")
if log_file:
    # Generate date-based log filename: redmine-chatbot.yyyy-mm-dd.log
    from datetime import datetime
    log_date = datetime.now().strftime("%Y-%m-%d")

    log_dir = os.path.dirname(log_file)
    log_basename = os.path.basename(log_file)

    if log_basename.endswith('.log'):
        base_name = log_basename[:-4]
        dated_log_file = os.path.join(log_dir, f"{base_name}.{log_date}.log")
    else:
        dated_log_file = f"{log_file}.{log_date}.log"

    file_handler = logging.FileHandler(dated_log_file)
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(log_formatter)
    root_logger.addHandler(file_handler)
    logger.info(f"File logging enabled: {dated_log_file}")

# IMPORTANT: requests/urllib3 log full request details at DEBUG level,
# which would include the X-Redmine-API-Key header
logging.getLogger("requests").setLevel(logging.WARNING)
logging.getLogger("urllib3").setLevel(logging.WARNING)

logger.info(f"Logging initialized at {log_level} level")

# ============================================================================
# CONFIGURATION
# ============================================================================
# All configuration values come from environment variables so one image can
# serve any Redmine instance.

# Redmine base URL, e.g. https://redmine.example.com/redmine (no trailing slash)
REDMINE_BASE_URL = os.getenv("REDMINE_BASE_URL", "")

# API key of the bot's Redmine account (My account -> API access key)
REDMINE_API_KEY = os.getenv("REDMINE_API_KEY", "")

REDMINE_USER_AGENT = os.getenv("REDMINE_USER_AGENT", DEFAULT_USER_AGENT)

# Name the bot signs its notes with ("Closed by SSIbot on behalf of Jane.")
BOT_NAME = os.getenv("BOT_NAME", "SSIbot")

# Read each issue back after updating it and report when the change didn't take
VERIFY_UPDATES = os.getenv("REDMINE_VERIFY_UPDATES", "false").strip().lower() in ("1", "true", "yes", "on")

MCP_SERVER_NAME = os.getenv("MCP_SERVER_NAME", "Redmine")

if not (REDMINE_BASE_URL and REDMINE_API_KEY):
    logger.warning("REDMINE_BASE_URL or REDMINE_API_KEY is not set; every command will be refused")

# The directory cache lives as long as the process; it is shared by the MCP
# tools and the webhook
client = RedmineClient(REDMINE_BASE_URL, REDMINE_API_KEY, user_agent=REDMINE_USER_AGENT)
directory = DirectoryCache(client)
interpreter = CommandInterpreter(client, directory, bot_name=BOT_NAME, verify_updates=VERIFY_UPDATES)

mcp = FastMCP(MCP_SERVER_NAME)

# ============================================================================
# HTTP ROUTES
# ============================================================================

async def health_check(request):
    """
    Health check endpoint for monitoring server status.

    Returns JSON with:
    - status: "ok" if server is running
    - service: Service name
    - version: Current version
    - base_url: Configured Redmine URL
    - configured: Whether API key and base URL are both set
    - directory_loaded: Whether the user directory has been fetched yet
    """
    return JSONResponse({
        "status": "ok",
        "service": "Redmine Chat Bot",
        "version": "1.0.0",
        "base_url": REDMINE_BASE_URL,
        "configured": client.is_configured(),
        "directory_loaded": directory.is_loaded,
        "endpoints": {
            "health": "/",
            "message": "/message",
            "sse": "/sse"
        }
    })


async def message_webhook(request):
    """
    Chat webhook: answer one message.

    Expects JSON ``{"message": "...", "user": "<display name>"}`` and returns
    ``{"reply": "..."}``. The interpreter makes blocking HTTP calls, so it
    runs in the threadpool.
    """
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"error": "Request body must be JSON"}, status_code=400)

    if not isinstance(body, dict):
        return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)

    message = body.get("message")
    user_name = body.get("user")
    if not isinstance(message, str) or not isinstance(user_name, str) or not user_name.strip():
        return JSONResponse(
            {"error": "Both 'message' and 'user' must be non-empty strings"},
            status_code=400
        )

    logger.info(f"Webhook message from {user_name}")
    reply = await run_in_threadpool(interpreter.handle, message, user_name)
    return JSONResponse({"reply": reply})


# Routes are matched in order; the MCP SSE app takes everything else
app = Starlette(
    routes=[
        Route("/", health_check),
        Route("/message", message_webhook, methods=["POST"]),
        Mount("/", app=mcp.http_app(transport="sse"))
    ]
)

# ============================================================================
# MCP TOOLS
# ============================================================================

@mcp.tool(
    name = "handle_message",
    description = "Run a free-text Redmine chat command on behalf of a user and return the bot's reply. Understands 'show/get my issues', 'close <id>' and '<id> ready to test assign <name>'."
)
def handle_message(
    message: str = Field(description="The chat message, e.g. 'close 1234' or '1234 ready to test assign Jane'"),
    user_name: str = Field(description="Display name (first or last name) of the person who sent the message")
) -> str:
    """
    Run one chat command.

    The reply is always a string: errors such as an unknown user or a
    missing issue number come back as text, never as an exception.

    Examples:
        handle_message("show my issues", "Jane")
        handle_message("please close issue 42 now", "Jane")
        handle_message("mark 10 ready to test assign Bob", "Jane")
    """
    return interpreter.handle(message, user_name)


def _lookup_user(name: str) -> dict:
    """
    Internal helper behind the lookup_user tool.
    This is NOT an MCP tool, so it can be called from other Python functions.

    Returns:
        dict: {'status': 'OK', 'name': str, 'user_id': int}
              or {'status': 'failed', 'error': str, 'error_type': str}
    """
    if not client.is_configured():
        return {
            'status': 'failed',
            'error': 'REDMINE_BASE_URL and REDMINE_API_KEY must be set',
            'error_type': 'ConfigurationError'
        }

    loaded = directory.ensure_loaded()
    if loaded.get('status') != 'OK':
        return loaded

    user_id = directory.resolve(name)
    if user_id is None:
        return {
            'status': 'failed',
            'error': f'No user named "{name}"',
            'error_type': 'UserNotFound'
        }
    return {'status': 'OK', 'name': name, 'user_id': user_id}


@mcp.tool(
    name = "lookup_user",
    description = "Resolve a first or last name (case-insensitive) to a Redmine user id using the bot's user directory."
)
def lookup_user(
    name: str = Field(description="First or last name to look up")
) -> dict:
    """
    Resolve a name the same way chat commands do.

    Returns:
        dict: see _lookup_user
    """
    return _lookup_user(name)


# ============================================================================
# MCP RESOURCES
# ============================================================================

@mcp.resource("redmine://config/settings")
def get_server_config() -> str:
    """Server configuration"""
    return json.dumps({
        "base_url": REDMINE_BASE_URL,
        "version": "1.0.0",
        "bot_name": BOT_NAME,
        "verify_updates": VERIFY_UPDATES,
        "intents": {m.intent.value: list(m.keywords) for m in INTENT_MATCHERS}
    }, indent=2)


@mcp.resource("redmine://docs/statuses")
def get_issue_statuses() -> str:
    """Issue status codes"""
    return json.dumps({status.name: status.value for status in IssueStatus}, indent=2)


@mcp.resource("redmine://docs/custom-fields")
def get_custom_fields() -> str:
    """Custom field names"""
    return json.dumps([field.value for field in CustomFieldName], indent=2)


@mcp.prompt()
def command_help() -> str:
    """
    Prompt explaining which chat commands the bot understands.
    """
    return """The Redmine bot understands three kinds of messages:

1. "show my issues" or "get my issues"
   Lists issues assigned to you that were created in the last two years.

2. "close 1234" or "reject 1234"
   Closes the first issue number in the message.

3. "1234 ready to test assign Jane"
   Marks the last issue number in the message as Ready to Test and assigns
   it to the last name after the word "assign".

Always pass the sender's first or last name as user_name."""


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """
    Run the server with either STDIO or SSE transport.

    Transport Modes:
    1. STDIO (default): MCP over stdin/stdout for local MCP clients
    2. SSE: web service with uvicorn; also serves the /message webhook
    """
    parser = argparse.ArgumentParser(description='Redmine Chat Bot Server')

    parser.add_argument('--transport', choices=['stdio', 'sse'], default='stdio',
                        help='Transport type: stdio (local dev) or sse (production)')

    # SSE-specific arguments (ignored in stdio mode)
    parser.add_argument('--host', default='0.0.0.0',
                        help='Host to bind to for SSE (default: 0.0.0.0)')
    parser.add_argument('--port', type=int, default=8000,
                        help='Port to bind to for SSE (default: 8000)')

    args = parser.parse_args()

    logger.info("=" * 60)
    logger.info("Redmine Chat Bot Starting")
    logger.info(f"Redmine Base URL: {REDMINE_BASE_URL or '(not set)'}")
    logger.info(f"Transport Mode: {args.transport}")
    logger.info(f"Log Level: {log_level}")
    logger.info("=" * 60)

    # stdout is reserved for STDIO communication
    print(f"Redmine Chat Bot | Redmine: {REDMINE_BASE_URL or '(not set)'} | Transport: {args.transport}", file=sys.stderr)

    if args.transport == 'sse':
        # One ASGI app: health check, POST /message webhook and the MCP SSE endpoint
        logger.info(f"Starting SSE server on {args.host}:{args.port} (webhook at /message, MCP at /sse)")
        try:
            uvicorn.run(
                app,
                host=args.host,
                port=args.port,
                log_level="info"
            )
        except Exception as e:
            logger.critical(f"Failed to start SSE server: {e}", exc_info=True)
            sys.exit(1)
    else:
        logger.info("Starting STDIO server (stdin/stdout communication)")
        try:
            mcp.run(transport='stdio')
        except KeyboardInterrupt:
            logger.info("Server stopped by user (Ctrl+C)")
        except Exception as e:
            logger.critical(f"Failed to start STDIO server: {e}", exc_info=True)
            sys.exit(1)


if __name__ == "__main__":
    main()
