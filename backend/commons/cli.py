#!/usr/bin/env python3
"""
Commons CLI

Command-line interface for running the Commons API server.
"""

import argparse
import sys

from aiohttp import web

from backend.commons.api import create_app
from backend.commons.config import CommonsConfig
from backend.utils.logger import configure_logging


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Agent Commons API Server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    parser.add_argument("--log-level", default=None, help="Log level (overrides COMMONS_LOG_LEVEL)")

    args = parser.parse_args()

    # Load configuration
    try:
        config = CommonsConfig.from_env(args.env_file)
        if args.log_level:
            config.log_level = args.log_level.upper()
        config.validate()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(log_level=config.log_level, log_dir=config.log_dir, force=True)

    # Create and run app
    app = create_app(config)

    print(f"""
Agent Commons API Server
  Model:    {config.model}
  Database: {config.database_url}
  Listen:   {args.host}:{args.port}

  Endpoints:
    POST   /api/commons/agents
    PATCH  /api/commons/agents/{{id}}
    POST   /api/commons/agents/{{id}}/run
    WS     /api/commons/agents/{{id}}/stream
    POST   /api/commons/agents/{{id}}/interact
    GET    /api/commons/sessions/{{id}}/context
    POST   /api/commons/sessions/{{id}}/context/save
    POST   /api/commons/sessions/{{id}}/context/load
    DELETE /api/commons/sessions/{{id}}/context
    POST   /api/commons/sessions/{{id}}/title
    GET    /api/commons/health
""")

    web.run_app(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
