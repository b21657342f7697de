# scholar_rag/app/server.py
"""HTTP server entrypoint.

Run with:
    scholar-rag-api --config-file config/config.yaml --port 8000
"""
from __future__ import annotations

import argparse
import logging
import os
from typing import Optional, Sequence

import uvicorn


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve the answering API over HTTP")

    parser.add_argument(
        "--config-file",
        "-c",
        type=str,
        default=os.environ.get("SCHOLAR_RAG_CONFIG", "/app/config/config.yaml"),
        help="Path to the YAML configuration file.",
    )
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Interface to bind.")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on.")
    parser.add_argument("--reload", action="store_true", help="Restart on code changes.")
    parser.add_argument(
        "--log-level",
        type=str,
        default="info",
        choices=["critical", "error", "warning", "info", "debug"],
        help="Server and application log level.",
    )

    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Read by the startup hook in scholar_rag.app.api
    os.environ["SCHOLAR_RAG_CONFIG"] = args.config_file

    uvicorn.run(
        "scholar_rag.app.api:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
