"""
Granite Bank API Server Entry Point.

Run with:
    python -m granite_sim.api.main

Or with uvicorn directly:
    uvicorn granite_sim.api.main:get_app --factory --host 0.0.0.0 --port 8000
"""

import argparse
import logging
import os
from pathlib import Path

import uvicorn

from ..config import load_config
from .server import create_app


def main():
    """Main entry point for the Granite Bank API server."""
    parser = argparse.ArgumentParser(description="Granite Bank API Server")
    parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )
    parser.add_argument(
        "--data",
        default="data",
        help="Directory for the persisted session state",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="YAML file overriding simulation tunables",
    )
    parser.add_argument(
        "--tick",
        type=float,
        default=None,
        help="Seconds between accrual ticks (overrides config)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    data_dir = Path(args.data).resolve()

    # Set environment variables for the app factory
    os.environ["GRANITE_DATA_DIR"] = str(data_dir)
    if args.config:
        os.environ["GRANITE_CONFIG"] = str(Path(args.config).resolve())
    if args.tick is not None:
        os.environ["GRANITE_TICK_SECONDS"] = str(args.tick)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print("Starting Granite Bank API Server")
    print(f"  Host: {args.host}")
    print(f"  Port: {args.port}")
    print(f"  Data: {data_dir}")
    print(f"  Config: {args.config or '(defaults)'}")
    print()

    uvicorn.run(
        "granite_sim.api.main:get_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="debug" if args.debug else "info",
    )


def get_app():
    """Factory function for creating the FastAPI app from the environment."""
    config = load_config(os.environ.get("GRANITE_CONFIG"))
    tick = os.environ.get("GRANITE_TICK_SECONDS")
    if tick:
        config = config.model_copy(update={"tick_seconds": float(tick)})

    return create_app(
        data_dir=os.environ.get("GRANITE_DATA_DIR", "data"),
        config=config,
    )


if __name__ == "__main__":
    main()
