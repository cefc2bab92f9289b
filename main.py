"""Companion Tavern: dev launcher. Serves the API with uvicorn."""

import argparse
import logging
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "13013"))


def main():
    parser = argparse.ArgumentParser(description="Companion Tavern dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--port", type=int, default=PORT)
    parser.add_argument("--reload", action="store_true",
                        help="Restart on source changes")
    args = parser.parse_args()

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # The app module reads DATA_DIR at import time.
    if args.data_dir:
        os.environ["DATA_DIR"] = str(args.data_dir.resolve())

    print(f"Starting API on http://localhost:{args.port} ...")
    uvicorn.run("companion_tavern.app:app", host=HOST, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
