"""Story Driver — dev launcher. Starts the backend in watch mode."""

import argparse
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "13013"))


def main():
    parser = argparse.ArgumentParser(description="Story Driver dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--no-reload", action="store_true",
                        help="Disable auto-reload on code changes")
    args = parser.parse_args()

    # uvicorn imports backend.app in a fresh process; pass the data dir via env
    if args.data_dir:
        os.environ["DATA_DIR"] = str(args.data_dir.resolve())

    print(f"Starting backend on http://localhost:{PORT} ...")
    uvicorn.run("backend.app:app", host=HOST, port=PORT, reload=not args.no_reload)


if __name__ == "__main__":
    main()
