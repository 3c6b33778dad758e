"""SceneCast: dev launcher. Starts the API server in watch mode."""

import argparse
import logging
import os
import subprocess
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = os.getenv("PORT", "13013")
LOG_LEVEL = os.getenv("LOG_LEVEL", "info")


def main():
    parser = argparse.ArgumentParser(description="SceneCast dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--reset", action="store_true",
                        help="Delete the saved game and cached images before starting")
    args = parser.parse_args()

    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    data_dir = (args.data_dir or ROOT / "data").resolve()

    # Handle --reset: wipe storage and image cache, then continue to the server
    if args.reset:
        from scenecast.images import ImageCache
        from scenecast.storage import Storage
        storage = Storage(data_dir)
        storage.clear()
        ImageCache(storage.images_dir, storage).reset()

    # Build env for the subprocess so the app picks up the same data dir
    env = os.environ.copy()
    env["DATA_DIR"] = str(data_dir)

    print(f"Starting SceneCast on http://localhost:{PORT} ...")
    proc = subprocess.Popen(
        ["uvicorn", "scenecast.app:create_app", "--factory", "--reload",
         "--host", HOST, "--port", PORT, "--log-level", LOG_LEVEL.lower()],
        cwd=ROOT, env=env,
    )
    try:
        proc.wait()
    except KeyboardInterrupt:
        print("\nShutting down...")
        proc.terminate()
        proc.wait()
        sys.exit(0)


if __name__ == "__main__":
    main()
