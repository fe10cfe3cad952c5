#!/usr/bin/env python3
"""
Run the API server.
Usage: python scripts/serve.py [--host 0.0.0.0] [--port 3000] [--reload]
"""

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def port_in_use(port: int) -> bool:
    import socket
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex(("127.0.0.1", port)) == 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Serve the evaluation API")
    parser.add_argument("--host", default=os.environ.get("HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "3000")))
    parser.add_argument("--reload", action="store_true")
    args = parser.parse_args()

    if port_in_use(args.port):
        print(f"Port {args.port} is in use. Stop the process or pass --port <port>")
        return 1

    import uvicorn

    print(f"  API:  http://localhost:{args.port}/docs")
    uvicorn.run("server.app:app", host=args.host, port=args.port, reload=args.reload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
