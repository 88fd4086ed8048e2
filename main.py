"""
main.py: KeyDesk API launcher.

    python main.py                 # API on 127.0.0.1:8000, opens /docs
    python main.py --no-browser --port 9000

The reception console is a separate Streamlit app:

    streamlit run dashboard/app.py

Without real hardware, start the simulated local agent on the bridge port:

    uvicorn keydesk.simulator:app --port 3001
"""

from __future__ import annotations

import argparse
import threading
import time
import webbrowser

import requests
import uvicorn


def _wait_then_open(docs_url: str, timeout_seconds: float = 20.0) -> None:
    """Open the API docs once the server answers, or give up quietly."""
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        try:
            ready = requests.get(docs_url, timeout=1).ok
        except requests.exceptions.RequestException:
            ready = False
        if ready:
            webbrowser.open(docs_url)
            return
        time.sleep(0.5)
    print(f"  API did not come up within {timeout_seconds:.0f}s; open {docs_url} manually")


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the KeyDesk API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--no-browser", action="store_true")
    parser.add_argument("--no-reload", action="store_true")
    args = parser.parse_args()

    docs_url = f"http://{args.host}:{args.port}/docs"
    print(f"KeyDesk API on http://{args.host}:{args.port} (docs: {docs_url})")
    print("Console: streamlit run dashboard/app.py")

    if not args.no_browser:
        threading.Thread(target=_wait_then_open, args=(docs_url,), daemon=True).start()

    uvicorn.run(
        "keydesk.main:app",
        host=args.host,
        port=args.port,
        reload=not args.no_reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
