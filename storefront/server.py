"""
Process entry point: ``storefront-api`` or ``python -m storefront.server``.

Binds to HOST/PORT from the environment (defaults 0.0.0.0:8000).
"""
import os
import sys

import uvicorn


def _read_port() -> int:
    """Fetch and validate the PORT environment variable."""
    value = os.environ.get("PORT", "8000")
    try:
        return int(value)
    except ValueError as exc:
        raise SystemExit(f"Invalid PORT '{value}': {exc}") from exc


def main() -> None:
    uvicorn.run(
        "storefront.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=_read_port(),
        proxy_headers=True,
    )


if __name__ == "__main__":
    try:
        main()
    except Exception as exc:
        print(f"Failed to start API: {exc}", file=sys.stderr)
        raise
