#!/usr/bin/env python3
"""
Container entry point - runs the Sloth Proxy server.

The FastAPI `app` is exposed at module level for uvicorn to import:
    uvicorn app:app --host 0.0.0.0 --port 8080
"""
import os
import sys

# Make the source tree importable without installing the package
_project_root = os.path.dirname(os.path.abspath(__file__))
_src_path = os.path.join(_project_root, "sloth_proxy", "src")
if _src_path not in sys.path:
    sys.path.insert(0, _src_path)

from sloth_proxy.server import app  # noqa: E402

__all__ = ["app"]

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))

    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=port)
