"""ASGI entrypoint: ``uvicorn main:app --port 8000``.

With ``PDC_ROUTER_URL`` unset the controller drives its in-process routing
table; point ``PDC_ROUTER_URL`` and ``PDC_METRICS_URL`` at a mesh adapter
(or at ``examples/mesh_stub``) to drive real traffic.
"""
from pdc.api import create_app

app = create_app()
