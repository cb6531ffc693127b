"""fleetpush — control plane for pushing installable packages to a fleet.

Agents (machines able to install software) and dashboards (operator
consoles) attach to one WebSocket endpoint.  The server keeps a package
catalog keyed by content hash, tracks connected agents, relays install
commands from dashboards to agents and fans status changes back out to
every dashboard.

Quickstart::

    python -m fleetpush.server
    # or
    uvicorn fleetpush.server:create_app --factory --port 8080
"""

__version__ = "1.0.0"
