"""Gunicorn configuration for the simulator API."""
import os
import sys

# Gunicorn config variables
bind = f"{os.getenv('KUBESIM_HOST', '0.0.0.0')}:{os.getenv('KUBESIM_PORT', '8080')}"
# The simulation lives in process memory, so more workers means more clusters.
workers = 1
threads = 4
timeout = 120
worker_class = "gthread"
preload_app = False


def post_worker_init(worker):
    """Called just after a worker has initialized the application."""
    app = worker.app.wsgi() if hasattr(worker.app, "wsgi") else None
    simulation = app.config.get('simulation') if app is not None and hasattr(app, 'config') else None
    if simulation is None:
        print(f"[Worker {worker.pid}] WARNING: No simulation found in app.config", file=sys.stderr, flush=True)
        return
    if not simulation.state.nodes:
        simulation.reset()
    print(f"[Worker {worker.pid}] Simulation ready with {len(simulation.state.nodes)} nodes", file=sys.stderr, flush=True)
