"""Gunicorn configuration for the medical claim liquidation engine API."""

import multiprocessing
import os
from app.settings.v1.settings import SETTINGS

# Server socket
bind = "0.0.0.0:8000"
backlog = 2048

# Worker processes
# Leases live in MongoDB, so several workers may share the same cases
workers = multiprocessing.cpu_count() * 2 + 1
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000

# Restart workers after this many requests to prevent memory leaks
max_requests = 1000
max_requests_jitter = 100

# Timeout settings
# Liquidation runs execute in background threads; graceful shutdown waits for them
timeout = 120
keepalive = 5
graceful_timeout = 60

# Application
wsgi_app = "main:app"

# Logging
accesslog = "-"  # stdout
errorlog = "-"   # stderr
loglevel = SETTINGS.GENERAL.LOG_LEVEL.lower()
access_log_format = (
    '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'
)

# Process naming
proc_name = "liquidaciones-api"

# Daemon mode
daemon = False

# PID file
pidfile = "/tmp/liquidaciones-api.pid"

# User and group
user = os.getenv("API_USER", "nobody")
group = os.getenv("API_GROUP", "nobody")

# SSL (if needed)
keyfile = os.getenv("SSL_KEYFILE")
certfile = os.getenv("SSL_CERTFILE")

# Worker limits
limit_request_line = 4096
limit_request_fields = 100
limit_request_field_size = 8192

# Enable SSL redirect (if SSL is configured)
secure_scheme_headers = {
    'X-FORWARDED-PROTOCOL': 'ssl',
    'X-FORWARDED-PROTO': 'https',
    'X-FORWARDED-SSL': 'on'
}

# Enable forwarded headers
forwarded_allow_ips = "*"

# Worker lifecycle hooks
def on_starting(server):
    """Called just before the master process is initialized."""
    server.log.info("Starting liquidation engine API")

def when_ready(server):
    """Called just after the server is started."""
    server.log.info(f"Liquidation engine API is ready (lease ttl {SETTINGS.GENERAL.LIQUIDATION_LEASE_SECONDS}s)")

def post_fork(server, worker):
    """Called just after a worker has been forked."""
    server.log.info(f"Worker {worker.pid} spawned")

def worker_abort(worker):
    """Called when a worker received the SIGABRT signal."""
    # Leases held by runs of this worker expire after the configured ttl
    worker.log.warning(f"Worker {worker.pid} aborted")

def worker_exit(server, worker):
    """Called just after a worker has been reaped."""
    server.log.info(f"Worker {worker.pid} terminated")

def on_exit(server):
    """Called just before exiting."""
    server.log.info("Shutting down liquidation engine API")

# Environment variables
raw_env = [
    f'PYTHONPATH={os.getenv("PYTHONPATH", "")}',
    f'TZ={os.getenv("TZ", "UTC")}',
]

# Use shared memory for the worker heartbeat file
worker_tmp_dir = "/dev/shm"

# Custom configuration based on environment
if SETTINGS.GENERAL.PRODUCTION:
    # Production settings
    workers = multiprocessing.cpu_count() * 2 + 1
    worker_class = "uvicorn.workers.UvicornWorker"
    timeout = 120
    keepalive = 5
    max_requests = 1000
    max_requests_jitter = 100
    preload_app = True
    
    # Enable access logging in production
    accesslog = "/var/log/liquidaciones-api/access.log"
    errorlog = "/var/log/liquidaciones-api/error.log"
    
else:
    # Development settings
    workers = 1
    worker_class = "uvicorn.workers.UvicornWorker"
    timeout = 300
    keepalive = 2
    max_requests = 100
    max_requests_jitter = 10
    preload_app = False
    reload = True
    
    # Use console logging in development
    accesslog = "-"
    errorlog = "-" 