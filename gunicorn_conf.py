"""gunicorn_conf.py

Default Gunicorn config for the Tonkotsu chat server (Flask-SocketIO, threading mode).

Environment variables:
  TONKOTSU_BIND=0.0.0.0:5000
  TONKOTSU_THREADS=50
  TONKOTSU_GUNICORN_LOGLEVEL=info
  TONKOTSU_GUNICORN_ACCESSLOG=-
  TONKOTSU_GUNICORN_ERRORLOG=-
  TONKOTSU_GUNICORN_TIMEOUT=60
"""

from __future__ import annotations

import os

bind = os.environ.get("TONKOTSU_BIND", "0.0.0.0:5000")
# Live chat state is per process: one worker, many threads.
workers = 1
worker_class = "gthread"
threads = int(os.environ.get("TONKOTSU_THREADS", "50"))

# Long-polling keeps requests open; avoid overly low timeouts.
timeout = int(os.environ.get("TONKOTSU_GUNICORN_TIMEOUT", "60"))
keepalive = int(os.environ.get("TONKOTSU_GUNICORN_KEEPALIVE", "5"))

loglevel = os.environ.get("TONKOTSU_GUNICORN_LOGLEVEL", "info")
accesslog = os.environ.get("TONKOTSU_GUNICORN_ACCESSLOG", "-")
errorlog = os.environ.get("TONKOTSU_GUNICORN_ERRORLOG", "-")

# Important for Socket.IO upgrades through reverse proxies.
forwarded_allow_ips = os.environ.get("TONKOTSU_FORWARDED_ALLOW_IPS", "*")
