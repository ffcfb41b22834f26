"""
Gunicorn configuration.
"""
import os

bind = f"0.0.0.0:{os.getenv('PORT', '8080')}"

# Imports run on the in-process scheduler, so keep one worker per
# container unless RUN_TASKS_INLINE or an external worker is used.
workers = int(os.getenv('GUNICORN_WORKERS', '1'))
threads = int(os.getenv('GUNICORN_THREADS', '4'))
worker_class = 'gthread'
timeout = 120
keepalive = 5

# Logging
accesslog = '-'  # stdout
errorlog = '-'   # stderr
loglevel = os.getenv('LOG_LEVEL', 'info')
capture_output = True

proc_name = 'rewardspro'

# Not preloaded: the scheduler thread must start inside the worker
preload_app = False

graceful_timeout = 30


def on_starting(server):
    print("[Gunicorn] Starting RewardsPro server...")


def on_exit(server):
    print("[Gunicorn] RewardsPro server shutting down...")
