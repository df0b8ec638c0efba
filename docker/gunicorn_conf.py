# Gunicorn configuration for Mailvault
# Only one worker owns the backup scheduler

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', '2'))
# Synchronous restores and manual runs can take a while
timeout = int(os.environ.get('GUNICORN_TIMEOUT', '600'))


def post_worker_init(worker):
    """
    Designate the first worker (worker.age == 0) as the scheduler owner.

    Every other worker serves HTTP only, so scheduled backups never run twice.
    """
    if worker.age == 0:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): HTTP worker (scheduler disabled)")
