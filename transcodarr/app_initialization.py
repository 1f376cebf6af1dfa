"""Decide which process owns the transcoding engine."""

import logging
import os
import sys

import psutil

logger = logging.getLogger(__name__)

# Commands that load Django but must never spawn encoders
DORMANT_COMMANDS = frozenset({
    'beat', 'celery', 'check', 'collectstatic', 'dbshell', 'loaddata',
    'makemigrations', 'migrate', 'pytest', 'shell', 'test',
})

PREFORK_MASTERS = ('gunicorn', 'uwsgi')


def _parent_is_prefork_master():
    try:
        return psutil.Process(os.getppid()).name() in PREFORK_MASTERS
    except (psutil.Error, OSError):
        return False


def should_skip_initialization():
    """
    True when the engine must stay dormant in this process.

    Encoders are owned by a single process per host: management commands,
    celery processes, test runs, the runserver reloader parent and prefork
    worker children skip startup. Serve the API from the owning process
    (a single worker); elsewhere engine endpoints answer 503.
    """
    program = os.path.basename(sys.argv[0]) if sys.argv else ''
    if program in DORMANT_COMMANDS or DORMANT_COMMANDS.intersection(sys.argv):
        logger.debug(f"Engine dormant for command {sys.argv}")
        return True

    # runserver's autoreloader parent only watches files, the child it spawns serves
    if 'runserver' in sys.argv and '--noreload' not in sys.argv and os.environ.get('RUN_MAIN') != 'true':
        logger.debug("Engine dormant in the runserver autoreloader parent")
        return True

    # python -m pytest leaves no trace in argv
    if 'pytest' in sys.modules:
        return True

    if _parent_is_prefork_master():
        logger.debug(f"Engine dormant in worker process (pid {os.getpid()})")
        return True

    return False
