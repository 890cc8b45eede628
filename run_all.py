"""
Process manager for the two entry points.

Spawns `main.py start` (message stream) and `main.py web` (webhook server)
as separate processes, so neither blocks the other, and restarts any that
crash.
"""

import sys
import time
import signal
import logging
import subprocess
from pathlib import Path

BOT_DIR = Path(__file__).parent

COMMANDS = {
    "bot": ["start"],
    "web": ["web"],
}

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - run_all - %(levelname)s - %(message)s'
)
logger = logging.getLogger("run_all")

processes: dict[str, subprocess.Popen] = {}
shutting_down = False


def start_process(name: str, extra_args: list[str]) -> subprocess.Popen:
    """Start one entry point as a subprocess."""
    proc = subprocess.Popen(
        [sys.executable, str(BOT_DIR / "main.py"), *extra_args, *COMMANDS[name]],
        cwd=str(BOT_DIR),
    )
    logger.info(f"Started '{name}' (PID {proc.pid})")
    return proc


def shutdown(signum, frame):
    """Gracefully stop all processes."""
    global shutting_down
    shutting_down = True
    logger.info("Shutting down...")
    for name, proc in processes.items():
        logger.info(f"Stopping '{name}' (PID {proc.pid})")
        proc.terminate()
    for name, proc in processes.items():
        try:
            proc.wait(timeout=15)
        except subprocess.TimeoutExpired:
            logger.warning(f"'{name}' did not stop gracefully, killing")
            proc.kill()
    sys.exit(0)


def main():
    signal.signal(signal.SIGTERM, shutdown)
    signal.signal(signal.SIGINT, shutdown)

    # Global flags (e.g. --debug, --env-file) are passed through to main.py
    extra_args = sys.argv[1:]

    for name in COMMANDS:
        processes[name] = start_process(name, extra_args)

    logger.info("All processes started. Monitoring...")

    # Monitor and restart crashed processes
    while not shutting_down:
        for name, proc in list(processes.items()):
            retcode = proc.poll()
            if retcode is not None:
                logger.warning(f"'{name}' exited with code {retcode}. Restarting in 5s...")
                time.sleep(5)
                if not shutting_down:
                    processes[name] = start_process(name, extra_args)
        time.sleep(3)


if __name__ == "__main__":
    main()
