# vps_autoscaler/run_controller.py
"""Run the autoscaler controller and its status API."""

import logging
import signal
import sys
import time

import uvicorn

from vps_autoscaler.api.container import set_container
from vps_autoscaler.api.main import app
from vps_autoscaler.config import settings
from vps_autoscaler.container import build_container
from vps_autoscaler.core.loader import load_node_groups_file

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    container = build_container(settings)
    set_container(container)

    if settings.nodegroups_file:
        applied = load_node_groups_file(container.groups, settings.nodegroups_file)
        logger.info(f"Applied {len(applied)} node group(s) from {settings.nodegroups_file}")

    manager = container.manager

    logger.info("=" * 80)
    logger.info("VPS NODE AUTOSCALER")
    logger.info("=" * 80)
    logger.info(f"Identity: {container.elector.identity if container.elector else 'leader election disabled'}")
    logger.info(f"Workers: {manager.slots.total_slots()}")
    logger.info(f"Resync Interval: {manager.resync_interval}s")
    logger.info(f"Storage: {settings.storage}")
    if settings.api_enabled:
        logger.info(f"Status API: http://{settings.api_host}:{settings.api_port}")
    logger.info("=" * 80)

    manager.start()

    if settings.api_enabled:
        # uvicorn owns SIGINT/SIGTERM while it serves
        try:
            uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level="info")
        finally:
            logger.info("Shutting down controller...")
            manager.stop()
        return

    def signal_handler(sig, frame):
        logger.info("Shutting down controller...")
        manager.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info("Press Ctrl+C to stop")
    while True:
        time.sleep(1)


if __name__ == "__main__":
    main()
