"""
Conduit Controller - Main entry point.
"""

import logging
import sys

from controller.src.config import get_settings
from controller.src.engine.scheduler import Scheduler
from controller.src.exceptions import PipelineConfigError
from controller.src.k8s.client import init_k8s_client, ensure_namespace
from controller.src.services.executor import create_executors
from controller.src.services.notifier import create_sinks
from controller.src.services.pipeline_parser import load_pipeline_file
from controller.src.services.secrets import create_secret_store, install_masker
from controller.src.services.status_reporter import StatusReporter
from controller.src.worker import run_worker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)
install_masker()

logger = logging.getLogger(__name__)

def main():
    """Main entry point."""
    settings = get_settings()

    logger.info("Starting Conduit Controller")
    logger.info(f"Pipeline configuration: {settings.pipeline_config_path}")
    logger.info(f"Redis URL: {settings.redis_url}")

    # Configuration errors are fatal before anything runs
    try:
        pipelines = load_pipeline_file(settings.pipeline_config_path)
    except PipelineConfigError as e:
        logger.error(f"Invalid pipeline configuration: {e}")
        sys.exit(1)
    logger.info(f"Loaded {len(pipelines)} pipeline(s): {', '.join(p.name for p in pipelines)}")

    if any(p.type != "exec" for p in pipelines) or settings.k8s_secret_name:
        logger.info(f"Kubernetes namespace: {settings.k8s_namespace}")
        if not init_k8s_client():
            logger.error("Failed to initialize Kubernetes client")
            sys.exit(1)
        try:
            ensure_namespace()
        except Exception as e:
            logger.error(f"Failed to ensure namespace: {e}")
            sys.exit(1)

    scheduler = Scheduler(
        pipelines,
        executors=create_executors(),
        secrets=create_secret_store(),
        sinks=create_sinks(),
        reporter=StatusReporter(),
    )

    logger.info("Starting worker...")
    run_worker(scheduler)

if __name__ == "__main__":
    main()
