"""Configuration settings for the experiment service."""

import os
import sys

from dotenv import load_dotenv
from loguru import logger

load_dotenv()

# Container runtime
DOCKER_HOST = os.getenv("DOCKER_HOST", "unix:///var/run/docker.sock")
DOCKER_NETWORK_NAME = os.getenv("DOCKER_NETWORK_NAME", "distributed-system-platform_default")
PLATFORM_NAME = os.getenv("PLATFORM_NAME", "distributed-system-platform")

# Workload images
K6_IMAGE = os.getenv("K6_IMAGE", "grafana/k6:0.54.0")
PUMBA_IMAGE = os.getenv("PUMBA_IMAGE", "gaiaadm/pumba:0.10.0")
IPROUTE2_IMAGE = os.getenv("IPROUTE2_IMAGE", "gaiadocker/iproute2")

# Traffic job settings
K6_SCRIPTS_PATH = os.getenv("K6_SCRIPTS_PATH", "/app/k6/scripts")
K6_PROMETHEUS_RW_SERVER_URL = os.getenv(
    "K6_PROMETHEUS_RW_SERVER_URL", "http://prometheus:9090/api/v1/write"
)
DEFAULT_MAX_VUS = int(os.getenv("DEFAULT_MAX_VUS", "100"))

# Timeout settings (in seconds)
TRAFFIC_STOP_GRACE_SECONDS = int(os.getenv("TRAFFIC_STOP_GRACE_SECONDS", "5"))
FAILURE_STOP_GRACE_SECONDS = int(os.getenv("FAILURE_STOP_GRACE_SECONDS", "2"))
MONITOR_DRAIN_TIMEOUT = float(os.getenv("MONITOR_DRAIN_TIMEOUT", "10.0"))

# Threads reserved for blocking wait-for-exit calls against the Docker API
RUNTIME_WAIT_THREADS = int(os.getenv("RUNTIME_WAIT_THREADS", "64"))
# Each wait request is bounded so blocked threads notice a closed runtime
RUNTIME_WAIT_POLL_SECONDS = float(os.getenv("RUNTIME_WAIT_POLL_SECONDS", "30"))

# API server
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8080"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Route loguru output to stderr at the requested level."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
