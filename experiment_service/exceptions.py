"""Exceptions raised by container runtime clients."""

from typing import Optional


class RuntimeClientError(Exception):
    """Raised when a container runtime operation fails."""

    def __init__(self, operation: str, message: str, original_error: Optional[Exception] = None):
        self.operation = operation
        self.original_error = original_error
        super().__init__(f"{operation} failed: {message}")


class ImageNotFoundError(RuntimeClientError):
    """Raised when an image is not present in the local image store."""

    def __init__(self, image: str, original_error: Optional[Exception] = None):
        self.image = image
        super().__init__("inspect_image", f"image '{image}' not found", original_error)


class ContainerNotFoundError(RuntimeClientError):
    """Raised when a container id does not resolve to a container."""

    reason = "not found"

    def __init__(self, operation: str, container_id: str, original_error: Optional[Exception] = None):
        self.container_id = container_id
        super().__init__(operation, f"container '{container_id}' {self.reason}", original_error)


class ContainerRemovalInProgressError(ContainerNotFoundError):
    """Raised when another caller is already removing the container; callers treat it as gone."""

    reason = "is already being removed"


class RuntimeUnavailableError(RuntimeClientError):
    """Raised when the container engine cannot be reached at all."""


class MonitorAlreadyRunningError(RuntimeError):
    """Raised when a second completion monitor is requested for the same experiment."""

    def __init__(self, experiment_id: str):
        self.experiment_id = experiment_id
        super().__init__(f"Experiment '{experiment_id}' already has a completion monitor")
