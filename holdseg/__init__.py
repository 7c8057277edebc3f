"""
holdseg: asynchronous hold segmentation for climbing-wall photos.

Public API:
    - JobManager: Submit images and poll for their outlines.
    - JobStatus: pending / running / done / error.
    - Detector: The in-process pipeline a worker runs for one image.
    - PredictionSet, Polygon: Result types.
    - load_config: Layered configuration loader.

All other modules in this package are internal implementation details
and should not be imported directly by consumers.

Usage:
    from holdseg import JobManager

    with JobManager() as jobs:
        job_id = jobs.submit(image_bytes)
        view = jobs.poll(job_id)
"""

from holdseg.config import AppConfig, load_config
from holdseg.detection import Polygon, PredictionSet
from holdseg.detector import Detector
from holdseg.jobs import JobManager, JobStatus, JobView

__all__ = [
    "AppConfig",
    "Detector",
    "JobManager",
    "JobStatus",
    "JobView",
    "Polygon",
    "PredictionSet",
    "load_config",
]
