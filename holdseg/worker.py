"""
Worker process entry point.

Each worker owns one Detector (and so one loaded model) for its whole
life and serves one task at a time over a duplex pipe.

Protocol (pickled tuples):
    coordinator → worker:
        (job_id, image_bytes)        run one image
        None                         exit cleanly
    worker → coordinator:
        ("ready",)                   model loaded; tasks may be sent
        ("done", job_id, PredictionSet)
        ("error", job_id, kind, message)
        ("fatal", kind, message)     model failed to load; worker exits

Errors raised by the pipeline are caught here and reported as
messages; they never take the worker down.
"""

import logging
import os
import traceback
from typing import Callable, Optional

from holdseg.config import AppConfig, ModelConfig
from holdseg.detector import Detector
from holdseg.errors import HoldsegError, ModelError
from holdseg.model_loader import ModelRuntime

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(processName)s %(name)s: %(message)s"

RuntimeFactory = Callable[[ModelConfig], ModelRuntime]


def _build_detector(config: AppConfig, runtime_factory: Optional[RuntimeFactory]) -> Detector:
    runtime = runtime_factory(config.model) if runtime_factory is not None else None
    return Detector(config=config, runtime=runtime)


def handle_task(detector: Detector, job_id: str, payload: bytes) -> tuple:
    """Run one task and build the reply message."""
    try:
        result = detector.detect(payload)
    except HoldsegError as e:
        logger.warning("Job %s failed: %s: %s", job_id, e.kind, e)
        return ("error", job_id, e.kind, str(e))
    except MemoryError:
        logger.error("Job %s ran out of memory", job_id)
        return ("error", job_id, ModelError.kind, "Out of memory while processing image.")
    except Exception as e:
        logger.error("Job %s crashed in pipeline:\n%s", job_id, traceback.format_exc())
        return ("error", job_id, "InternalError", f"{type(e).__name__}: {e}")

    logger.info("Job %s done: %d polygons", job_id, len(result))
    return ("done", job_id, result)


def worker_main(conn, config: AppConfig, runtime_factory: Optional[RuntimeFactory] = None) -> None:
    """Serve tasks from ``conn`` until told to stop or the pipe closes."""
    logging.basicConfig(level=config.logging.level, format=LOG_FORMAT)
    pid = os.getpid()

    try:
        detector = _build_detector(config, runtime_factory)
    except Exception as e:
        kind = e.kind if isinstance(e, HoldsegError) else ModelError.kind
        logger.error("Worker %d failed to load model: %s", pid, e)
        try:
            conn.send(("fatal", kind, str(e)))
        finally:
            conn.close()
        return

    logger.info("Worker %d ready.", pid)
    try:
        conn.send(("ready",))
        while True:
            try:
                message = conn.recv()
            except EOFError:
                logger.info("Worker %d: coordinator closed the pipe.", pid)
                break

            if message is None:
                break

            job_id, payload = message
            logger.info("Worker %d running job %s", pid, job_id)
            conn.send(handle_task(detector, job_id, payload))
    except KeyboardInterrupt:
        pass
    finally:
        conn.close()
        logger.info("Worker %d exiting.", pid)
