"""TensorRT -> Python logging bridge."""

import logging

import tensorrt as trt


logger = logging.getLogger(__name__)


class TensorRTLogger(trt.ILogger):
    """
    Forwards TensorRT messages to `logging`.

    INFO and VERBOSE messages are dropped unless `verbose` is set.
    """

    QUIET = (trt.ILogger.Severity.INFO, trt.ILogger.Severity.VERBOSE)

    def __init__(self, verbose: bool = False):
        super().__init__()
        self.verbose = verbose

    def log(self, severity, msg):
        if not self.verbose and severity in self.QUIET:
            return

        if severity in (trt.ILogger.Severity.INTERNAL_ERROR, trt.ILogger.Severity.ERROR):
            logger.error(f"[TensorRT] {msg}")
        elif severity == trt.ILogger.Severity.WARNING:
            logger.warning(f"[TensorRT] {msg}")
        elif severity == trt.ILogger.Severity.INFO:
            logger.info(f"[TensorRT] {msg}")
        else:
            logger.debug(f"[TensorRT] {msg}")
