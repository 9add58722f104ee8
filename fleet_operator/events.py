import logging

import kopf


class EventRecorder:
    """
    Records informational and warning events about the objects being reconciled.

    Events are purely for observability and never affect reconciliation.
    """
    def event(self, reason, message):
        raise NotImplementedError

    def warning(self, reason, message):
        raise NotImplementedError


class LoggingEventRecorder(EventRecorder):
    """
    Event recorder that writes events to a logger.
    """
    def __init__(self, logger = None):
        self.logger = logger or logging.getLogger(__name__)

    def event(self, reason, message):
        self.logger.info("[%s] %s", reason, message)

    def warning(self, reason, message):
        self.logger.warning("[%s] %s", reason, message)


class KopfEventRecorder(LoggingEventRecorder):
    """
    Event recorder that posts Kubernetes events for a kopf body as well as logging them.
    """
    def __init__(self, body, logger = None):
        super().__init__(logger)
        self.body = body

    def event(self, reason, message):
        super().event(reason, message)
        kopf.info(self.body, reason = reason, message = message)

    def warning(self, reason, message):
        super().warning(reason, message)
        kopf.warn(self.body, reason = reason, message = message)
