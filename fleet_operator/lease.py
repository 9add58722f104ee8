import asyncio
import datetime as dt
import logging
import random
import threading

from . import resources
from .config import settings
from .errors import NotFoundError

logger = logging.getLogger(__name__)


#: The format of the renew time of a lease, which has microsecond resolution
MICROTIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

#: The condition on a managed cluster that indicates the hub has accepted it
HUB_ACCEPTED_CONDITION = "HubAcceptedManagedCluster"


def microtime_now():
    """
    Returns the current time formatted as a lease renew time.
    """
    return dt.datetime.now(dt.timezone.utc).strftime(MICROTIME_FORMAT)


class LeaseUpdater:
    """
    Periodically renews a lease on the hub from a background task.

    The updater is either idle or running. It only ever updates the renew time
    of an existing lease and never creates or deletes it.
    """
    def __init__(self, store, namespace, name, recorder = None, jitter_factor = None):
        self.store = store
        self.namespace = namespace
        self.name = name
        self.recorder = recorder
        self.jitter_factor = (
            settings.lease.jitter_factor
            if jitter_factor is None
            else jitter_factor
        )
        # Guards the task, which is the only state shared with the controller
        self._lock = threading.Lock()
        self._task = None

    @property
    def running(self):
        """
        Indicates whether the renewal task is running.
        """
        with self._lock:
            return self._task is not None

    def start(self, interval):
        """
        Starts renewing the lease every interval seconds.

        Does nothing if the updater is already running. Must be called from a
        coroutine running in the event loop that will run the renewal task.
        """
        with self._lock:
            if self._task is not None:
                return
            self._task = asyncio.get_running_loop().create_task(
                self._run(interval),
                name = f"lease-updater-{self.namespace}-{self.name}"
            )
        logger.info(
            "started updating lease %s/%s every %ss",
            self.namespace,
            self.name,
            interval
        )

    def stop(self):
        """
        Stops renewing the lease. Does nothing if the updater is not running.
        """
        with self._lock:
            task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        logger.info("stopped updating lease %s/%s", self.namespace, self.name)

    def _next_delay(self, interval):
        return interval * (1 + random.uniform(0, self.jitter_factor))

    async def update(self):
        """
        Sets the renew time of the lease to the current time.
        """
        lease = await self.store.get(resources.Lease, self.name, namespace = self.namespace)
        lease.setdefault("spec", {})["renewTime"] = microtime_now()
        await self.store.update(resources.Lease, lease)

    async def _run(self, interval):
        while True:
            try:
                await self.update()
            except Exception as exc:
                # A failed renewal is retried on the next tick
                logger.exception(
                    "unable to update lease %s/%s on hub cluster",
                    self.namespace,
                    self.name
                )
                if self.recorder:
                    self.recorder.warning(
                        "LeaseUpdateFailed",
                        f"Unable to update lease {self.namespace}/{self.name}: {exc}"
                    )
            await asyncio.sleep(self._next_delay(interval))


class ManagedClusterLeaseController:
    """
    Starts and stops a lease updater depending on whether the hub has accepted
    the managed cluster.
    """
    def __init__(self, store, cluster_name, lease_updater):
        self.store = store
        self.cluster_name = cluster_name
        self.lease_updater = lease_updater

    async def reconcile(self):
        """
        Makes the state of the lease updater match the state of the managed cluster.

        Errors other than the managed cluster not existing are raised and leave
        the lease updater in its current state.
        """
        try:
            cluster = await self.store.get(resources.ManagedCluster, self.cluster_name)
        except NotFoundError:
            logger.info(
                "managed cluster %s does not exist - stopping lease updates",
                self.cluster_name
            )
            self.lease_updater.stop()
            return
        if cluster["metadata"].get("deletionTimestamp"):
            logger.info(
                "managed cluster %s is being deleted - stopping lease updates",
                self.cluster_name
            )
            self.lease_updater.stop()
            return
        accepted = any(
            condition.get("type") == HUB_ACCEPTED_CONDITION and
            condition.get("status") == "True"
            for condition in (cluster.get("status") or {}).get("conditions") or []
        )
        if not accepted:
            logger.info(
                "managed cluster %s is not accepted by the hub - stopping lease updates",
                self.cluster_name
            )
            self.lease_updater.stop()
            return
        interval = (
            (cluster.get("spec") or {}).get("leaseDurationSeconds") or
            settings.lease.duration_seconds
        )
        self.lease_updater.start(interval)
