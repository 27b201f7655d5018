# ---------------------------------------------------------------------------- #

from __future__ import annotations

from asyncio import Event, create_task, gather, sleep
from collections.abc import Callable
from copy import deepcopy
from traceback import format_exc
from typing import Any, Optional

from kubernetes_asyncio.client import (  # type: ignore
    ApiException,
    V1StorageClass,
)

from sccap.csi.common import csi_address_exists, get_csi_address
from sccap.csi.prober import Prober, probe
from sccap.shared.capability import StorageClassCapabilitySpec
from sccap.shared.config import (
    CAPABILITY_GROUP,
    CAPABILITY_KIND,
    CAPABILITY_VERSION,
    DEFAULT_WORKERS,
    WORKER_RESTART_DELAY,
)
from sccap.shared.kubernetes import (
    ClusterCustomObjectClient,
    EventHandlerFuncs,
    Informer,
    get_resource_version,
    is_not_found,
    wait_for_cache_sync,
)
from sccap.shared.util import log, log_verbose
from sccap.shared.workqueue import (
    QueueShutDown,
    RateLimiter,
    RateLimitingQueue,
)

# ---------------------------------------------------------------------------- #


class CacheSyncError(Exception):
    pass


class StorageCapabilityController:
    """
    Keeps a StorageClassCapability object, with the same name, up to date for
    every StorageClass whose CSI driver is reachable.

    The capabilities are obtained by probing the driver, and are then
    restricted by what the StorageClass permits: expansion is only advertised
    if the class allows volume expansion, and snapshots only if there is a
    VolumeSnapshotClass with the same name.

    If 'snapshot_class_informer' is None, the cluster is assumed not to support
    snapshots at all.
    """

    capability_client: ClusterCustomObjectClient
    capability_informer: Informer
    storage_class_informer: Informer
    snapshot_class_informer: Optional[Informer]

    queue: RateLimitingQueue

    def __init__(
        self,
        *,
        capability_client: ClusterCustomObjectClient,
        capability_informer: Informer,
        storage_class_informer: Informer,
        snapshot_class_informer: Optional[Informer],
        prober: Prober = probe,
        csi_address_getter: Callable[[str], str] = get_csi_address,
        csi_address_checker: Callable[[str], bool] = csi_address_exists,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:

        self.capability_client = capability_client
        self.capability_informer = capability_informer
        self.storage_class_informer = storage_class_informer
        self.snapshot_class_informer = snapshot_class_informer

        self._prober = prober
        self._csi_address_getter = csi_address_getter
        self._csi_address_checker = csi_address_checker

        self.queue = RateLimitingQueue("StorageClasses", rate_limiter)

        storage_class_informer.add_event_handler(
            EventHandlerFuncs(
                add_func=self.enqueue_storage_class,
                update_func=self._on_storage_class_update,
                delete_func=self.enqueue_storage_class,
            )
        )

        # A VolumeSnapshotClass's own fields do not affect capabilities, only
        # its existence does, so updates are ignored.

        if snapshot_class_informer is not None:
            snapshot_class_informer.add_event_handler(
                EventHandlerFuncs(
                    add_func=self.enqueue_snapshot_class,
                    delete_func=self.enqueue_snapshot_class,
                )
            )

    # ------------------------------------------------------------------------ #
    # Event handlers

    def _on_storage_class_update(
        self, old: V1StorageClass, new: V1StorageClass
    ) -> None:

        if get_resource_version(new) == get_resource_version(old):
            return  # periodic resync, nothing changed

        self.enqueue_storage_class(new)

    def enqueue_storage_class(self, storage_class: V1StorageClass) -> None:
        self._enqueue_if_driver_exists(
            key=storage_class.metadata.name,
            driver=storage_class.provisioner,
        )

    def enqueue_snapshot_class(self, snapshot_class: dict[str, Any]) -> None:

        driver = snapshot_class.get("driver")

        if not isinstance(driver, str) or not driver:
            log(
                "Ignoring VolumeSnapshotClass"
                f" {snapshot_class['metadata']['name']!r} with no driver"
            )
            return

        # key is the driver name, which matches the StorageClass name in the
        # common case of one class per driver
        self._enqueue_if_driver_exists(key=driver, driver=driver)

    def _enqueue_if_driver_exists(self, key: str, driver: str) -> None:

        # Only an optimization: the socket may appear or disappear right after
        # this check, in which case probing fails and the key is retried, or
        # the next StorageClass update enqueues it.

        address = self._csi_address_getter(driver)

        if not self._csi_address_checker(address):
            log_verbose(
                f"CSI address {address} of driver {driver!r} does not exist,"
                f" not enqueuing {key!r}"
            )
            return

        self.queue.add(key)

    # ------------------------------------------------------------------------ #
    # Workers

    async def start(
        self, stop: Event, *, workers: int = DEFAULT_WORKERS
    ) -> None:
        """
        Wait for all caches to sync, and then process keys with the given
        number of concurrent workers until 'stop' is set.

        Raises `CacheSyncError` if 'stop' is set before the caches sync.
        """

        try:

            log("Waiting for informer caches to sync")

            has_synced_fns = [
                self.storage_class_informer.has_synced,
                self.capability_informer.has_synced,
            ]

            if self.snapshot_class_informer is not None:
                has_synced_fns.append(self.snapshot_class_informer.has_synced)

            if not await wait_for_cache_sync(stop, *has_synced_fns):
                raise CacheSyncError("failed to wait for caches to sync")

            tasks = [
                create_task(self._run_worker(stop)) for _ in range(workers)
            ]

            log("Started workers")

            await stop.wait()

            log("Shutting down workers")

            self.queue.shut_down()
            await gather(*tasks)

        finally:

            self.queue.shut_down()

    async def _run_worker(self, stop: Event) -> None:

        while not stop.is_set():

            try:
                while await self.process_next_work_item():
                    pass
                return  # queue was shut down
            except Exception:
                log(f"Worker crashed, restarting it:\n{format_exc()}")
                await sleep(WORKER_RESTART_DELAY.total_seconds())

    async def process_next_work_item(self) -> bool:
        """Process a single key. Returns False if the queue was shut down."""

        try:
            key = await self.queue.get()
        except QueueShutDown:
            return False

        try:

            if not isinstance(key, str):
                self.queue.forget(key)
                log(f"Expected string in work queue but got {key!r}")
                return True

            try:
                await self.sync_handler(key)
            except Exception:
                self.queue.add_rate_limited(key)
                log(f"Error syncing {key!r}, requeuing:\n{format_exc()}")
                return True

            self.queue.forget(key)
            log(f"Successfully synced {key!r}")

            return True

        finally:

            self.queue.done(key)

    # ------------------------------------------------------------------------ #
    # Reconciliation

    async def sync_handler(self, name: str) -> None:
        """
        Bring the StorageClassCapability with the given name in line with the
        StorageClass of the same name: create it if the StorageClass exists,
        update it if it's out of date, or delete it if the StorageClass no
        longer exists.
        """

        # get storage class

        try:
            storage_class = self.storage_class_informer.get(name)
        except ApiException as e:
            if is_not_found(e):
                await self._delete_capability(name)
                return
            raise

        # compute desired capability spec

        has_snapshot_class = self._has_snapshot_class(name)

        spec = await self.get_capability_spec(
            storage_class, has_snapshot_class=has_snapshot_class
        )

        log_verbose(f"StorageClass {name!r} has capability {spec}")

        # create or update capability object

        try:
            existing = self.capability_informer.get(name)
        except ApiException as e:
            if is_not_found(e):
                await self._create_capability(name, spec)
                return
            raise

        if existing.get("spec") == spec.to_dict():
            return  # already up to date

        updated = deepcopy(existing)
        updated["spec"] = spec.to_dict()

        log(f"Updating StorageClassCapability {name!r}")
        await self.capability_client.update(updated)

    async def get_capability_spec(
        self, storage_class: V1StorageClass, *, has_snapshot_class: bool
    ) -> StorageClassCapabilitySpec:

        address = self._csi_address_getter(storage_class.provisioner)
        features = await self._prober(address)

        return StorageClassCapabilitySpec(
            provisioner=storage_class.provisioner,
            features=features.restricted(
                allow_expansion=bool(storage_class.allow_volume_expansion),
                allow_snapshot=has_snapshot_class,
            ),
        )

    def _has_snapshot_class(self, name: str) -> bool:

        if self.snapshot_class_informer is None:
            return False  # cluster doesn't support snapshots

        try:
            self.snapshot_class_informer.get(name)
        except ApiException as e:
            if is_not_found(e):
                return False
            raise

        return True

    async def _create_capability(
        self, name: str, spec: StorageClassCapabilitySpec
    ) -> None:

        body = {
            "apiVersion": f"{CAPABILITY_GROUP}/{CAPABILITY_VERSION}",
            "kind": CAPABILITY_KIND,
            "metadata": {"name": name},
            "spec": spec.to_dict(),
        }

        log(f"Creating StorageClassCapability {name!r}")
        await self.capability_client.create(body)

    async def _delete_capability(self, name: str) -> None:

        try:
            self.capability_informer.get(name)
        except ApiException as e:
            if is_not_found(e):
                return  # nothing to delete
            raise

        log(f"Deleting StorageClassCapability {name!r}")
        await self.capability_client.delete(name)


# ---------------------------------------------------------------------------- #
