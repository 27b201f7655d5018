# ---------------------------------------------------------------------------- #

from __future__ import annotations

import asyncio
from asyncio import CancelledError, Event, create_task, gather
from functools import partial
from signal import SIGINT, SIGTERM
from typing import Optional

from kubernetes_asyncio.client import ApiClient  # type: ignore

from sccap.controller.capability import StorageCapabilityController
from sccap.csi.common import get_csi_address
from sccap.shared.config import (
    CAPABILITY_GROUP,
    CAPABILITY_PLURAL,
    CAPABILITY_VERSION,
    CSI_ADDRESS_FORMAT,
    DEFAULT_WORKERS,
    MIN_SNAPSHOT_SUPPORTED_VERSION,
    SNAPSHOT_CLASS_PLURAL,
    SNAPSHOT_GROUP,
    SNAPSHOT_VERSION,
)
from sccap.shared.kubernetes import (
    ClusterCustomObjectClient,
    Informer,
    cluster_custom_object_informer,
    get_server_version,
    storage_class_informer,
)
from sccap.shared.util import log

# ---------------------------------------------------------------------------- #


def run(
    *,
    workers: int = DEFAULT_WORKERS,
    csi_address_format: str = CSI_ADDRESS_FORMAT,
    snapshot_version: str = SNAPSHOT_VERSION,
) -> None:
    asyncio.run(
        _run_async(
            workers=workers,
            csi_address_format=csi_address_format,
            snapshot_version=snapshot_version,
        )
    )


async def _run_async(
    *, workers: int, csi_address_format: str, snapshot_version: str
) -> None:

    async with ApiClient() as api_client:

        # set up informers

        storage_classes = storage_class_informer(api_client)

        capabilities = cluster_custom_object_informer(
            api_client,
            group=CAPABILITY_GROUP,
            version=CAPABILITY_VERSION,
            plural=CAPABILITY_PLURAL,
        )

        snapshot_classes: Optional[Informer] = None

        if await is_snapshot_supported(api_client):
            snapshot_classes = cluster_custom_object_informer(
                api_client,
                group=SNAPSHOT_GROUP,
                version=snapshot_version,
                plural=SNAPSHOT_CLASS_PLURAL,
            )
        else:
            log("Cluster does not support snapshots, not watching them")

        # set up controller

        controller = StorageCapabilityController(
            capability_client=ClusterCustomObjectClient(
                api_client,
                group=CAPABILITY_GROUP,
                version=CAPABILITY_VERSION,
                plural=CAPABILITY_PLURAL,
            ),
            capability_informer=capabilities,
            storage_class_informer=storage_classes,
            snapshot_class_informer=snapshot_classes,
            csi_address_getter=partial(
                get_csi_address, address_format=csi_address_format
            ),
        )

        # set up signal handlers to allow for graceful termination

        stop = Event()

        for signal in (SIGTERM, SIGINT):
            asyncio.get_running_loop().add_signal_handler(signal, stop.set)

        # run informers and controller

        informers = [storage_classes, capabilities]

        if snapshot_classes is not None:
            informers.append(snapshot_classes)

        informer_tasks = [
            create_task(informer.run()) for informer in informers
        ]

        try:
            await controller.start(stop, workers=workers)
        finally:
            for task in informer_tasks:
                task.cancel()
            await gather(*informer_tasks, return_exceptions=True)


async def is_snapshot_supported(api_client: ApiClient) -> bool:

    try:
        version = await get_server_version(api_client)
    except CancelledError:
        raise
    except Exception as e:
        log(f"Failed to get server version, assuming no snapshots: {e}")
        return False

    return version is not None and version >= MIN_SNAPSHOT_SUPPORTED_VERSION


# ---------------------------------------------------------------------------- #
