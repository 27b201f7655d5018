# ---------------------------------------------------------------------------- #

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import timedelta

import grpc  # type: ignore
import grpc.aio  # type: ignore
from grpc import ChannelConnectivity  # type: ignore
from grpc.aio import Channel  # type: ignore

from sccap.csi.common import get_grpc_target, log_rpc
from sccap.csi.spec.csi_pb2 import (
    ControllerGetCapabilitiesRequest,
    ControllerGetCapabilitiesResponse,
    ControllerServiceCapability,
    GetPluginCapabilitiesRequest,
    GetPluginCapabilitiesResponse,
    NodeGetCapabilitiesRequest,
    NodeGetCapabilitiesResponse,
    NodeServiceCapability,
    PluginCapability,
)
from sccap.csi.spec.csi_pb2_grpc import ControllerStub, IdentityStub, NodeStub
from sccap.shared.capability import (
    CapabilityFeatures,
    ExpandMode,
    SnapshotFeature,
    VolumeFeature,
)
from sccap.shared.config import (
    CSI_DIAL_TIMEOUT,
    CSI_KEEPALIVE_TIME,
    CSI_KEEPALIVE_TIMEOUT,
    CSI_PROBE_TIMEOUT,
)

# ---------------------------------------------------------------------------- #


class ProbeError(Exception):
    pass


class ConnectionTimeoutError(ProbeError):
    pass


class ProbeTimeoutError(ProbeError):
    pass


Prober = Callable[[str], Awaitable[CapabilityFeatures]]
"""Given the address of a CSI driver, return the features it claims to
support."""

# ---------------------------------------------------------------------------- #

_ControllerRpc = ControllerServiceCapability.RPC
_NodeRpc = NodeServiceCapability.RPC

_CONTROLLER_VOLUME_FIELDS = {
    _ControllerRpc.CREATE_DELETE_VOLUME: "create",
    _ControllerRpc.PUBLISH_UNPUBLISH_VOLUME: "attach",
    _ControllerRpc.LIST_VOLUMES: "list",
    _ControllerRpc.CLONE_VOLUME: "clone",
}

_CONTROLLER_SNAPSHOT_FIELDS = {
    _ControllerRpc.CREATE_DELETE_SNAPSHOT: "create",
    _ControllerRpc.LIST_SNAPSHOTS: "list",
}

_NODE_VOLUME_FIELDS = {
    _NodeRpc.GET_VOLUME_STATS: "stats",
}

_EXPAND_MODES = {
    PluginCapability.VolumeExpansion.ONLINE: ExpandMode.ONLINE,
    PluginCapability.VolumeExpansion.OFFLINE: ExpandMode.OFFLINE,
}

# ---------------------------------------------------------------------------- #


async def probe(
    address: str,
    *,
    dial_timeout: timedelta = CSI_DIAL_TIMEOUT,
    probe_timeout: timedelta = CSI_PROBE_TIMEOUT,
) -> CapabilityFeatures:
    """
    Ask the CSI driver listening at the given address which features it
    supports.

    The address is either an absolute path to a Unix domain socket, a
    'unix:...' URI, or a network 'host:port' endpoint.

    Raises `ConnectionTimeoutError` if the driver can't be connected to within
    'dial_timeout', `ProbeTimeoutError` if the capability RPCs together take
    longer than 'probe_timeout', and `grpc.aio.AioRpcError` if any of them
    fails. No partial results are ever returned.
    """

    options = [
        ("grpc.keepalive_time_ms", _ms(CSI_KEEPALIVE_TIME)),
        ("grpc.keepalive_timeout_ms", _ms(CSI_KEEPALIVE_TIMEOUT)),
        ("grpc.keepalive_permit_without_calls", 1),
    ]

    async with grpc.aio.insecure_channel(
        get_grpc_target(address), options=options
    ) as channel:

        await _wait_until_ready(channel, address, dial_timeout)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + probe_timeout.total_seconds()

        def remaining() -> float:
            timeout = deadline - loop.time()
            if timeout <= 0:
                raise ProbeTimeoutError(
                    f"Probing CSI driver at {address} took longer than"
                    f" {probe_timeout.total_seconds()}s"
                )
            return timeout

        features = CapabilityFeatures()

        features = _apply_plugin_capabilities(
            features,
            await _get_plugin_capabilities(
                channel, GetPluginCapabilitiesRequest(), remaining()
            ),
        )

        features = _apply_controller_capabilities(
            features,
            await _controller_get_capabilities(
                channel, ControllerGetCapabilitiesRequest(), remaining()
            ),
        )

        features = _apply_node_capabilities(
            features,
            await _node_get_capabilities(
                channel, NodeGetCapabilitiesRequest(), remaining()
            ),
        )

        return features


async def _wait_until_ready(
    channel: Channel, address: str, timeout: timedelta
) -> None:
    async def wait() -> None:

        state = channel.get_state(try_to_connect=True)

        while state != ChannelConnectivity.READY:

            if state == ChannelConnectivity.SHUTDOWN:
                raise ConnectionTimeoutError(
                    f"Connection to CSI driver at {address} was shut down"
                )

            await channel.wait_for_state_change(state)
            state = channel.get_state(try_to_connect=True)

    try:
        await asyncio.wait_for(wait(), timeout=timeout.total_seconds())
    except asyncio.TimeoutError:
        raise ConnectionTimeoutError(
            f"Timed out connecting to CSI driver at {address}"
        ) from None


def _ms(delta: timedelta) -> int:
    return int(delta.total_seconds() * 1000)


# ---------------------------------------------------------------------------- #


@log_rpc
async def _get_plugin_capabilities(
    channel: Channel, request: GetPluginCapabilitiesRequest, timeout: float
) -> GetPluginCapabilitiesResponse:
    return await IdentityStub(channel).GetPluginCapabilities(
        request, timeout=timeout
    )


@log_rpc
async def _controller_get_capabilities(
    channel: Channel, request: ControllerGetCapabilitiesRequest, timeout: float
) -> ControllerGetCapabilitiesResponse:
    return await ControllerStub(channel).ControllerGetCapabilities(
        request, timeout=timeout
    )


@log_rpc
async def _node_get_capabilities(
    channel: Channel, request: NodeGetCapabilitiesRequest, timeout: float
) -> NodeGetCapabilitiesResponse:
    return await NodeStub(channel).NodeGetCapabilities(
        request, timeout=timeout
    )


# ---------------------------------------------------------------------------- #


def _apply_plugin_capabilities(
    features: CapabilityFeatures, response: GetPluginCapabilitiesResponse
) -> CapabilityFeatures:

    for capability in response.capabilities:

        kind = capability.WhichOneof("type")

        if kind == "service":

            if (
                capability.service.type
                == PluginCapability.Service.VOLUME_ACCESSIBILITY_CONSTRAINTS
            ):
                features = replace(features, topology=True)

        elif kind == "volume_expansion":

            # If a driver reports several expansion modes, the last one wins.

            mode = _EXPAND_MODES.get(capability.volume_expansion.type)

            if mode is not None:
                features = replace(
                    features, volume=replace(features.volume, expand=mode)
                )

    return features


def _apply_controller_capabilities(
    features: CapabilityFeatures, response: ControllerGetCapabilitiesResponse
) -> CapabilityFeatures:

    volume: VolumeFeature = features.volume
    snapshot: SnapshotFeature = features.snapshot

    for capability in response.capabilities:

        if capability.WhichOneof("type") != "rpc":
            continue

        rpc_type = capability.rpc.type

        if rpc_type in _CONTROLLER_VOLUME_FIELDS:
            volume = replace(
                volume, **{_CONTROLLER_VOLUME_FIELDS[rpc_type]: True}
            )
        elif rpc_type in _CONTROLLER_SNAPSHOT_FIELDS:
            snapshot = replace(
                snapshot, **{_CONTROLLER_SNAPSHOT_FIELDS[rpc_type]: True}
            )

    return replace(features, volume=volume, snapshot=snapshot)


def _apply_node_capabilities(
    features: CapabilityFeatures, response: NodeGetCapabilitiesResponse
) -> CapabilityFeatures:

    volume: VolumeFeature = features.volume

    for capability in response.capabilities:

        if capability.WhichOneof("type") != "rpc":
            continue

        field = _NODE_VOLUME_FIELDS.get(capability.rpc.type)

        if field is not None:
            volume = replace(volume, **{field: True})

    return replace(features, volume=volume)


# ---------------------------------------------------------------------------- #
