# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import Enum, unique
from typing import Any

# ---------------------------------------------------------------------------- #


@unique
class ExpandMode(Enum):
    UNKNOWN = "UNKNOWN"
    OFFLINE = "OFFLINE"
    ONLINE = "ONLINE"

    @staticmethod
    def parse(value: object) -> ExpandMode:
        """Unrecognized or missing values map to UNKNOWN."""
        try:
            return ExpandMode(value)
        except ValueError:
            return ExpandMode.UNKNOWN


# ---------------------------------------------------------------------------- #


@dataclass(frozen=True)
class VolumeFeature:

    create: bool = False
    attach: bool = False
    list: bool = False
    clone: bool = False
    stats: bool = False
    expand: ExpandMode = ExpandMode.UNKNOWN

    @staticmethod
    def from_dict(obj: Mapping[str, Any]) -> VolumeFeature:
        return VolumeFeature(
            create=bool(obj.get("create", False)),
            attach=bool(obj.get("attach", False)),
            list=bool(obj.get("list", False)),
            clone=bool(obj.get("clone", False)),
            stats=bool(obj.get("stats", False)),
            expand=ExpandMode.parse(obj.get("expandMode")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "create": self.create,
            "attach": self.attach,
            "list": self.list,
            "clone": self.clone,
            "stats": self.stats,
            "expandMode": self.expand.value,
        }


@dataclass(frozen=True)
class SnapshotFeature:

    create: bool = False
    list: bool = False

    @staticmethod
    def from_dict(obj: Mapping[str, Any]) -> SnapshotFeature:
        return SnapshotFeature(
            create=bool(obj.get("create", False)),
            list=bool(obj.get("list", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"create": self.create, "list": self.list}


@dataclass(frozen=True)
class CapabilityFeatures:
    """What a CSI driver claims to support, as reported by the prober. Also
    the 'features' part of a StorageClassCapability spec."""

    topology: bool = False
    volume: VolumeFeature = VolumeFeature()
    snapshot: SnapshotFeature = SnapshotFeature()

    @staticmethod
    def from_dict(obj: Mapping[str, Any]) -> CapabilityFeatures:
        return CapabilityFeatures(
            topology=bool(obj.get("topology", False)),
            volume=VolumeFeature.from_dict(obj.get("volume") or {}),
            snapshot=SnapshotFeature.from_dict(obj.get("snapshot") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "topology": self.topology,
            "volume": self.volume.to_dict(),
            "snapshot": self.snapshot.to_dict(),
        }

    def restricted(
        self, *, allow_expansion: bool, allow_snapshot: bool
    ) -> CapabilityFeatures:
        """
        Return a copy with features that the storage class can't actually
        offer turned off.

        Expansion is reported as UNKNOWN unless the storage class allows it,
        and snapshot features are cleared unless there is a snapshot class
        through which snapshots can be requested.
        """

        features = self

        if not allow_expansion:
            features = replace(
                features,
                volume=replace(features.volume, expand=ExpandMode.UNKNOWN),
            )

        if not allow_snapshot:
            features = replace(features, snapshot=SnapshotFeature())

        return features


@dataclass(frozen=True)
class StorageClassCapabilitySpec:

    provisioner: str
    features: CapabilityFeatures

    @staticmethod
    def from_dict(obj: Mapping[str, Any]) -> StorageClassCapabilitySpec:
        return StorageClassCapabilitySpec(
            provisioner=str(obj.get("provisioner", "")),
            features=CapabilityFeatures.from_dict(obj.get("features") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "provisioner": self.provisioner,
            "features": self.features.to_dict(),
        }


# ---------------------------------------------------------------------------- #
