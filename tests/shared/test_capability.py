# ---------------------------------------------------------------------------- #

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import pytest

from sccap.shared.capability import (
    CapabilityFeatures,
    ExpandMode,
    SnapshotFeature,
    StorageClassCapabilitySpec,
    VolumeFeature,
)

# ---------------------------------------------------------------------------- #

_FEATURES = CapabilityFeatures(
    topology=True,
    volume=VolumeFeature(
        create=True,
        attach=False,
        list=True,
        clone=True,
        stats=False,
        expand=ExpandMode.ONLINE,
    ),
    snapshot=SnapshotFeature(create=True, list=True),
)


class TestWireFormat:
    def test_to_dict_uses_downstream_field_names(self) -> None:

        spec = StorageClassCapabilitySpec(
            provisioner="csi.example.com", features=_FEATURES
        )

        assert spec.to_dict() == {
            "provisioner": "csi.example.com",
            "features": {
                "topology": True,
                "volume": {
                    "create": True,
                    "attach": False,
                    "list": True,
                    "clone": True,
                    "stats": False,
                    "expandMode": "ONLINE",
                },
                "snapshot": {"create": True, "list": True},
            },
        }

    def test_from_dict_reverses_to_dict(self) -> None:

        spec = StorageClassCapabilitySpec(
            provisioner="csi.example.com", features=_FEATURES
        )

        assert StorageClassCapabilitySpec.from_dict(spec.to_dict()) == spec

    def test_from_dict_tolerates_missing_fields(self) -> None:

        spec = StorageClassCapabilitySpec.from_dict(
            {"provisioner": "p", "features": {"volume": {"create": True}}}
        )

        assert spec == StorageClassCapabilitySpec(
            provisioner="p",
            features=CapabilityFeatures(volume=VolumeFeature(create=True)),
        )

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("UNKNOWN", ExpandMode.UNKNOWN),
            ("OFFLINE", ExpandMode.OFFLINE),
            ("ONLINE", ExpandMode.ONLINE),
            ("online", ExpandMode.UNKNOWN),
            (None, ExpandMode.UNKNOWN),
            (42, ExpandMode.UNKNOWN),
        ],
    )
    def test_expand_mode_parse(
        self, value: object, expected: ExpandMode
    ) -> None:
        assert ExpandMode.parse(value) is expected


# ---------------------------------------------------------------------------- #


class TestRestricted:
    @dataclass(frozen=True)
    class Case:
        allow_expansion: bool
        allow_snapshot: bool
        expected_expand: ExpandMode
        expected_snapshot: SnapshotFeature

    test_cases: Sequence[Case] = [
        Case(
            allow_expansion=True,
            allow_snapshot=True,
            expected_expand=ExpandMode.ONLINE,
            expected_snapshot=SnapshotFeature(create=True, list=True),
        ),
        Case(
            allow_expansion=False,
            allow_snapshot=True,
            expected_expand=ExpandMode.UNKNOWN,
            expected_snapshot=SnapshotFeature(create=True, list=True),
        ),
        Case(
            allow_expansion=True,
            allow_snapshot=False,
            expected_expand=ExpandMode.ONLINE,
            expected_snapshot=SnapshotFeature(),
        ),
        Case(
            allow_expansion=False,
            allow_snapshot=False,
            expected_expand=ExpandMode.UNKNOWN,
            expected_snapshot=SnapshotFeature(),
        ),
    ]

    @pytest.mark.parametrize("case", test_cases)
    def test(self, case: Case) -> None:

        restricted = _FEATURES.restricted(
            allow_expansion=case.allow_expansion,
            allow_snapshot=case.allow_snapshot,
        )

        assert restricted.volume.expand is case.expected_expand
        assert restricted.snapshot == case.expected_snapshot

        # everything else is left alone
        assert restricted.topology == _FEATURES.topology
        assert restricted.volume.create == _FEATURES.volume.create
        assert restricted.volume.list == _FEATURES.volume.list
        assert restricted.volume.clone == _FEATURES.volume.clone


# ---------------------------------------------------------------------------- #
