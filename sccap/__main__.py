# ---------------------------------------------------------------------------- #

from __future__ import annotations

import asyncio
from argparse import ArgumentParser, ArgumentTypeError, Namespace
from sys import exit

from kubernetes_asyncio.config import (  # type: ignore
    load_incluster_config,
    load_kube_config,
)

import sccap.controller
from sccap.controller.capability import CacheSyncError
from sccap.shared.config import (
    CSI_ADDRESS_FORMAT,
    DEFAULT_WORKERS,
    SNAPSHOT_VERSION,
)
from sccap.shared.util import log, set_verbose

# ---------------------------------------------------------------------------- #


def main() -> None:
    """
    Usage:

        python -m sccap [--kubeconfig <path>] [--workers <n>]
                        [--csi-address-format <format>]
                        [--snapshot-api-version <version>] [--verbose]
    """

    args = _parse_args()

    set_verbose(args.verbose)

    if args.kubeconfig is None:
        load_incluster_config()
    else:
        asyncio.run(load_kube_config(config_file=args.kubeconfig))

    try:
        sccap.controller.run(
            workers=args.workers,
            csi_address_format=args.csi_address_format,
            snapshot_version=args.snapshot_api_version,
        )
    except CacheSyncError as e:
        log(f"Unable to start: {e}")
        exit(1)


def _parse_args() -> Namespace:

    parser = ArgumentParser(prog="sccap")

    parser.add_argument(
        "--kubeconfig",
        help="use this kubeconfig file instead of the in-cluster config",
    )

    parser.add_argument(
        "--workers",
        type=_positive_int,
        default=DEFAULT_WORKERS,
        help=f"number of concurrent workers (default: {DEFAULT_WORKERS})",
    )

    parser.add_argument(
        "--csi-address-format",
        default=CSI_ADDRESS_FORMAT,
        help=(
            "CSI socket address of a driver, with '{provisioner}' replaced by"
            f" its name (default: {CSI_ADDRESS_FORMAT})"
        ),
    )

    parser.add_argument(
        "--snapshot-api-version",
        default=SNAPSHOT_VERSION,
        help=(
            "version of the snapshot.storage.k8s.io API to watch"
            f" (default: {SNAPSHOT_VERSION})"
        ),
    )

    parser.add_argument(
        "--verbose", action="store_true", help="log every CSI call"
    )

    args = parser.parse_args()

    if "{provisioner}" not in args.csi_address_format:
        parser.error("--csi-address-format must contain '{provisioner}'")

    return args


def _positive_int(value: str) -> int:

    try:
        n = int(value)
    except ValueError:
        raise ArgumentTypeError(f"not an integer: {value!r}") from None

    if n <= 0:
        raise ArgumentTypeError("must be a positive integer")

    return n


# ---------------------------------------------------------------------------- #

if __name__ == "__main__":
    main()

# ---------------------------------------------------------------------------- #
