# ---------------------------------------------------------------------------- #

from __future__ import annotations

from datetime import timedelta

# ---------------------------------------------------------------------------- #

DOMAIN = "storage.kubesphere.io"
"""Used for the capability CRD group."""

CAPABILITY_GROUP = DOMAIN
CAPABILITY_VERSION = "v1alpha1"
CAPABILITY_KIND = "StorageClassCapability"
CAPABILITY_PLURAL = "storageclasscapabilities"

SNAPSHOT_GROUP = "snapshot.storage.k8s.io"
SNAPSHOT_VERSION = "v1"
SNAPSHOT_CLASS_PLURAL = "volumesnapshotclasses"

MIN_SNAPSHOT_SUPPORTED_VERSION = (1, 17, 0)
"""Oldest Kubernetes server version for which VolumeSnapshotClasses are
watched. On older clusters snapshot features are never advertised."""

# ---------------------------------------------------------------------------- #

CSI_ADDRESS_FORMAT = "/var/lib/kubelet/plugins/{provisioner}/csi.sock"
"""Absolute path, in the context of the controller container, to the CSI Unix
domain socket of the driver with the given provisioner name. The kubelet
plugins directory must be mounted at the same location."""

CSI_DIAL_TIMEOUT = timedelta(seconds=5)
"""Maximum amount of time to wait for a connection to a CSI driver to become
ready."""

CSI_PROBE_TIMEOUT = timedelta(seconds=10)
"""Time budget shared by all capability RPCs of a single probe."""

CSI_KEEPALIVE_TIME = timedelta(seconds=30)
CSI_KEEPALIVE_TIMEOUT = timedelta(seconds=10)

# ---------------------------------------------------------------------------- #

DEFAULT_WORKERS = 5

WORKER_RESTART_DELAY = timedelta(seconds=1)
"""Amount of time to wait before restarting a worker that crashed outside of
the handling of a single key."""

CACHE_SYNC_POLL_PERIOD = timedelta(milliseconds=100)

INFORMER_RETRY_DELAY = timedelta(seconds=5)
"""Amount of time to wait before relisting after an informer failure."""

RATE_LIMITER_BASE_DELAY = timedelta(milliseconds=5)
RATE_LIMITER_MAX_DELAY = timedelta(seconds=1000)
RATE_LIMITER_QPS = 10
RATE_LIMITER_BURST = 100

# ---------------------------------------------------------------------------- #
