# ---------------------------------------------------------------------------- #

from __future__ import annotations

import asyncio
import re
from asyncio import CancelledError, Event, sleep, wait_for
from collections.abc import Callable, Coroutine, Iterable
from dataclasses import dataclass
from functools import partial
from http import HTTPStatus
from traceback import format_exc
from typing import Any, Optional, Protocol

from kubernetes_asyncio.client import (  # type: ignore
    ApiClient,
    ApiException,
    CustomObjectsApi,
    StorageV1Api,
    VersionApi,
)
from kubernetes_asyncio.watch import Watch  # type: ignore

from sccap.shared.config import CACHE_SYNC_POLL_PERIOD, INFORMER_RETRY_DELAY
from sccap.shared.util import log, log_verbose

# ---------------------------------------------------------------------------- #


def not_found(resource: str, name: str) -> ApiException:
    """Build the same kind of exception that the API server produces for a
    missing object, so that cache and API lookups fail alike."""

    return ApiException(
        status=HTTPStatus.NOT_FOUND, reason=f'{resource} "{name}" not found'
    )


def is_not_found(error: BaseException) -> bool:
    return (
        isinstance(error, ApiException)
        and error.status == HTTPStatus.NOT_FOUND
    )


def get_name(obj: Any) -> str:
    """Works both for typed models and for custom objects, which are dicts."""

    if isinstance(obj, dict):
        return str(obj["metadata"]["name"])
    else:
        return str(obj.metadata.name)


def get_resource_version(obj: Any) -> Optional[str]:

    if isinstance(obj, dict):
        return (obj.get("metadata") or {}).get("resourceVersion")
    else:
        return obj.metadata.resource_version


def _get_list_items_and_version(obj_list: Any) -> tuple[list[Any], str]:

    if isinstance(obj_list, dict):
        items = obj_list.get("items") or []
        resource_version = obj_list["metadata"]["resourceVersion"]
    else:
        items = obj_list.items or []
        resource_version = obj_list.metadata.resource_version

    assert type(items) is list

    return items, resource_version


# ---------------------------------------------------------------------------- #


class EventHandler(Protocol):
    def on_add(self, obj: Any) -> None:
        ...

    def on_update(self, old_obj: Any, new_obj: Any) -> None:
        ...

    def on_delete(self, obj: Any) -> None:
        ...


@dataclass(frozen=True)
class EventHandlerFuncs:
    """Adapts plain functions to `EventHandler`. Missing functions make the
    corresponding events be ignored."""

    add_func: Optional[Callable[[Any], None]] = None
    update_func: Optional[Callable[[Any, Any], None]] = None
    delete_func: Optional[Callable[[Any], None]] = None

    def on_add(self, obj: Any) -> None:
        if self.add_func is not None:
            self.add_func(obj)

    def on_update(self, old_obj: Any, new_obj: Any) -> None:
        if self.update_func is not None:
            self.update_func(old_obj, new_obj)

    def on_delete(self, obj: Any) -> None:
        if self.delete_func is not None:
            self.delete_func(obj)


ListFn = Callable[..., Coroutine[Any, Any, Any]]


class Informer:
    """
    Keeps a local cache of all objects of a cluster-scoped resource up to date
    by listing and then watching them, and notifies registered handlers of
    every change.

    Handlers run synchronously in the task executing `run()`, and must not
    block.

    Relisting (after the watch ends or fails) can miss intermediate updates,
    but handlers are always eventually notified of the latest version of every
    object, and of the deletion of objects that disappeared meanwhile.
    """

    resource: str

    def __init__(self, resource: str, list_fn: ListFn) -> None:
        self.resource = resource
        self._list_fn = list_fn
        self._cache: dict[str, Any] = {}
        self._handlers: list[EventHandler] = []
        self._synced = False

    def add_event_handler(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def has_synced(self) -> bool:
        return self._synced

    def get(self, name: str) -> Any:
        """Raises an `ApiException` with status 404 if there is no object with
        the given name in the cache."""

        try:
            return self._cache[name]
        except KeyError:
            raise not_found(self.resource, name) from None

    def list(self) -> list[Any]:
        return list(self._cache.values())

    def replace(self, objects: Iterable[Any]) -> None:
        """Replace the whole cache contents, notifying handlers of every
        difference. Objects that are still present are reported as updated
        even if they did not change."""

        new_cache = {get_name(obj): obj for obj in objects}
        old_cache = self._cache

        self._cache = new_cache
        self._synced = True

        for name, obj in new_cache.items():
            old_obj = old_cache.get(name)
            if old_obj is None:
                self._dispatch(lambda h: h.on_add(obj))
            else:
                self._dispatch(lambda h: h.on_update(old_obj, obj))

        for name, old_obj in old_cache.items():
            if name not in new_cache:
                self._dispatch(lambda h: h.on_delete(old_obj))

    def apply_event(self, event_type: str, obj: Any) -> None:

        if event_type in ("ADDED", "MODIFIED"):

            name = get_name(obj)

            old_obj = self._cache.get(name)
            self._cache[name] = obj

            if old_obj is None:
                self._dispatch(lambda h: h.on_add(obj))
            else:
                self._dispatch(lambda h: h.on_update(old_obj, obj))

        elif event_type == "DELETED":

            # prefer the final state reported by the API server
            self._cache.pop(get_name(obj), None)
            self._dispatch(lambda h: h.on_delete(obj))

    def _dispatch(self, notify: Callable[[EventHandler], None]) -> None:

        for handler in self._handlers:
            try:
                notify(handler)
            except Exception:
                log(f"Error in {self.resource} event handler:\n{format_exc()}")

    async def run(self) -> None:
        """Runs until cancelled."""

        while True:

            try:
                await self._list_and_watch()
            except CancelledError:
                raise
            except Exception:
                log(f"Error while watching {self.resource}:\n{format_exc()}")
                await sleep(INFORMER_RETRY_DELAY.total_seconds())

    async def _list_and_watch(self) -> None:

        while True:

            # list

            obj_list = await self._list_fn()
            items, resource_version = _get_list_items_and_version(obj_list)

            self.replace(items)

            log_verbose(f"Listed {len(items)} {self.resource}")

            # watch

            async with Watch() as watch:

                try:

                    stream = watch.stream(
                        self._list_fn, resource_version=resource_version
                    )

                    async for event in stream:
                        self.apply_event(event["type"], event["object"])

                except ApiException as e:

                    if e.status == HTTPStatus.GONE:
                        pass  # resource version too old, relist
                    else:
                        raise  # some other error occurred, fail

            # the watch ended; relist to catch up on anything we missed


def storage_class_informer(api_client: ApiClient) -> Informer:
    return Informer(
        resource="storageclasses",
        list_fn=StorageV1Api(api_client).list_storage_class,
    )


def cluster_custom_object_informer(
    api_client: ApiClient, group: str, version: str, plural: str
) -> Informer:

    # Custom objects are not deserialized, and are thus plain dicts.

    return Informer(
        resource=plural,
        list_fn=partial(
            CustomObjectsApi(api_client).list_cluster_custom_object,
            group=group,
            version=version,
            plural=plural,
        ),
    )


async def wait_for_cache_sync(
    stop: Event, *has_synced_fns: Callable[[], bool]
) -> bool:
    """Return True once all informers have synced, or False if `stop` is set
    first."""

    while not all(has_synced() for has_synced in has_synced_fns):

        if stop.is_set():
            return False

        try:
            await wait_for(
                stop.wait(), timeout=CACHE_SYNC_POLL_PERIOD.total_seconds()
            )
        except asyncio.TimeoutError:
            pass  # poll again

    return True


# ---------------------------------------------------------------------------- #


class ClusterCustomObjectClient:
    """Create, read, update, and delete cluster-scoped custom objects of a
    single resource. Objects are plain dicts."""

    group: str
    version: str
    plural: str

    def __init__(
        self, api_client: ApiClient, group: str, version: str, plural: str
    ) -> None:
        self._api = CustomObjectsApi(api_client)
        self.group = group
        self.version = version
        self.plural = plural

    async def get(self, name: str) -> dict[str, Any]:
        return await self._api.get_cluster_custom_object(
            group=self.group,
            version=self.version,
            plural=self.plural,
            name=name,
        )

    async def create(self, body: dict[str, Any]) -> dict[str, Any]:
        return await self._api.create_cluster_custom_object(
            group=self.group,
            version=self.version,
            plural=self.plural,
            body=body,
        )

    async def update(self, body: dict[str, Any]) -> dict[str, Any]:
        """Fails with 409 CONFLICT if the object was modified since 'body' was
        read."""

        return await self._api.replace_cluster_custom_object(
            group=self.group,
            version=self.version,
            plural=self.plural,
            name=body["metadata"]["name"],
            body=body,
        )

    async def delete(self, name: str) -> None:
        await self._api.delete_cluster_custom_object(
            group=self.group,
            version=self.version,
            plural=self.plural,
            name=name,
        )


# ---------------------------------------------------------------------------- #


def parse_server_version(git_version: str) -> Optional[tuple[int, int, int]]:
    """Parses strings such as 'v1.27.3' or 'v1.27.3+k3s1'. Returns None if
    unparseable."""

    match = re.match(r"^v?(\d+)\.(\d+)\.(\d+)", git_version)

    if match is None:
        return None

    major, minor, patch = map(int, match.groups())
    return major, minor, patch


async def get_server_version(
    api_client: ApiClient,
) -> Optional[tuple[int, int, int]]:

    info = await VersionApi(api_client).get_code()
    return parse_server_version(info.git_version or "")


# ---------------------------------------------------------------------------- #
