# ---------------------------------------------------------------------------- #

from __future__ import annotations

from asyncio import CancelledError
from collections.abc import Callable, Coroutine
from functools import wraps
from pathlib import Path
from typing import Any, Optional, TypeVar

from google.protobuf.message import Message
from google.protobuf.text_format import MessageToString
from grpc.aio import AioRpcError, Channel  # type: ignore

from sccap.shared.config import CSI_ADDRESS_FORMAT
from sccap.shared.util import log_verbose

# ---------------------------------------------------------------------------- #


def get_csi_address(
    provisioner: str, address_format: str = CSI_ADDRESS_FORMAT
) -> str:
    return address_format.format(provisioner=provisioner)


def get_unix_socket_path(address: str) -> Optional[Path]:
    """Return the socket path if the address refers to a Unix domain socket,
    and None if it is a network endpoint."""

    if address.startswith("unix://"):
        return Path(address[len("unix://") :])
    elif address.startswith("unix:"):
        return Path(address[len("unix:") :])
    elif address.startswith("/"):
        return Path(address)
    else:
        return None


def get_grpc_target(address: str) -> str:

    if address.startswith("/"):
        return f"unix://{address}"
    else:
        return address  # already 'unix:...' or a network 'host:port'


def csi_address_exists(address: str) -> bool:
    """
    Cheap check of whether a driver may be listening at the given address.

    Network endpoints can't be checked without connecting, so they are always
    assumed to exist.
    """

    path = get_unix_socket_path(address)
    return path is None or path.exists()


# ---------------------------------------------------------------------------- #

_Request = TypeVar("_Request", bound=Message)
_Response = TypeVar("_Response", bound=Message)

_Rpc = Callable[[Channel, _Request, float], Coroutine[Any, Any, _Response]]

_call_seqnum = 0


def log_rpc(method: _Rpc[_Request, _Response]) -> _Rpc[_Request, _Response]:
    """Logs requests and responses of an RPC call in verbose mode."""

    @wraps(method)
    async def wrapped(
        channel: Channel, request: _Request, timeout: float
    ) -> _Response:

        global _call_seqnum
        seqnum = _call_seqnum
        _call_seqnum += 1

        header = f"{seqnum}: {method.__name__.lstrip('_')}()"

        log_verbose(f"calling {header} <-- {_msg_to_str(request)}")

        try:
            response = await method(channel, request, timeout)
        except AioRpcError as e:
            log_verbose(
                f"\033[31mfailed  {header} --> {e.code().name}:"
                f" {e.details()}\033[0m"
            )
            raise
        except CancelledError:
            log_verbose(f"\033[31mfailed  {header} --> canceled\033[0m")
            raise
        else:
            log_verbose(
                f"\033[32mreturned {header} --> {_msg_to_str(response)}\033[0m"
            )
            return response

    return wrapped


def _msg_to_str(message: Message) -> str:

    string = MessageToString(
        message, as_utf8=True, as_one_line=True, print_unknown_fields=True
    )

    bracketed_string = f"{{ {string} }}" if string else "{ }"

    return f"{type(message).__name__} {bracketed_string}"


# ---------------------------------------------------------------------------- #
