# ---------------------------------------------------------------------------- #

from __future__ import annotations

from datetime import datetime
from sys import stderr

# ---------------------------------------------------------------------------- #

_verbose = False


def set_verbose(verbose: bool) -> None:
    global _verbose
    _verbose = verbose


def log(obj: object) -> None:
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")
    print(f"\033[36m[{now}]\033[0m {obj}", file=stderr, flush=True)


def log_verbose(obj: object) -> None:
    if _verbose:
        log(obj)


# ---------------------------------------------------------------------------- #
