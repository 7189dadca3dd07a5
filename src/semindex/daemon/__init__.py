"""SemIndex daemon - background rebuild worker."""

from semindex.daemon.rebuilder import BackgroundRebuilder, RebuilderState, RebuilderStatus

__all__ = [
    "BackgroundRebuilder",
    "RebuilderState",
    "RebuilderStatus",
]
