"""WHIP publishing client exposing the output controller and its collaborators."""

from typing import Any

from .version import APP_VERSION


def create_output(*args: Any, **kwargs: Any):
    from .output import WHIPOutput

    return WHIPOutput(*args, **kwargs)


__all__ = ["create_output", "APP_VERSION"]
