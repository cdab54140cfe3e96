#vps_autoscaler\api\container.py
from typing import Optional

from vps_autoscaler.container import Container


# Singleton, installed by the entry point (or a test) before serving
_container: Optional[Container] = None


def set_container(container: Optional[Container]) -> None:
    global _container
    _container = container


def get_container() -> Container:
    if _container is None:
        raise RuntimeError("controller container has not been initialised")
    return _container
