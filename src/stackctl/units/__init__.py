from .container import ContainerBackend
from .process import ProcessBackend

__all__ = ["ContainerBackend", "ProcessBackend"]
