"""
k3sfn controller - reconciles Function resources into Kubernetes objects

Usage:
    from k3sfnctl import Controller, FunctionInformer, ResourceClient, LangRuntimes

    informer = FunctionInformer(custom_api)
    controller = Controller(informer, ResourceClient(), LangRuntimes())
    controller.run(stop_event)
"""

__version__ = "0.1.0"

from .config import ControllerSettings, load_settings
from .controller import Controller
from .exceptions import (
    ConfigParseError,
    ControllerError,
    DiscoveryError,
    InvalidFunctionError,
    InvalidKeyError,
    NotFoundError,
    TransientAPIError,
)
from .informer import FunctionInformer, FunctionStore
from .langruntime import LangRuntimes, RuntimeInfo
from .queue import RateLimitingQueue
from .resources import ResourceClient
from .types import Function, FunctionSpec, OwnerReference, TriggerType

__all__ = [
    # Controller
    "Controller",
    "ControllerSettings",
    "load_settings",
    # Watch source and queue
    "FunctionInformer",
    "FunctionStore",
    "RateLimitingQueue",
    # Platform access
    "ResourceClient",
    "LangRuntimes",
    "RuntimeInfo",
    # Types
    "Function",
    "FunctionSpec",
    "OwnerReference",
    "TriggerType",
    # Errors
    "ControllerError",
    "InvalidKeyError",
    "InvalidFunctionError",
    "NotFoundError",
    "TransientAPIError",
    "ConfigParseError",
    "DiscoveryError",
]
