"""unikops - Build and run unikernel instances on-prem and on AWS."""

from .cli import app
from .compose import Compose, load_compose_file
from .config import Config, ProviderConfig, RunConfig
from .errors import (
    NotFoundError,
    OpsError,
    PartialCreateError,
    WaitFailureError,
    WaitTimeoutError,
)
from .providers import PROVIDERS, DisabledProvider, Provider, get_provider
from .tags import build_tags
from .types import (
    CloudImage,
    CloudInstance,
    InstanceRecord,
    NanosVolume,
    ProviderName,
    Tag,
)
from .utils import error, log, run_cmd, run_concurrently, warn
from .waiter import PollResult, Waiter, WaitState

__all__ = [
    "Compose",
    "Config",
    "DisabledProvider",
    "Provider",
    "ProviderConfig",
    "PROVIDERS",
    "RunConfig",
    "get_provider",
    "load_compose_file",
    "build_tags",
    "app",
    "log",
    "warn",
    "error",
    "run_cmd",
    "run_concurrently",
    "Waiter",
    "WaitState",
    "PollResult",
    "OpsError",
    "NotFoundError",
    "PartialCreateError",
    "WaitFailureError",
    "WaitTimeoutError",
    "CloudImage",
    "CloudInstance",
    "InstanceRecord",
    "NanosVolume",
    "ProviderName",
    "Tag",
]
