from nanoclaw.runtime.runtime import (
    ContainerRuntime,
    RuntimeProvider,
    detect_runtime,
    get_runtime,
    reset_runtime,
)

__all__ = [
    "ContainerRuntime",
    "RuntimeProvider",
    "detect_runtime",
    "get_runtime",
    "reset_runtime",
]
