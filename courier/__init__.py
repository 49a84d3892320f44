"""Message delivery core: configuration, logging, metrics, models, webhook delivery, scheduling and the message service."""

__version__ = "0.1.0"

__all__ = [
    "adapter",
    "config",
    "logger",
    "metrics",
    "models",
    "scheduler",
    "service",
    "webhook",
]