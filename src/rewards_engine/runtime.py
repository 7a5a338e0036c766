"""Process-level wiring for scripts and host applications."""

from __future__ import annotations

from rewards_engine import __version__
from rewards_engine.core.logging import configure_logging
from rewards_engine.core.settings import Settings, settings
from rewards_engine.observability.tracing import configure_tracing


def configure_runtime(config: Settings | None = None, *, tracing: bool = True) -> None:
    active = config or settings
    configure_logging(
        service_name=active.service_name,
        environment=active.environment,
        version=__version__,
        level=active.log_level,
        sql_echo=active.sql_echo,
    )
    if tracing:
        configure_tracing(
            service_name=active.service_name,
            service_version=__version__,
            environment=active.environment,
            sample_ratio=active.trace_sample_ratio,
        )


__all__ = ["configure_runtime"]
